"""
Composition root: wires storage, ledger and engines together
"""

from datetime import date
from typing import Dict, Optional

from .config import SimplyConfig, get_config
from .events import EventDispatcher
from .financing import FinancingEngine
from .investments import InvestmentEngine
from .ledger import Ledger
from .logging_config import setup_logging
from .storage import StorageInterface, create_storage
from .sweeps import SweepResult, run_daily_sweeps
from .transfers import TransferEngine
from .wallet import WalletEngine


class SimplySystem:
    """Ledger and accrual engine with all components initialized"""
    
    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[SimplyConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        setup_logging(self.config.log_level, "simply", self.config.log_format, self.config.log_file)
        
        self.storage = storage or create_storage(self.config.database_url)
        if event_dispatcher is None and self.config.enable_events:
            event_dispatcher = EventDispatcher()
        self.event_dispatcher = event_dispatcher
        
        self.ledger = Ledger(self.storage)
        self.wallet = WalletEngine(self.storage, self.ledger, self.config, self.event_dispatcher)
        self.investments = InvestmentEngine(
            self.storage, self.ledger, self.wallet, self.config, self.event_dispatcher
        )
        self.financing = FinancingEngine(
            self.storage, self.ledger, self.wallet, self.investments, self.config, self.event_dispatcher
        )
        self.transfers = TransferEngine(
            self.storage, self.ledger, self.wallet, self.config, self.event_dispatcher
        )
    
    def run_daily_sweeps(self, as_of: Optional[date] = None) -> Dict[str, SweepResult]:
        """Entry point for the external scheduler"""
        return run_daily_sweeps(self.investments, self.financing, as_of)
    
    def close(self) -> None:
        self.storage.close()
