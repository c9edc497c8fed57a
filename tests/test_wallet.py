"""
Test suite for the wallet engine
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from simply_core.config import SimplyConfig
from simply_core.errors import (
    ConflictError, InsufficientFundsError, InvalidAmountError, InvalidFormatError,
    InvalidRangeError, LimitExceededError, NotFoundError, ProvisioningError
)
from simply_core.ledger import TransactionType
from simply_core.storage import InMemoryStorage
from simply_core.system import SimplySystem
from simply_core.wallet import AccountStatus, BalanceOperation, is_valid_cvu

EXTERNAL_CVU = "0170099220000067797370"


def fund(system, user_id, amount):
    account = system.wallet.require_account(user_id)
    return system.transfers.receive_external_transfer(account.cvu, amount, source_cvu=EXTERNAL_CVU)


class TestAccountCreation:
    """Provisioning accounts"""
    
    def setup_method(self):
        self.system = SimplySystem(storage=InMemoryStorage(), config=SimplyConfig())
    
    def test_create_account(self):
        account = self.system.wallet.create_account("user-1", holder_name="Ana Gomez")
        
        assert account.user_id == "user-1"
        assert account.balance == Decimal("0")
        assert account.status == AccountStatus.ACTIVE
        assert account.daily_limit == Decimal("500000")
        assert account.monthly_limit == Decimal("5000000")
        assert is_valid_cvu(account.cvu)
        assert account.cvu.startswith("00002850000")
    
    def test_create_account_is_idempotent(self):
        first = self.system.wallet.create_account("user-1")
        second = self.system.wallet.create_account("user-1")
        assert first.id == second.id
        assert first.cvu == second.cvu
        assert self.system.storage.count("accounts") == 1
    
    def test_cvu_collisions_exhaust_attempts(self, monkeypatch):
        monkeypatch.setattr(self.system.wallet, "_generate_cvu", lambda: "0000285000012345678901")
        self.system.wallet.create_account("user-1")
        
        with pytest.raises(ProvisioningError):
            self.system.wallet.create_account("user-2")
        assert self.system.wallet.get_account("user-2") is None
    
    def test_lookup_by_cvu_and_alias(self):
        account = self.system.wallet.create_account("user-1")
        self.system.wallet.update_alias("user-1", "sol.luna.mar")
        
        assert self.system.wallet.find_by_cvu_or_alias(account.cvu).user_id == "user-1"
        assert self.system.wallet.find_by_cvu_or_alias("SOL.LUNA.MAR").user_id == "user-1"
        assert self.system.wallet.find_by_cvu_or_alias("no.such.alias") is None


class TestAlias:
    """Alias rules"""
    
    def setup_method(self):
        self.system = SimplySystem(storage=InMemoryStorage(), config=SimplyConfig())
        self.system.wallet.create_account("user-1")
        self.system.wallet.create_account("user-2")
    
    @pytest.mark.parametrize("alias", ["solo", "dos.partes", "Mayus.cula.no", "num.3ro.x", "demasiado.largo.paraalias"])
    def test_invalid_alias_format(self, alias):
        with pytest.raises(InvalidFormatError):
            self.system.wallet.update_alias("user-1", alias)
    
    def test_update_alias_counts_changes(self):
        result = self.system.wallet.update_alias("user-1", "gato.perro.raton")
        assert result == {"alias": "gato.perro.raton", "changes_remaining": 2}
        assert self.system.wallet.get_account("user-1").alias == "gato.perro.raton"
    
    def test_same_alias_is_a_no_op(self):
        self.system.wallet.update_alias("user-1", "gato.perro.raton")
        result = self.system.wallet.update_alias("user-1", "gato.perro.raton")
        assert result["changes_remaining"] == 2
    
    def test_alias_taken_by_another_account(self):
        self.system.wallet.update_alias("user-1", "gato.perro.raton")
        with pytest.raises(ConflictError):
            self.system.wallet.update_alias("user-2", "gato.perro.raton")
    
    def test_yearly_change_limit(self):
        for alias in ["uno.dos.tres", "cuatro.cinco.seis", "siete.ocho.nueve"]:
            self.system.wallet.update_alias("user-1", alias)
        
        with pytest.raises(LimitExceededError):
            self.system.wallet.update_alias("user-1", "diez.once.doce")
        assert self.system.wallet.get_account("user-1").alias == "siete.ocho.nueve"
    
    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            self.system.wallet.update_alias("nobody", "gato.perro.raton")


class TestBalance:
    """Balance updates and summaries"""
    
    def setup_method(self):
        self.system = SimplySystem(storage=InMemoryStorage(), config=SimplyConfig())
        self.system.wallet.create_account("user-1")
    
    def test_update_balance_requires_unit_of_work(self):
        with pytest.raises(RuntimeError):
            self.system.wallet.update_balance("user-1", Decimal("10"), BalanceOperation.ADD)
    
    def test_update_balance_rejects_non_positive_amounts(self):
        with self.system.ledger.atomic():
            with pytest.raises(InvalidAmountError):
                self.system.wallet.update_balance("user-1", Decimal("0"), BalanceOperation.ADD)
    
    def test_debit_beyond_balance(self):
        fund(self.system, "user-1", "100.00")
        
        with pytest.raises(InsufficientFundsError) as exc_info:
            with self.system.ledger.atomic():
                self.system.wallet.update_balance("user-1", Decimal("150"), BalanceOperation.SUBTRACT)
        
        assert exc_info.value.shortfall == Decimal("50.00")
        assert self.system.wallet.get_account("user-1").balance == Decimal("100.00")
    
    def test_update_balance_unknown_user(self):
        with pytest.raises(NotFoundError):
            with self.system.ledger.atomic():
                self.system.wallet.update_balance("nobody", Decimal("1"), BalanceOperation.ADD)
    
    def test_balance_summary(self):
        fund(self.system, "user-1", "2500.50")
        summary = self.system.wallet.get_balance("user-1")
        
        assert summary.available.amount == Decimal("2500.50")
        assert summary.invested.amount == Decimal("0")
        assert summary.total.amount == Decimal("2500.50")
        
        data = summary.to_dict()
        assert data["currency"] == "ARS"
        assert data["limits"]["daily"] == "500000"
        assert data["status"] == "active"
    
    def test_reconcile_after_credits(self):
        fund(self.system, "user-1", "10.00")
        fund(self.system, "user-1", "20.00")
        assert self.system.wallet.reconcile("user-1").balanced


class TestMovements:
    """Paginated history"""
    
    def setup_method(self):
        self.system = SimplySystem(storage=InMemoryStorage(), config=SimplyConfig())
        self.system.wallet.create_account("user-1")
        for amount in ["1.00", "2.00", "3.00", "4.00", "5.00"]:
            fund(self.system, "user-1", amount)
    
    def test_pagination(self):
        result = self.system.wallet.get_movements("user-1", page=2, limit=2)
        
        assert len(result["transactions"]) == 2
        assert result["pagination"] == {"page": 2, "limit": 2, "total": 5, "total_pages": 3}
    
    def test_type_filter(self):
        result = self.system.wallet.get_movements("user-1", tx_type=TransactionType.TRANSFER_OUT)
        assert result["transactions"] == []
        assert result["pagination"]["total_pages"] == 0
    
    def test_naive_date_bounds(self):
        yesterday = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=1)
        result = self.system.wallet.get_movements("user-1", date_from=yesterday)
        assert result["pagination"]["total"] == 5
        assert self.system.wallet.get_movements("user-1", date_to=yesterday)["transactions"] == []
    
    def test_invalid_paging(self):
        with pytest.raises(InvalidRangeError):
            self.system.wallet.get_movements("user-1", page=0)
        with pytest.raises(InvalidRangeError):
            self.system.wallet.get_movements("user-1", limit=500)


class TestStatus:
    """Suspension and blocking"""
    
    def setup_method(self):
        self.system = SimplySystem(storage=InMemoryStorage(), config=SimplyConfig())
        self.system.wallet.create_account("user-1")
    
    def test_set_status(self):
        account = self.system.wallet.set_status("user-1", AccountStatus.SUSPENDED, "Manual review")
        assert account.status == AccountStatus.SUSPENDED
        assert not self.system.wallet.get_account("user-1").is_active
