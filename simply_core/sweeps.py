"""
Scheduled Sweeps Module

Bookkeeping for the recurring jobs an external scheduler triggers once per
day: FCI return accrual and overdue-installment penalties. Each sweep is
idempotent and processes entities in isolation, so one failure never stops
the rest of the batch.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from .logging_config import get_logger, log_action

logger = get_logger("simply.sweeps")


def is_business_day(day: date) -> bool:
    """Monday to Friday"""
    return day.weekday() < 5


@dataclass
class SweepResult:
    """Outcome counters for one sweep run"""
    name: str
    as_of: date
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_reason: Optional[str] = None
    errors: List[Dict[str, str]] = field(default_factory=list)
    
    def record_failure(self, entity_id: str, error: Exception) -> None:
        self.failed += 1
        self.errors.append({"entity_id": entity_id, "error": str(error)})
    
    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "as_of": self.as_of.isoformat(),
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors
        }
        if self.skipped_reason:
            result["skipped_reason"] = self.skipped_reason
        return result
    
    def log(self) -> None:
        level = "warning" if self.failed else "info"
        log_action(
            logger, level, f"Sweep {self.name} finished",
            action=f"sweep.{self.name}", extra=self.to_dict()
        )


def run_daily_sweeps(investment_engine, financing_engine,
                     as_of: Optional[date] = None) -> Dict[str, SweepResult]:
    """Run both daily sweeps for ``as_of`` (defaults to today)"""
    as_of = as_of or datetime.now(timezone.utc).date()
    return {
        "daily_returns": investment_engine.process_daily_returns(as_of),
        "overdue_installments": financing_engine.process_overdue_installments(as_of)
    }
