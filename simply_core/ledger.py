"""
Ledger Module

Append-only transaction log and the unit-of-work entry point. Every change to
an account balance is paired with exactly one Transaction row written in the
same unit of work; the row's balance_delta records the signed effect so the
log can be reconciled against stored balances at any time.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar
from enum import Enum
import uuid

from .errors import NotFoundError, StateError
from .logging_config import get_logger, log_action
from .money import ZERO, round_money
from .storage import StorageInterface, StorageRecord, parse_datetime

T = TypeVar("T")


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored timestamps"""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class TransactionType(Enum):
    """Kinds of ledger entries"""
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_REFUND = "transfer_refund"
    INVESTMENT_DEPOSIT = "investment_deposit"
    INVESTMENT_WITHDRAWAL = "investment_withdrawal"
    FCI_RETURN = "fci_return"
    INSTALLMENT_PAYMENT = "installment_payment"
    PENALTY_CHARGE = "penalty_charge"


class TransactionStatus(Enum):
    """Ledger entry lifecycle; COMPLETED and FAILED are terminal"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger entry (only PROCESSING entries may change status)"""
    user_id: str
    type: TransactionType
    amount: Decimal
    fee: Decimal
    total: Decimal
    balance_delta: Decimal  # Signed effect on the owner's available balance
    status: TransactionStatus
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_cvu: Optional[str] = None
    destination_cvu: Optional[str] = None
    destination_alias: Optional[str] = None
    motive: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    completed_at: Optional[datetime] = None
    
    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PROCESSING


@dataclass
class ReconciliationReport:
    """Result of comparing a stored balance with the sum of its ledger entries"""
    user_id: str
    balance: Decimal
    ledger_total: Decimal
    entry_count: int
    
    @property
    def difference(self) -> Decimal:
        return self.balance - self.ledger_total
    
    @property
    def balanced(self) -> bool:
        return self.difference == ZERO
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": str(self.balance),
            "ledger_total": str(self.ledger_total),
            "difference": str(self.difference),
            "entry_count": self.entry_count,
            "balanced": self.balanced
        }


class Ledger:
    """
    Owns the transaction log and hands out units of work.
    
    Engines open a unit with ``with ledger.atomic():`` (or ``run_atomic(fn)``),
    mutate balances through the wallet, and call ``record`` as the last step.
    """
    
    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.transactions_table = "transactions"
        self.logger = get_logger("simply.ledger")
    
    def atomic(self):
        """Unit of work: all writes inside commit together or roll back together"""
        return self.storage.atomic()
    
    def run_atomic(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` as a single unit of work and return its result"""
        with self.storage.atomic():
            return fn()
    
    def record(
        self,
        user_id: str,
        tx_type: TransactionType,
        amount: Decimal,
        balance_delta: Decimal,
        fee: Decimal = ZERO,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        metadata: Optional[Dict[str, Any]] = None,
        source_cvu: Optional[str] = None,
        destination_cvu: Optional[str] = None,
        destination_alias: Optional[str] = None,
        motive: Optional[str] = None,
        reference: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Append a ledger entry.
        
        Must run inside a unit of work so the entry commits together with the
        balance change it describes.
        
        Raises:
            RuntimeError: If called outside atomic()
        """
        if not self.storage.in_transaction:
            raise RuntimeError("Ledger entries must be written inside a unit of work")
        
        now = datetime.now(timezone.utc)
        amount = round_money(amount)
        fee = round_money(fee)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            type=tx_type,
            amount=amount,
            fee=fee,
            total=amount + fee,
            balance_delta=round_money(balance_delta),
            status=status,
            metadata=metadata or {},
            source_cvu=source_cvu,
            destination_cvu=destination_cvu,
            destination_alias=destination_alias,
            motive=motive,
            reference=reference,
            description=description,
            completed_at=now if status == TransactionStatus.COMPLETED else None
        )
        self._save_transaction(transaction)
        
        log_action(
            self.logger, "debug", f"Recorded {tx_type.value} of {transaction.total}",
            user_id=user_id, action="ledger.record",
            resource=f"transaction:{transaction.id}",
            extra={"status": status.value, "balance_delta": str(transaction.balance_delta)}
        )
        return transaction
    
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None
    
    def list_transactions(
        self,
        user_id: str,
        tx_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> List[Transaction]:
        """List a user's ledger entries, newest first"""
        filters: Dict[str, Any] = {"user_id": user_id}
        if tx_type:
            filters["type"] = tx_type.value
        if status:
            filters["status"] = status.value
        
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.transactions_table, filters)
        ]
        if date_from:
            date_from = as_utc(date_from)
            transactions = [t for t in transactions if t.created_at >= date_from]
        if date_to:
            date_to = as_utc(date_to)
            transactions = [t for t in transactions if t.created_at <= date_to]
        
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions
    
    def outgoing_total(self, user_id: str, since: datetime) -> Decimal:
        """Sum of COMPLETED outgoing transfer amounts created at or after ``since``"""
        transactions = self.list_transactions(
            user_id,
            tx_type=TransactionType.TRANSFER_OUT,
            status=TransactionStatus.COMPLETED,
            date_from=since
        )
        return sum((t.amount for t in transactions), ZERO)
    
    def mark_completed(self, transaction_id: str) -> Transaction:
        """Move a PROCESSING entry to COMPLETED"""
        return self._finish(transaction_id, TransactionStatus.COMPLETED)
    
    def mark_failed(self, transaction_id: str, reason: Optional[str] = None) -> Transaction:
        """Move a PROCESSING entry to FAILED"""
        return self._finish(transaction_id, TransactionStatus.FAILED, reason)
    
    def reconcile(self, user_id: str, balance: Decimal) -> ReconciliationReport:
        """Compare a stored balance with the sum of the user's balance deltas"""
        transactions = self.list_transactions(user_id)
        ledger_total = sum((t.balance_delta for t in transactions), ZERO)
        report = ReconciliationReport(
            user_id=user_id,
            balance=balance,
            ledger_total=ledger_total,
            entry_count=len(transactions)
        )
        if not report.balanced:
            log_action(
                self.logger, "error", "Balance does not reconcile with ledger",
                user_id=user_id, action="ledger.reconcile", extra=report.to_dict()
            )
        return report
    
    def _finish(self, transaction_id: str, status: TransactionStatus,
                reason: Optional[str] = None) -> Transaction:
        with self.storage.atomic():
            transaction = self.get_transaction(transaction_id)
            if not transaction:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if transaction.is_terminal:
                raise StateError(
                    f"Transaction {transaction_id} is {transaction.status.value} and cannot change",
                    {"status": transaction.status.value}
                )
            
            now = datetime.now(timezone.utc)
            transaction.status = status
            transaction.completed_at = now
            transaction.updated_at = now
            if reason:
                transaction.metadata["failure_reason"] = reason
            self._save_transaction(transaction)
        return transaction
    
    def _save_transaction(self, transaction: Transaction) -> None:
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())
    
    def _transaction_from_dict(self, data: Dict[str, Any]) -> Transaction:
        return Transaction(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            type=TransactionType(data['type']),
            amount=Decimal(data['amount']),
            fee=Decimal(data['fee']),
            total=Decimal(data['total']),
            balance_delta=Decimal(data['balance_delta']),
            status=TransactionStatus(data['status']),
            metadata=data.get('metadata') or {},
            source_cvu=data.get('source_cvu'),
            destination_cvu=data.get('destination_cvu'),
            destination_alias=data.get('destination_alias'),
            motive=data.get('motive'),
            reference=data.get('reference'),
            description=data.get('description'),
            completed_at=parse_datetime(data.get('completed_at'))
        )
