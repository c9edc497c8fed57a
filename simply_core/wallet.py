"""
Wallet Engine Module

Owns the per-user Account: CVU/alias identity, available balance and transfer
limits. Balance changes go through update_balance, which performs a relative
increment inside the storage unit of work and never lets the balance go
negative. Other engines call it from inside their own units of work and pair
each change with a ledger entry.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import math
import re
import secrets
import time
import uuid

from .config import SimplyConfig, get_config
from .errors import (
    ConflictError, InactiveAccountError, InsufficientFundsError, InvalidAmountError,
    InvalidFormatError, InvalidRangeError, LimitExceededError, NotFoundError,
    ProvisioningError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import Ledger, ReconciliationReport, TransactionType
from .logging_config import get_logger, log_action
from .money import Money, ZERO, round_money
from .storage import StorageConstraintError, StorageInterface, StorageRecord, parse_datetime

ALIAS_PATTERN = re.compile(r'^[a-z]+\.[a-z]+\.[a-z]+$')
CVU_PATTERN = re.compile(r'^\d{22}$')


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    SUSPENDED = "suspended"  # Temporarily restricted by operations
    BLOCKED = "blocked"      # Blocked by compliance


class BalanceOperation(Enum):
    ADD = "add"
    SUBTRACT = "subtract"


@dataclass
class Account(StorageRecord):
    """Per-user wallet account, stored under the owner's user_id"""
    user_id: str
    cvu: str
    balance: Decimal
    balance_pending: Decimal
    daily_limit: Decimal
    monthly_limit: Decimal
    status: AccountStatus = AccountStatus.ACTIVE
    alias: Optional[str] = None
    holder_name: Optional[str] = None
    alias_changes: int = 0
    alias_changes_year: Optional[int] = None
    
    def alias_changes_used(self, year: int) -> int:
        """Alias changes already made in ``year``; the counter resets each calendar year"""
        if self.alias_changes_year != year:
            return 0
        return self.alias_changes
    
    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class BalanceSummary:
    """Balance view returned to clients"""
    available: Money
    pending: Money
    invested: Money
    financed: Money
    total: Money
    daily_limit: Money
    monthly_limit: Money
    cvu: str
    alias: Optional[str]
    status: AccountStatus
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": str(self.available.amount),
            "pending": str(self.pending.amount),
            "invested": str(self.invested.amount),
            "financed": str(self.financed.amount),
            "total": str(self.total.amount),
            "currency": self.available.currency.code,
            "limits": {
                "daily": str(self.daily_limit.amount),
                "monthly": str(self.monthly_limit.amount)
            },
            "cvu": self.cvu,
            "alias": self.alias,
            "status": self.status.value
        }


def is_valid_cvu(value: Optional[str]) -> bool:
    return bool(value) and CVU_PATTERN.match(value) is not None


class WalletEngine(EventPublisherMixin):
    """
    Manages accounts, balances and movements
    """
    
    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        config: Optional[SimplyConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.config = config or get_config()
        self.accounts_table = "accounts"
        self.investments_table = "investments"
        self.financings_table = "financings"
        self.logger = get_logger("simply.wallet")
        self.set_event_dispatcher(event_dispatcher)
    
    def create_account(self, user_id: str, holder_name: Optional[str] = None) -> Account:
        """
        Provision the wallet account for a KYC-approved user.
        
        Idempotent: returns the existing account when the user already has one.
        
        Raises:
            ProvisioningError: If no unique CVU could be allocated
        """
        with self.storage.atomic():
            existing = self.get_account(user_id)
            if existing:
                return existing
            
            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                cvu=self._allocate_cvu(),
                balance=ZERO,
                balance_pending=ZERO,
                daily_limit=Decimal(self.config.default_daily_limit),
                monthly_limit=Decimal(self.config.default_monthly_limit),
                holder_name=holder_name
            )
            self._save_account(account)
        
        log_action(
            self.logger, "info", "Wallet account created",
            user_id=user_id, action="account.create", resource=f"account:{account.id}",
            extra={"cvu": account.cvu}
        )
        self.publish_event(
            DomainEvent.ACCOUNT_CREATED, "account", account.id,
            {"cvu": account.cvu}, user_id=user_id
        )
        return account
    
    def get_account(self, user_id: str) -> Optional[Account]:
        """Get account by owner"""
        data = self.storage.load(self.accounts_table, user_id)
        if data:
            return self._account_from_dict(data)
        return None
    
    def require_account(self, user_id: str) -> Account:
        """Get account by owner or raise NotFoundError"""
        account = self.get_account(user_id)
        if not account:
            raise NotFoundError(f"No wallet account for user {user_id}")
        return account
    
    def require_active_account(self, user_id: str) -> Account:
        account = self.require_account(user_id)
        if not account.is_active:
            raise InactiveAccountError(
                f"Account is {account.status.value}",
                {"status": account.status.value}
            )
        return account
    
    def find_by_cvu_or_alias(self, identifier: str) -> Optional[Account]:
        """Resolve a 22-digit CVU or an alias (case-insensitive) to an account"""
        identifier = identifier.strip()
        if CVU_PATTERN.match(identifier):
            matches = self.storage.find(self.accounts_table, {"cvu": identifier})
        else:
            matches = self.storage.find(self.accounts_table, {"alias": identifier.lower()})
        if matches:
            return self._account_from_dict(matches[0])
        return None
    
    def get_balance(self, user_id: str) -> BalanceSummary:
        """
        Balance summary: available, pending, invested (current value of active
        investments), financed (remaining on active financings) and total.
        """
        account = self.require_account(user_id)
        
        invested = sum(
            (Decimal(data['current_value']) for data in self.storage.find(
                self.investments_table, {"user_id": user_id, "status": "active"})),
            ZERO
        )
        financed = sum(
            (Decimal(data['remaining']) for data in self.storage.find(
                self.financings_table, {"user_id": user_id, "status": "active"})),
            ZERO
        )
        
        return BalanceSummary(
            available=Money(account.balance),
            pending=Money(account.balance_pending),
            invested=Money(invested),
            financed=Money(financed),
            total=Money(account.balance + invested),
            daily_limit=Money(account.daily_limit),
            monthly_limit=Money(account.monthly_limit),
            cvu=account.cvu,
            alias=account.alias,
            status=account.status
        )
    
    def update_alias(self, user_id: str, new_alias: str) -> Dict[str, Any]:
        """
        Change the account alias.
        
        Returns:
            {"alias": ..., "changes_remaining": ...}
            
        Raises:
            InvalidFormatError: alias is not word.word.word (lowercase) or too long
            LimitExceededError: yearly change allowance used up
            ConflictError: alias owned by another account
        """
        new_alias = (new_alias or "").strip()
        if not ALIAS_PATTERN.match(new_alias) or len(new_alias) > self.config.alias_max_length:
            raise InvalidFormatError(
                "Invalid alias format, use word.word.word",
                {"max_length": self.config.alias_max_length}
            )
        
        year = datetime.now(timezone.utc).year
        with self.storage.atomic():
            account = self.require_account(user_id)
            used = account.alias_changes_used(year)
            
            if account.alias == new_alias:
                return {
                    "alias": account.alias,
                    "changes_remaining": self.config.max_alias_changes - used
                }
            
            if used >= self.config.max_alias_changes:
                raise LimitExceededError(
                    f"Alias change limit reached ({self.config.max_alias_changes} per year)",
                    {"limit": self.config.max_alias_changes}
                )
            
            owners = self.storage.find(self.accounts_table, {"alias": new_alias})
            if any(owner['user_id'] != user_id for owner in owners):
                raise ConflictError("Alias already in use", {"alias": new_alias})
            
            old_alias = account.alias
            account.alias = new_alias
            account.alias_changes = used + 1
            account.alias_changes_year = year
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)
        
        log_action(
            self.logger, "info", "Alias updated",
            user_id=user_id, action="account.alias_update", resource=f"account:{account.id}",
            extra={"old_alias": old_alias, "new_alias": new_alias}
        )
        self.publish_event(
            DomainEvent.ACCOUNT_ALIAS_UPDATED, "account", account.id,
            {"old_alias": old_alias, "alias": new_alias}, user_id=user_id
        )
        return {
            "alias": account.alias,
            "changes_remaining": self.config.max_alias_changes - account.alias_changes
        }
    
    def get_movements(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        tx_type: Optional[TransactionType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Paginated ledger history, newest first"""
        if limit is None:
            limit = self.config.default_page_size
        if page < 1:
            raise InvalidRangeError("Page must be 1 or greater")
        if limit < 1 or limit > self.config.max_page_size:
            raise InvalidRangeError(
                f"Limit must be between 1 and {self.config.max_page_size}"
            )
        self.require_account(user_id)
        
        transactions = self.ledger.list_transactions(
            user_id, tx_type=tx_type, date_from=date_from, date_to=date_to
        )
        total = len(transactions)
        start = (page - 1) * limit
        
        return {
            "transactions": transactions[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit)
            }
        }
    
    def update_balance(self, user_id: str, amount: Decimal, op: BalanceOperation) -> Decimal:
        """
        Credit or debit the available balance.
        
        Must run inside a unit of work, paired with a ledger entry.
        
        Returns:
            The new balance
            
        Raises:
            InvalidAmountError: amount is not positive
            NotFoundError: user has no account
            InsufficientFundsError: a debit larger than the balance
        """
        if not self.storage.in_transaction:
            raise RuntimeError("Balance changes must run inside a unit of work")
        
        op = BalanceOperation(op)
        amount = round_money(amount)
        if amount <= ZERO:
            raise InvalidAmountError("Amount must be positive", {"amount": amount})
        
        delta = amount if op == BalanceOperation.ADD else -amount
        try:
            return self.storage.increment(
                self.accounts_table, user_id, "balance", delta, minimum=ZERO
            )
        except KeyError:
            raise NotFoundError(f"No wallet account for user {user_id}")
        except StorageConstraintError as e:
            raise InsufficientFundsError("Insufficient funds", required=amount, available=e.current)
    
    def set_status(self, user_id: str, status: AccountStatus, reason: str) -> Account:
        """Suspend, block or reactivate an account"""
        with self.storage.atomic():
            account = self.require_account(user_id)
            old_status = account.status
            account.status = AccountStatus(status)
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)
        
        log_action(
            self.logger, "warning", "Account status changed",
            user_id=user_id, action="account.status_change", resource=f"account:{account.id}",
            extra={"old_status": old_status.value, "new_status": account.status.value, "reason": reason}
        )
        self.publish_event(
            DomainEvent.ACCOUNT_STATUS_CHANGED, "account", account.id,
            {"old_status": old_status.value, "status": account.status.value, "reason": reason},
            user_id=user_id
        )
        return account
    
    def reconcile(self, user_id: str) -> ReconciliationReport:
        """Check the stored balance against the ledger"""
        account = self.require_account(user_id)
        return self.ledger.reconcile(user_id, account.balance)
    
    def _allocate_cvu(self) -> str:
        for _ in range(self.config.cvu_max_attempts):
            cvu = self._generate_cvu()
            if not self.storage.find(self.accounts_table, {"cvu": cvu}):
                return cvu
        raise ProvisioningError("Could not allocate a unique CVU")
    
    def _generate_cvu(self) -> str:
        """Bank code + branch + last 8 digits of the millisecond clock + 3 random digits"""
        timestamp = str(int(time.time() * 1000))[-8:]
        suffix = f"{secrets.randbelow(1000):03d}"
        return f"{self.config.cvu_bank_code}{self.config.cvu_branch_code}{timestamp}{suffix}"
    
    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.user_id, account.to_dict())
    
    def _account_from_dict(self, data: Dict[str, Any]) -> Account:
        return Account(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            cvu=data['cvu'],
            balance=Decimal(data['balance']),
            balance_pending=Decimal(data['balance_pending']),
            daily_limit=Decimal(data['daily_limit']),
            monthly_limit=Decimal(data['monthly_limit']),
            status=AccountStatus(data['status']),
            alias=data.get('alias'),
            holder_name=data.get('holder_name'),
            alias_changes=data.get('alias_changes', 0),
            alias_changes_year=data.get('alias_changes_year')
        )
