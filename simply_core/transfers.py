"""
Transfer Engine Module

Outgoing transfers by CVU or alias. Destinations inside Simply settle
instantly with both legs written in one unit of work; destinations at other
institutions leave a PROCESSING outgoing leg that the interbank network later
settles or fails (failed transfers are refunded). Every transfer upserts the
destination into the sender's contact book.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid

from .config import SimplyConfig, get_config
from .errors import (
    DailyLimitExceededError, InactiveAccountError, InvalidAmountError, InvalidCVUError,
    InvalidFormatError, InvalidMotiveError, LimitExceededError, MissingDestinationError,
    NotFoundError, SelfTransferError, StateError, InsufficientFundsError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import Ledger, TransactionStatus, TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, parse_amount, percent_of
from .storage import StorageInterface, StorageRecord, parse_datetime
from .wallet import AccountStatus, BalanceOperation, WalletEngine, CVU_PATTERN, is_valid_cvu

# BCRA transfer motive codes
BCRA_MOTIVES = {
    "VAR": "Varios",
    "ALQ": "Alquileres",
    "CUO": "Cuotas",
    "EXP": "Expensas",
    "FAC": "Facturas",
    "PRE": "Préstamos",
    "SEG": "Seguros",
    "HON": "Honorarios",
    "HAB": "Haberes",
    "JUB": "Jubilaciones",
}

EXTERNAL_ACCOUNT_NAME = "External account"
EXTERNAL_MESSAGE = "External account. The transfer may take up to 24 business hours."
INTERNAL_MESSAGE = "Instant transfer within Simply"
CONTACTS_DEFAULT_LIMIT = 50


@dataclass
class Contact(StorageRecord):
    """Transfer destination remembered for a user"""
    user_id: str
    name: str
    cvu: Optional[str] = None
    alias: Optional[str] = None
    is_favorite: bool = False
    last_used: Optional[datetime] = None


class TransferEngine(EventPublisherMixin):
    """
    Executes transfers, enforces fees and limits, and keeps the contact book
    """
    
    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        wallet: WalletEngine,
        config: Optional[SimplyConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.wallet = wallet
        self.config = config or get_config()
        self.contacts_table = "contacts"
        self.logger = get_logger("simply.transfers")
        self.set_event_dispatcher(event_dispatcher)
    
    @property
    def fee_rate(self) -> Decimal:
        return Decimal(self.config.transfer_fee_rate)
    
    def motives(self) -> List[Dict[str, str]]:
        """BCRA motive codes accepted by transfer()"""
        return [{"code": code, "description": description} for code, description in BCRA_MOTIVES.items()]
    
    def transfer(
        self,
        user_id: str,
        amount,
        motive: str,
        destination_cvu: Optional[str] = None,
        destination_alias: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send ``amount`` plus a percentage fee from the user's balance.
        
        Raises:
            MissingDestinationError: neither CVU nor alias given
            InvalidMotiveError: motive is not a BCRA code
            InvalidAmountError: amount not positive
            NotFoundError: sender has no account
            InsufficientFundsError: balance below amount plus fee
            DailyLimitExceededError: today's completed outgoing total would exceed the daily limit
            LimitExceededError: this month's completed outgoing total would exceed the monthly limit
            SelfTransferError: destination is the sender's own account
            InactiveAccountError: sender or internal destination not ACTIVE
        """
        if not destination_cvu and not destination_alias:
            raise MissingDestinationError("A destination CVU or alias is required")
        if motive not in BCRA_MOTIVES:
            raise InvalidMotiveError(f"Invalid transfer motive: {motive}", {"motives": list(BCRA_MOTIVES)})
        amount = parse_amount(amount)
        if amount <= ZERO:
            raise InvalidAmountError("Amount must be positive", {"amount": amount})
        if destination_cvu and not is_valid_cvu(destination_cvu):
            raise InvalidCVUError("CVU must have 22 digits")
        
        fee = percent_of(amount, self.fee_rate)
        total = amount + fee
        
        with self.ledger.atomic():
            source = self.wallet.require_account(user_id)
            if source.balance < total:
                raise InsufficientFundsError("Insufficient funds", required=total, available=source.balance)
            
            now = datetime.now(timezone.utc)
            day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            used_today = self.ledger.outgoing_total(user_id, day_start)
            if used_today + amount > source.daily_limit:
                raise DailyLimitExceededError(
                    "Daily transfer limit exceeded",
                    {"limit": source.daily_limit, "used": used_today}
                )
            used_this_month = self.ledger.outgoing_total(user_id, day_start.replace(day=1))
            if used_this_month + amount > source.monthly_limit:
                raise LimitExceededError(
                    "Monthly transfer limit exceeded",
                    {"limit": source.monthly_limit, "used": used_this_month}
                )
            
            destination = self.wallet.find_by_cvu_or_alias(destination_cvu or destination_alias)
            if destination and destination.user_id == user_id:
                raise SelfTransferError("Cannot transfer to your own account")
            if not source.is_active:
                raise InactiveAccountError(f"Account is {source.status.value}", {"status": source.status.value})
            if destination and not destination.is_active:
                raise InactiveAccountError("Destination account is not active", {"status": destination.status.value})
            
            external = destination is None
            dest_cvu = destination.cvu if destination else destination_cvu
            dest_alias = destination.alias if destination else destination_alias
            dest_name = (destination.holder_name or destination.alias or destination.cvu) if destination else EXTERNAL_ACCOUNT_NAME
            
            self.wallet.update_balance(user_id, total, BalanceOperation.SUBTRACT)
            if destination:
                self.wallet.update_balance(destination.user_id, amount, BalanceOperation.ADD)
            
            self._touch_contact(user_id, dest_cvu, dest_alias, dest_name, now)
            
            outgoing = self.ledger.record(
                user_id, TransactionType.TRANSFER_OUT, amount,
                fee=fee,
                balance_delta=-total,
                status=TransactionStatus.PROCESSING if external else TransactionStatus.COMPLETED,
                metadata={"destination_name": dest_name, "external": external},
                source_cvu=source.cvu,
                destination_cvu=dest_cvu,
                destination_alias=dest_alias,
                motive=motive,
                reference=reference
            )
            if destination:
                self.ledger.record(
                    destination.user_id, TransactionType.TRANSFER_IN, amount,
                    balance_delta=amount,
                    metadata={
                        "source_name": source.holder_name or source.alias or source.cvu,
                        "transfer_out_id": outgoing.id
                    },
                    source_cvu=source.cvu,
                    destination_cvu=destination.cvu,
                    destination_alias=destination.alias,
                    motive=motive,
                    reference=reference
                )
        
        log_action(
            self.logger, "info", "Transfer executed",
            user_id=user_id, action="transfer.send", resource=f"transaction:{outgoing.id}",
            extra={"amount": str(amount), "fee": str(fee), "external": external, "motive": motive}
        )
        self.publish_event(
            DomainEvent.TRANSFER_PROCESSING if external else DomainEvent.TRANSFER_COMPLETED,
            "transaction", outgoing.id,
            {
                "amount": amount,
                "fee": fee,
                "destination_cvu": dest_cvu,
                "destination_user_id": destination.user_id if destination else None
            },
            user_id=user_id
        )
        return {
            "transaction": outgoing,
            "amount": amount,
            "fee": fee,
            "total": total,
            "destination": {
                "cvu": dest_cvu,
                "alias": dest_alias,
                "name": dest_name,
                "external": external
            }
        }
    
    def settle_external_transfer(self, transaction_id: str, success: bool,
                                 reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Settlement callback for an outgoing transfer left PROCESSING.
        
        On success the entry becomes COMPLETED. On failure it becomes FAILED
        and amount plus fee are refunded with a TRANSFER_REFUND entry.
        
        Raises:
            NotFoundError: unknown transaction
            StateError: not an outgoing transfer, or no longer PROCESSING
        """
        refund = None
        with self.ledger.atomic():
            transaction = self.ledger.get_transaction(transaction_id)
            if not transaction:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if transaction.type != TransactionType.TRANSFER_OUT:
                raise StateError("Only outgoing transfers can be settled", {"type": transaction.type.value})
            
            if success:
                transaction = self.ledger.mark_completed(transaction_id)
            else:
                transaction = self.ledger.mark_failed(transaction_id, reason)
                self.wallet.update_balance(transaction.user_id, transaction.total, BalanceOperation.ADD)
                refund = self.ledger.record(
                    transaction.user_id, TransactionType.TRANSFER_REFUND, transaction.amount,
                    fee=transaction.fee,
                    balance_delta=transaction.total,
                    metadata={"original_transaction_id": transaction.id, "reason": reason},
                    destination_cvu=transaction.destination_cvu,
                    destination_alias=transaction.destination_alias,
                    reference=transaction.reference
                )
        
        log_action(
            self.logger, "info" if success else "warning",
            "External transfer settled" if success else "External transfer failed, refunded",
            user_id=transaction.user_id, action="transfer.settle", resource=f"transaction:{transaction.id}",
            extra={"success": success, "reason": reason}
        )
        self.publish_event(
            DomainEvent.TRANSFER_SETTLED if success else DomainEvent.TRANSFER_FAILED,
            "transaction", transaction.id,
            {"amount": transaction.amount, "total": transaction.total, "reason": reason},
            user_id=transaction.user_id
        )
        return {"transaction": transaction, "refund": refund}
    
    def receive_external_transfer(
        self,
        destination: str,
        amount,
        source_cvu: str,
        source_name: Optional[str] = None,
        motive: str = "VAR",
        reference: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Credit funds arriving from another institution.
        
        Raises:
            InvalidMotiveError, InvalidAmountError, InvalidCVUError
            NotFoundError: destination CVU or alias unknown
            InactiveAccountError: destination account is blocked
        """
        if motive not in BCRA_MOTIVES:
            raise InvalidMotiveError(f"Invalid transfer motive: {motive}", {"motives": list(BCRA_MOTIVES)})
        amount = parse_amount(amount)
        if amount <= ZERO:
            raise InvalidAmountError("Amount must be positive", {"amount": amount})
        if not is_valid_cvu(source_cvu):
            raise InvalidCVUError("Source CVU must have 22 digits")
        
        with self.ledger.atomic():
            account = self.wallet.find_by_cvu_or_alias(destination)
            if not account:
                raise NotFoundError(f"Destination {destination} not found")
            if account.status == AccountStatus.BLOCKED:
                raise InactiveAccountError("Destination account is blocked", {"status": account.status.value})
            
            self.wallet.update_balance(account.user_id, amount, BalanceOperation.ADD)
            transaction = self.ledger.record(
                account.user_id, TransactionType.TRANSFER_IN, amount,
                balance_delta=amount,
                metadata={"source_name": source_name or EXTERNAL_ACCOUNT_NAME, "external": True},
                source_cvu=source_cvu,
                destination_cvu=account.cvu,
                destination_alias=account.alias,
                motive=motive,
                reference=reference
            )
        
        log_action(
            self.logger, "info", "Incoming transfer credited",
            user_id=account.user_id, action="transfer.receive", resource=f"transaction:{transaction.id}",
            extra={"amount": str(amount), "source_cvu": source_cvu}
        )
        self.publish_event(
            DomainEvent.TRANSFER_RECEIVED, "transaction", transaction.id,
            {"amount": amount, "source_cvu": source_cvu}, user_id=account.user_id
        )
        return {"transaction": transaction}
    
    def validate_destination(self, identifier: str) -> Dict[str, Any]:
        """
        Resolve a CVU or alias before transferring.
        
        Raises:
            InvalidFormatError: neither a 22-digit CVU nor an alias
            InactiveAccountError: destination found but not ACTIVE
        """
        identifier = (identifier or "").strip()
        is_cvu = CVU_PATTERN.match(identifier) is not None
        if not is_cvu and "." not in identifier:
            raise InvalidFormatError("Use a 22-digit CVU or an alias (word.word.word)")
        
        account = self.wallet.find_by_cvu_or_alias(identifier)
        if not account:
            return {
                "found": False,
                "external": True,
                "cvu": identifier if is_cvu else None,
                "alias": None if is_cvu else identifier,
                "name": None,
                "message": EXTERNAL_MESSAGE
            }
        
        if not account.is_active:
            raise InactiveAccountError("Destination account is not active", {"status": account.status.value})
        
        return {
            "found": True,
            "external": False,
            "cvu": account.cvu,
            "alias": account.alias,
            "name": account.holder_name,
            "message": INTERNAL_MESSAGE
        }
    
    # Contact book
    
    def get_contacts(self, user_id: str, search: Optional[str] = None,
                     favorites_only: bool = False, limit: int = CONTACTS_DEFAULT_LIMIT) -> List[Contact]:
        """Contacts with favorites first, then most recently used"""
        contacts = [self._contact_from_dict(data) for data in self.storage.find(self.contacts_table, {"user_id": user_id})]
        
        if search:
            needle = search.lower()
            contacts = [
                c for c in contacts
                if needle in c.name.lower()
                or (c.alias and needle in c.alias.lower())
                or (c.cvu and search in c.cvu)
            ]
        if favorites_only:
            contacts = [c for c in contacts if c.is_favorite]
        
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        contacts.sort(key=lambda c: c.last_used or oldest, reverse=True)
        contacts.sort(key=lambda c: c.is_favorite, reverse=True)
        return contacts[:limit]
    
    def save_contact(self, user_id: str, cvu: str, name: str, alias: Optional[str] = None,
                     is_favorite: Optional[bool] = None) -> Contact:
        """
        Create or update the contact for (user, cvu).
        
        Raises:
            InvalidCVUError: cvu is not 22 digits
        """
        if not is_valid_cvu(cvu):
            raise InvalidCVUError("CVU must have 22 digits")
        
        with self.storage.atomic():
            contact = self._find_contact(user_id, cvu, None)
            now = datetime.now(timezone.utc)
            if contact:
                contact.name = name
                contact.alias = alias
                if is_favorite is not None:
                    contact.is_favorite = is_favorite
                contact.updated_at = now
            else:
                contact = Contact(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    user_id=user_id,
                    cvu=cvu,
                    alias=alias,
                    name=name,
                    is_favorite=bool(is_favorite)
                )
            self._save_contact(contact)
        return contact
    
    def delete_contact(self, user_id: str, contact_id: str) -> Dict[str, bool]:
        """Remove a contact owned by the user"""
        contact = self._require_contact(user_id, contact_id)
        self.storage.delete(self.contacts_table, contact.id)
        return {"deleted": True}
    
    def toggle_favorite(self, user_id: str, contact_id: str) -> Contact:
        """Flip a contact's favorite flag"""
        with self.storage.atomic():
            contact = self._require_contact(user_id, contact_id)
            contact.is_favorite = not contact.is_favorite
            contact.updated_at = datetime.now(timezone.utc)
            self._save_contact(contact)
        return contact
    
    def _touch_contact(self, user_id: str, cvu: Optional[str], alias: Optional[str],
                       name: str, now: datetime) -> Contact:
        contact = self._find_contact(user_id, cvu, alias)
        if contact:
            contact.last_used = now
            contact.updated_at = now
        else:
            contact = Contact(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                cvu=cvu,
                alias=alias,
                name=name,
                last_used=now
            )
        self._save_contact(contact)
        return contact
    
    def _find_contact(self, user_id: str, cvu: Optional[str], alias: Optional[str]) -> Optional[Contact]:
        """Contacts are keyed by (user, cvu); alias-only external contacts by (user, alias)"""
        if cvu:
            filters = {"user_id": user_id, "cvu": cvu}
        else:
            filters = {"user_id": user_id, "cvu": None, "alias": alias}
        matches = self.storage.find(self.contacts_table, filters)
        if matches:
            return self._contact_from_dict(matches[0])
        return None
    
    def _require_contact(self, user_id: str, contact_id: str) -> Contact:
        data = self.storage.load(self.contacts_table, contact_id)
        if not data or data['user_id'] != user_id:
            raise NotFoundError(f"Contact {contact_id} not found")
        return self._contact_from_dict(data)
    
    def _save_contact(self, contact: Contact) -> None:
        self.storage.save(self.contacts_table, contact.id, contact.to_dict())
    
    def _contact_from_dict(self, data: Dict[str, Any]) -> Contact:
        return Contact(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            name=data['name'],
            cvu=data.get('cvu'),
            alias=data.get('alias'),
            is_favorite=data.get('is_favorite', False),
            last_used=parse_datetime(data.get('last_used'))
        )
