"""
Financing Engine Module

Interest-free installment financing drawn against an investment's credit line.
The principal is split into flat monthly installments (the last one absorbs
the rounding remainder) due on a fixed day of the month. Overdue installments
carry a one-time penalty; dropping a financing settles the outstanding debt
plus penalty out of the backing investment.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar
import uuid

from .config import SimplyConfig, get_config
from .errors import (
    AlreadyPaidError, BelowMinimumError, ForbiddenError, InsufficientCollateralError,
    InvalidAmountError, InvalidRangeError, NotFoundError, StateError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .investments import InvestmentEngine
from .ledger import Ledger, TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, parse_amount, percent_of, round_money, split_installments
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime
from .sweeps import SweepResult
from .wallet import BalanceOperation, WalletEngine


class FinancingStatus(Enum):
    """Financing lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"    # All installments paid
    LIQUIDATED = "liquidated"  # Dropped and settled from the collateral


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"
    DROPPED = "dropped"  # Settled by a financing drop


@dataclass
class Financing(StorageRecord):
    """Installment financing backed by an investment"""
    user_id: str
    investment_id: str
    amount: Decimal
    installments_count: int
    installment_amount: Decimal
    remaining: Decimal
    status: FinancingStatus
    next_due_date: Optional[date] = None
    penalty_applied: bool = False
    penalty_amount: Decimal = ZERO
    destination_type: Optional[str] = None
    destination_ref: Optional[str] = None
    description: Optional[str] = None
    completed_at: Optional[datetime] = None
    
    @property
    def is_active(self) -> bool:
        return self.status == FinancingStatus.ACTIVE


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a financing"""
    financing_id: str
    user_id: str
    number: int  # 1-based
    amount: Decimal
    penalty_amount: Decimal
    total_due: Decimal
    status: InstallmentStatus
    due_date: date
    paid_at: Optional[datetime] = None
    
    @property
    def is_outstanding(self) -> bool:
        return self.status in (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class FinancingEngine(EventPublisherMixin):
    """
    Manages financing origination, installment collection, overdue penalties
    and early termination
    """
    
    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        wallet: WalletEngine,
        investments: InvestmentEngine,
        config: Optional[SimplyConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.wallet = wallet
        self.investments = investments
        self.config = config or get_config()
        self.financings_table = "financings"
        self.installments_table = "installments"
        self.logger = get_logger("simply.financing")
        self.set_event_dispatcher(event_dispatcher)
    
    @property
    def penalty_rate(self) -> Decimal:
        return Decimal(self.config.penalty_rate)
    
    def first_due_date(self, as_of: date) -> date:
        """Due day of the month following ``as_of``"""
        return add_months(as_of, 1).replace(day=self.config.installment_due_day)
    
    def build_schedule(self, amount: Decimal, installments_count: int,
                       as_of: Optional[date] = None) -> List[Dict[str, Any]]:
        """Flat installment schedule, one due date per month"""
        first_due = self.first_due_date(as_of or datetime.now(timezone.utc).date())
        return [
            {
                "number": number,
                "amount": part,
                "due_date": add_months(first_due, number - 1)
            }
            for number, part in enumerate(split_installments(amount, installments_count), start=1)
        ]
    
    def simulate(self, amount, installments_count: int, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Preview a financing without touching any state.
        
        Raises:
            InvalidRangeError: installment count outside the allowed range
        """
        self._validate_installments_count(installments_count)
        amount = parse_amount(amount)
        if amount <= ZERO:
            raise InvalidAmountError("Amount must be positive", {"amount": amount})
        
        schedule = self.build_schedule(amount, installments_count, as_of)
        return {
            "amount": amount,
            "installments_count": installments_count,
            "installment_amount": schedule[0]["amount"],
            "total_to_pay": amount,
            "interest": ZERO,
            "penalty_rate": self.penalty_rate,
            "schedule": schedule
        }
    
    def create(
        self,
        user_id: str,
        investment_id: str,
        amount,
        installments_count: int,
        destination_type: Optional[str] = None,
        destination_ref: Optional[str] = None,
        description: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> Financing:
        """
        Originate a financing and disburse it to the wallet balance.
        
        Raises:
            InvalidRangeError: installment count outside the allowed range
            BelowMinimumError: amount below the minimum financing
            NotFoundError: investment not ACTIVE or not owned by the user
            InsufficientCreditError: amount above the investment's available credit
        """
        self._validate_installments_count(installments_count)
        amount = parse_amount(amount)
        minimum = Decimal(self.config.min_financing_amount)
        if amount < minimum:
            raise BelowMinimumError(f"Minimum financing is {minimum}", minimum=minimum)
        
        schedule = self.build_schedule(amount, installments_count, as_of)
        
        with self.ledger.atomic():
            investment = self.investments.get_investment(investment_id)
            if not investment or investment.user_id != user_id or not investment.is_active:
                raise NotFoundError(f"Active investment {investment_id} not found")
            self.wallet.require_account(user_id)
            
            self.investments.reserve_credit(investment_id, amount)
            
            now = datetime.now(timezone.utc)
            financing = Financing(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                investment_id=investment_id,
                amount=amount,
                installments_count=installments_count,
                installment_amount=schedule[0]["amount"],
                remaining=amount,
                status=FinancingStatus.ACTIVE,
                next_due_date=schedule[0]["due_date"],
                destination_type=destination_type,
                destination_ref=destination_ref,
                description=description
            )
            self._save_financing(financing)
            
            for entry in schedule:
                installment = Installment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    financing_id=financing.id,
                    user_id=user_id,
                    number=entry["number"],
                    amount=entry["amount"],
                    penalty_amount=ZERO,
                    total_due=entry["amount"],
                    status=InstallmentStatus.PENDING,
                    due_date=entry["due_date"]
                )
                self._save_installment(installment)
            
            self.wallet.update_balance(user_id, amount, BalanceOperation.ADD)
            self.ledger.record(
                user_id, TransactionType.INVESTMENT_DEPOSIT, amount,
                balance_delta=amount,
                metadata={
                    "type": "financing_disbursement",
                    "financing_id": financing.id,
                    "investment_id": investment_id,
                    "destination_type": destination_type,
                    "destination_ref": destination_ref
                },
                description=description or "Financing disbursement"
            )
        
        log_action(
            self.logger, "info", "Financing created",
            user_id=user_id, action="financing.create", resource=f"financing:{financing.id}",
            extra={"amount": str(amount), "installments": installments_count, "investment_id": investment_id}
        )
        self.publish_event(
            DomainEvent.FINANCING_CREATED, "financing", financing.id,
            {"amount": amount, "installments_count": installments_count, "investment_id": investment_id},
            user_id=user_id
        )
        return financing
    
    def pay_installment(self, user_id: str, installment_id: str) -> Dict[str, Any]:
        """
        Pay one installment (principal plus any penalty) from the wallet balance.
        
        Raises:
            NotFoundError: installment does not exist
            ForbiddenError: installment belongs to another user
            AlreadyPaidError: installment already PAID
            StateError: installment was dropped or the financing is no longer active
            InsufficientFundsError: balance below total due
        """
        with self.ledger.atomic():
            installment = self.get_installment(installment_id)
            if not installment:
                raise NotFoundError(f"Installment {installment_id} not found")
            financing = self.get_financing(installment.financing_id)
            if not financing:
                raise NotFoundError(f"Financing {installment.financing_id} not found")
            if financing.user_id != user_id:
                raise ForbiddenError("Installment belongs to another user")
            if installment.status == InstallmentStatus.PAID:
                raise AlreadyPaidError(f"Installment {installment.number} is already paid")
            if not installment.is_outstanding or not financing.is_active:
                raise StateError(
                    f"Installment {installment.number} is not payable",
                    {"installment_status": installment.status.value, "financing_status": financing.status.value}
                )
            
            self.wallet.update_balance(user_id, installment.total_due, BalanceOperation.SUBTRACT)
            
            now = datetime.now(timezone.utc)
            installment.status = InstallmentStatus.PAID
            installment.paid_at = now
            installment.updated_at = now
            self._save_installment(installment)
            
            financing.remaining = max(ZERO, financing.remaining - installment.amount)
            financing.updated_at = now
            completed = financing.remaining == ZERO
            if completed:
                financing.status = FinancingStatus.COMPLETED
                financing.completed_at = now
                financing.next_due_date = None
                self.investments.release_credit(financing.investment_id, financing.amount)
            else:
                upcoming = self._outstanding_installments(financing.id)
                financing.next_due_date = upcoming[0].due_date if upcoming else None
            self._save_financing(financing)
            
            transaction = self.ledger.record(
                user_id, TransactionType.INSTALLMENT_PAYMENT, installment.amount,
                fee=installment.penalty_amount,
                balance_delta=-installment.total_due,
                metadata={
                    "financing_id": financing.id,
                    "installment_id": installment.id,
                    "installment_number": installment.number,
                    "penalty_included": installment.penalty_amount > ZERO
                },
                description=f"Installment {installment.number}/{financing.installments_count}"
            )
        
        log_action(
            self.logger, "info", "Installment paid",
            user_id=user_id, action="financing.pay_installment", resource=f"installment:{installment.id}",
            extra={"financing_id": financing.id, "total_due": str(installment.total_due),
                   "remaining": str(financing.remaining)}
        )
        self.publish_event(
            DomainEvent.INSTALLMENT_PAID, "installment", installment.id,
            {"financing_id": financing.id, "number": installment.number, "total_due": installment.total_due},
            user_id=user_id
        )
        if completed:
            self.publish_event(
                DomainEvent.FINANCING_COMPLETED, "financing", financing.id,
                {"amount": financing.amount}, user_id=user_id
            )
        return {
            "installment": installment,
            "financing": financing,
            "transaction": transaction,
            "financing_completed": completed
        }
    
    def drop_financing(self, user_id: str, financing_id: str) -> Dict[str, Any]:
        """
        Terminate a financing early, settling remaining debt plus penalty from
        the backing investment and crediting any surplus to the wallet.
        
        Other ACTIVE financings backed by the same investment are settled in
        the same unit, since the investment is consumed.
        
        Raises:
            NotFoundError: no ACTIVE financing with this id owned by the user
            InsufficientCollateralError: investment value below debt plus penalty
        """
        with self.ledger.atomic():
            financing = self.get_financing(financing_id)
            if not financing or financing.user_id != user_id or not financing.is_active:
                raise NotFoundError(f"Active financing {financing_id} not found")
            
            investment = self.investments.get_investment(financing.investment_id)
            if not investment or not investment.is_active:
                raise StateError(f"Backing investment {financing.investment_id} is not active")
            
            settled = [financing] + [
                f for f in self._active_financings_for(financing.investment_id)
                if f.id != financing.id
            ]
            penalties = {f.id: percent_of(f.remaining, self.penalty_rate) for f in settled}
            debt = sum((f.remaining for f in settled), ZERO)
            penalty = sum(penalties.values(), ZERO)
            total_to_pay = debt + penalty
            
            collateral = investment.current_value
            if collateral < total_to_pay:
                raise InsufficientCollateralError(
                    "Investment value does not cover remaining debt plus penalty",
                    required=total_to_pay, available=collateral
                )
            
            now = datetime.now(timezone.utc)
            for settled_financing in settled:
                for installment in self._outstanding_installments(settled_financing.id):
                    installment.status = InstallmentStatus.DROPPED
                    installment.updated_at = now
                    self._save_installment(installment)
                
                settled_financing.status = FinancingStatus.LIQUIDATED
                settled_financing.penalty_applied = True
                settled_financing.penalty_amount = penalties[settled_financing.id]
                settled_financing.remaining = ZERO
                settled_financing.next_due_date = None
                settled_financing.completed_at = now
                settled_financing.updated_at = now
                self._save_financing(settled_financing)
            
            self.investments.liquidate_by_penalty(investment.id)
            
            surplus = round_money(collateral - total_to_pay)
            if surplus > ZERO:
                self.wallet.update_balance(user_id, surplus, BalanceOperation.ADD)
            else:
                surplus = ZERO
            
            transaction = self.ledger.record(
                user_id, TransactionType.PENALTY_CHARGE, penalty,
                balance_delta=surplus,
                metadata={
                    "financing_id": financing.id,
                    "investment_id": investment.id,
                    "reason": "early_termination",
                    "settled_financings": [f.id for f in settled],
                    "debt_paid": str(debt),
                    "total_deducted": str(total_to_pay),
                    "returned_to_user": str(surplus)
                },
                description="Financing early termination"
            )
        
        log_action(
            self.logger, "warning", "Financing dropped",
            user_id=user_id, action="financing.drop", resource=f"financing:{financing.id}",
            extra={"debt_paid": str(debt), "penalty": str(penalty), "returned_to_user": str(surplus)}
        )
        for settled_financing in settled:
            self.publish_event(
                DomainEvent.FINANCING_DROPPED, "financing", settled_financing.id,
                {"penalty_amount": settled_financing.penalty_amount, "investment_id": investment.id},
                user_id=user_id
            )
        return {
            "debt_paid": debt,
            "penalty_charged": penalty,
            "total_deducted": total_to_pay,
            "returned_to_user": surplus,
            "transaction": transaction
        }
    
    def process_overdue_installments(self, as_of: Optional[date] = None) -> SweepResult:
        """
        Apply the one-time penalty to every PENDING installment due before
        ``as_of``. Safe to run repeatedly: penalized installments become
        OVERDUE and are never penalized again.
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        result = SweepResult(name="overdue_installments", as_of=as_of)
        
        pending = [
            self._installment_from_dict(data)
            for data in self.storage.find(self.installments_table, {"status": InstallmentStatus.PENDING.value})
        ]
        for candidate in pending:
            if candidate.due_date >= as_of:
                continue
            try:
                installment = self._mark_overdue(candidate.id, as_of)
            except Exception as e:
                result.record_failure(candidate.id, e)
                log_action(
                    self.logger, "error", f"Overdue processing failed: {e}",
                    user_id=candidate.user_id, action="financing.mark_overdue",
                    resource=f"installment:{candidate.id}", extra={"as_of": as_of.isoformat()}
                )
                continue
            
            if installment is None:
                result.skipped += 1
                continue
            result.processed += 1
            self.publish_event(
                DomainEvent.INSTALLMENT_OVERDUE, "installment", installment.id,
                {
                    "financing_id": installment.financing_id,
                    "number": installment.number,
                    "penalty_amount": installment.penalty_amount,
                    "total_due": installment.total_due,
                    "days_overdue": (as_of - installment.due_date).days
                },
                user_id=installment.user_id
            )
        
        result.log()
        return result
    
    def get_all(self, user_id: str) -> Dict[str, Any]:
        """All of a user's financings, newest first, with a debt summary"""
        financings = [
            self._financing_from_dict(data)
            for data in self.storage.find(self.financings_table, {"user_id": user_id})
        ]
        financings.sort(key=lambda f: f.created_at, reverse=True)
        
        return {
            "financings": financings,
            "summary": {
                "total_debt": sum((f.remaining for f in financings if f.is_active), ZERO),
                "active_count": sum(1 for f in financings if f.is_active),
                "completed_count": sum(1 for f in financings if f.status == FinancingStatus.COMPLETED)
            }
        }
    
    def get_by_id(self, user_id: str, financing_id: str) -> Dict[str, Any]:
        """Financing detail with its installment schedule and payment stats"""
        financing = self.get_financing(financing_id)
        if not financing:
            raise NotFoundError(f"Financing {financing_id} not found")
        if financing.user_id != user_id:
            raise ForbiddenError("Financing belongs to another user")
        
        installments = self.get_installments(financing_id)
        outstanding = [i for i in installments if i.is_outstanding]
        paid = [i for i in installments if i.status == InstallmentStatus.PAID]
        overdue = [i for i in installments if i.status == InstallmentStatus.OVERDUE]
        
        return {
            "financing": financing,
            "installments": installments,
            "next_installment": outstanding[0] if outstanding else None,
            "stats": {
                "installments_paid": len(paid),
                "installments_overdue": len(overdue),
                "installments_pending": sum(1 for i in installments if i.status == InstallmentStatus.PENDING),
                "total_paid": sum((i.total_due for i in paid), ZERO),
                "total_overdue": sum((i.total_due for i in overdue), ZERO),
                "total_penalties": sum((i.penalty_amount for i in installments), ZERO)
            }
        }
    
    def get_financing(self, financing_id: str) -> Optional[Financing]:
        """Get financing by ID"""
        data = self.storage.load(self.financings_table, financing_id)
        if data:
            return self._financing_from_dict(data)
        return None
    
    def get_installment(self, installment_id: str) -> Optional[Installment]:
        """Get installment by ID"""
        data = self.storage.load(self.installments_table, installment_id)
        if data:
            return self._installment_from_dict(data)
        return None
    
    def get_installments(self, financing_id: str) -> List[Installment]:
        """Installments of a financing ordered by number"""
        installments = [
            self._installment_from_dict(data)
            for data in self.storage.find(self.installments_table, {"financing_id": financing_id})
        ]
        installments.sort(key=lambda i: i.number)
        return installments
    
    def _mark_overdue(self, installment_id: str, as_of: date) -> Optional[Installment]:
        with self.ledger.atomic():
            installment = self.get_installment(installment_id)
            if (not installment or installment.status != InstallmentStatus.PENDING
                    or installment.penalty_amount != ZERO or installment.due_date >= as_of):
                return None
            financing = self.get_financing(installment.financing_id)
            if not financing or not financing.is_active:
                return None
            
            penalty = percent_of(installment.amount, self.penalty_rate)
            installment.penalty_amount = penalty
            installment.total_due = installment.amount + penalty
            installment.status = InstallmentStatus.OVERDUE
            installment.updated_at = datetime.now(timezone.utc)
            self._save_installment(installment)
        
        log_action(
            self.logger, "warning", "Installment overdue, penalty applied",
            user_id=installment.user_id, action="financing.mark_overdue",
            resource=f"installment:{installment.id}",
            extra={"penalty_amount": str(penalty), "due_date": installment.due_date.isoformat()}
        )
        return installment
    
    def _outstanding_installments(self, financing_id: str) -> List[Installment]:
        return [i for i in self.get_installments(financing_id) if i.is_outstanding]
    
    def _active_financings_for(self, investment_id: str) -> List[Financing]:
        return [
            self._financing_from_dict(data)
            for data in self.storage.find(
                self.financings_table,
                {"investment_id": investment_id, "status": FinancingStatus.ACTIVE.value})
        ]
    
    def _validate_installments_count(self, installments_count: int) -> None:
        low, high = self.config.min_installments, self.config.max_installments
        if not isinstance(installments_count, int) or not low <= installments_count <= high:
            raise InvalidRangeError(
                f"Installments must be between {low} and {high}",
                {"min": low, "max": high}
            )
    
    def _save_financing(self, financing: Financing) -> None:
        self.storage.save(self.financings_table, financing.id, financing.to_dict())
    
    def _save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())
    
    def _financing_from_dict(self, data: Dict[str, Any]) -> Financing:
        return Financing(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            investment_id=data['investment_id'],
            amount=Decimal(data['amount']),
            installments_count=data['installments_count'],
            installment_amount=Decimal(data['installment_amount']),
            remaining=Decimal(data['remaining']),
            status=FinancingStatus(data['status']),
            next_due_date=parse_date(data.get('next_due_date')),
            penalty_applied=data.get('penalty_applied', False),
            penalty_amount=Decimal(data.get('penalty_amount') or '0'),
            destination_type=data.get('destination_type'),
            destination_ref=data.get('destination_ref'),
            description=data.get('description'),
            completed_at=parse_datetime(data.get('completed_at'))
        )
    
    def _installment_from_dict(self, data: Dict[str, Any]) -> Installment:
        return Installment(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            financing_id=data['financing_id'],
            user_id=data['user_id'],
            number=data['number'],
            amount=Decimal(data['amount']),
            penalty_amount=Decimal(data['penalty_amount']),
            total_due=Decimal(data['total_due']),
            status=InstallmentStatus(data['status']),
            due_date=parse_date(data['due_date']),
            paid_at=parse_datetime(data.get('paid_at'))
        )
