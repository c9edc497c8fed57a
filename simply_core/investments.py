"""
Investment (FCI) Engine Module

Money-market fund subscriptions with daily compounding returns. Each business
day the accrual sweep adds current_value x (annual_rate / 365 / 100) to every
active investment, exactly once per (investment, date). An investment's
current value backs a credit line of credit_percentage of that value, which
the financing engine draws against.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import math
import uuid

from .config import SimplyConfig, get_config
from .errors import (
    BelowMinimumError, HasActiveFinancingError, InsufficientCreditError,
    InvalidAmountError, InvalidRangeError, NotFoundError, StateError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import Ledger, TransactionType
from .logging_config import get_logger, log_action
from .money import HUNDRED, ZERO, parse_amount, round_money, round_to
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime
from .sweeps import SweepResult, is_business_day
from .wallet import BalanceOperation, WalletEngine

DAYS_PER_YEAR = Decimal('365')
SIMULATION_DAYS_PER_MONTH = 30
RECENT_RETURNS = 30


class InvestmentStatus(Enum):
    """Investment lifecycle states"""
    ACTIVE = "active"
    LIQUIDATED = "liquidated"                        # Redeemed by the owner
    LIQUIDATED_BY_PENALTY = "liquidated_by_penalty"  # Consumed by a financing drop


@dataclass
class Investment(StorageRecord):
    """FCI subscription"""
    user_id: str
    amount: Decimal
    current_value: Decimal
    returns_earned: Decimal
    annual_rate: Decimal  # Percent, fixed at creation
    credit_limit: Decimal
    credit_used: Decimal
    status: InvestmentStatus
    fci_type: str
    started_at: datetime
    liquidated_at: Optional[datetime] = None
    
    @property
    def credit_available(self) -> Decimal:
        return self.credit_limit - self.credit_used
    
    @property
    def is_active(self) -> bool:
        return self.status == InvestmentStatus.ACTIVE


@dataclass
class Return(StorageRecord):
    """Daily accrual record; at most one per investment and date"""
    investment_id: str
    user_id: str
    base_amount: Decimal
    rate_applied: Decimal
    return_amount: Decimal
    return_date: date


def daily_rate(annual_rate: Decimal) -> Decimal:
    """Annual percentage rate to a daily fraction"""
    return annual_rate / DAYS_PER_YEAR / HUNDRED


class InvestmentEngine(EventPublisherMixin):
    """
    Manages FCI investments, daily accrual and the credit line they back
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
        self.investments_table = "investments"
        self.returns_table = "investment_returns"
        self.financings_table = "financings"
        self.logger = get_logger("simply.investments")
        self.set_event_dispatcher(event_dispatcher)
    
    @property
    def annual_rate(self) -> Decimal:
        return Decimal(self.config.fci_annual_rate)
    
    @property
    def credit_percentage(self) -> Decimal:
        return Decimal(self.config.credit_percentage)
    
    # Accrual arithmetic shared by the sweep and the simulator
    
    def accrual_step(self, value: Decimal, annual_rate: Decimal) -> Decimal:
        """One day of return on ``value``, at accrual precision"""
        return round_to(value * daily_rate(annual_rate), self.config.accrual_precision)
    
    def project_value(self, amount: Decimal, days: int, annual_rate: Optional[Decimal] = None) -> Decimal:
        """Value of ``amount`` after ``days`` accruals"""
        rate = self.annual_rate if annual_rate is None else annual_rate
        value = amount
        for _ in range(days):
            value += self.accrual_step(value, rate)
        return value
    
    def credit_limit_for(self, value: Decimal) -> Decimal:
        return round_to(value * self.credit_percentage / HUNDRED, self.config.accrual_precision)
    
    # Operations
    
    def create(self, user_id: str, amount) -> Investment:
        """
        Subscribe ``amount`` from the wallet balance into the FCI.
        
        Raises:
            BelowMinimumError: amount below the minimum subscription
            NotFoundError: user has no account
            InactiveAccountError: account is suspended or blocked
            InsufficientFundsError: balance below amount
        """
        amount = parse_amount(amount)
        minimum = Decimal(self.config.min_investment_amount)
        if amount < minimum:
            raise BelowMinimumError(f"Minimum investment is {minimum}", minimum=minimum)
        
        with self.ledger.atomic():
            self.wallet.require_active_account(user_id)
            self.wallet.update_balance(user_id, amount, BalanceOperation.SUBTRACT)
            
            now = datetime.now(timezone.utc)
            investment = Investment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                amount=amount,
                current_value=amount,
                returns_earned=ZERO,
                annual_rate=self.annual_rate,
                credit_limit=self.credit_limit_for(amount),
                credit_used=ZERO,
                status=InvestmentStatus.ACTIVE,
                fci_type=self.config.fci_type,
                started_at=now
            )
            self._save_investment(investment)
            
            self.ledger.record(
                user_id, TransactionType.INVESTMENT_DEPOSIT, amount,
                balance_delta=-amount,
                metadata={"investment_id": investment.id, "fci_type": investment.fci_type},
                description="FCI subscription"
            )
        
        log_action(
            self.logger, "info", "Investment created",
            user_id=user_id, action="investment.create", resource=f"investment:{investment.id}",
            extra={"amount": str(amount), "annual_rate": str(investment.annual_rate)}
        )
        self.publish_event(
            DomainEvent.INVESTMENT_CREATED, "investment", investment.id,
            {"amount": amount, "credit_limit": investment.credit_limit}, user_id=user_id
        )
        return investment
    
    def liquidate(self, user_id: str, investment_id: str) -> Dict[str, Any]:
        """
        Redeem an investment and credit its current value to the wallet.
        
        Raises:
            NotFoundError: no ACTIVE investment with this id owned by the user
            HasActiveFinancingError: the investment backs an ACTIVE financing
        """
        with self.ledger.atomic():
            investment = self.get_investment(investment_id)
            if not investment or investment.user_id != user_id or not investment.is_active:
                raise NotFoundError(f"Active investment {investment_id} not found")
            
            if self._active_financing_ids(investment_id):
                raise HasActiveFinancingError(
                    "Investment backs an active financing and cannot be liquidated",
                    {"investment_id": investment_id}
                )
            
            credited = round_money(investment.current_value)
            now = datetime.now(timezone.utc)
            investment.status = InvestmentStatus.LIQUIDATED
            investment.liquidated_at = now
            investment.updated_at = now
            self._save_investment(investment)
            
            if credited > ZERO:
                self.wallet.update_balance(user_id, credited, BalanceOperation.ADD)
            transaction = self.ledger.record(
                user_id, TransactionType.INVESTMENT_WITHDRAWAL, credited,
                balance_delta=credited,
                metadata={
                    "investment_id": investment.id,
                    "original_amount": str(investment.amount),
                    "returns_earned": str(investment.returns_earned)
                },
                description="FCI redemption"
            )
        
        log_action(
            self.logger, "info", "Investment liquidated",
            user_id=user_id, action="investment.liquidate", resource=f"investment:{investment.id}",
            extra={"credited": str(credited)}
        )
        self.publish_event(
            DomainEvent.INVESTMENT_LIQUIDATED, "investment", investment.id,
            {"credited": credited, "returns_earned": investment.returns_earned}, user_id=user_id
        )
        return {
            "investment": investment,
            "credited": credited,
            "transaction": transaction
        }
    
    def process_daily_returns(self, as_of: Optional[date] = None) -> SweepResult:
        """
        Accrue one day of returns on every ACTIVE investment.
        
        Weekends are skipped entirely. Safe to run any number of times for the
        same date: an investment that already has a Return for ``as_of`` is
        skipped.
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        result = SweepResult(name="daily_returns", as_of=as_of)
        
        if not is_business_day(as_of):
            result.skipped_reason = "weekend"
            result.log()
            return result
        
        active = self.storage.find(self.investments_table, {"status": InvestmentStatus.ACTIVE.value})
        for data in active:
            investment_id = data['id']
            try:
                accrued = self._accrue(investment_id, as_of)
            except Exception as e:
                result.record_failure(investment_id, e)
                log_action(
                    self.logger, "error", f"Return accrual failed: {e}",
                    user_id=data.get('user_id'), action="investment.accrue",
                    resource=f"investment:{investment_id}", extra={"as_of": as_of.isoformat()}
                )
                continue
            
            if accrued is None:
                result.skipped += 1
                continue
            result.processed += 1
            self.publish_event(
                DomainEvent.INVESTMENT_RETURN_ACCRUED, "investment", investment_id,
                {"return_amount": accrued.return_amount, "return_date": as_of},
                user_id=accrued.user_id
            )
        
        result.log()
        return result
    
    def simulate(self, amount, months: int) -> Dict[str, Any]:
        """
        Project an investment over ``months`` (30 accrual days each), using the
        same step as the daily sweep.
        """
        amount = parse_amount(amount)
        if amount <= ZERO:
            raise InvalidAmountError("Amount must be positive", {"amount": amount})
        if months < 1:
            raise InvalidRangeError("Months must be 1 or greater")
        if months > self.config.max_simulation_months:
            raise InvalidRangeError(
                f"Months must be {self.config.max_simulation_months} or fewer",
                {"max_months": self.config.max_simulation_months}
            )
        
        days = months * SIMULATION_DAYS_PER_MONTH
        final_value = self.project_value(amount, days)
        total_returns = final_value - amount
        
        return {
            "initial_amount": amount,
            "final_value": round_money(final_value),
            "total_returns": round_money(total_returns),
            "return_percentage": round_money(total_returns / amount * HUNDRED),
            "credit_available": round_money(self.credit_limit_for(amount)),
            "projected_credit_limit": round_money(self.credit_limit_for(final_value)),
            "annual_rate": self.annual_rate,
            "months": months,
            "days": days
        }
    
    def get_all(self, user_id: str) -> Dict[str, Any]:
        """All of a user's investments, newest first, with a summary of the active ones"""
        investments = self.get_user_investments(user_id)
        active = [i for i in investments if i.is_active]
        
        return {
            "investments": investments,
            "summary": {
                "total_invested": sum((i.amount for i in active), ZERO),
                "total_returns": sum((i.returns_earned for i in active), ZERO),
                "total_credit_available": sum((i.credit_available for i in active), ZERO),
                "active_count": len(active),
                "annual_rate": self.annual_rate
            }
        }
    
    def get_by_id(self, user_id: str, investment_id: str) -> Dict[str, Any]:
        """Investment detail with recent returns and the financings it backs"""
        investment = self._require_owned(user_id, investment_id)
        returns = self._returns_for(investment_id)
        
        return {
            "investment": investment,
            "recent_returns": returns[:RECENT_RETURNS],
            "active_financings": [
                {
                    "id": data['id'],
                    "amount": data['amount'],
                    "remaining": data['remaining'],
                    "next_due_date": data.get('next_due_date')
                }
                for data in self.storage.find(
                    self.financings_table, {"investment_id": investment_id, "status": "active"})
            ],
            "credit_available": investment.credit_available if investment.is_active else ZERO
        }
    
    def get_returns(
        self,
        user_id: str,
        investment_id: str,
        page: int = 1,
        limit: int = RECENT_RETURNS,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> Dict[str, Any]:
        """Paginated accrual history of one investment, newest first"""
        if page < 1:
            raise InvalidRangeError("Page must be 1 or greater")
        if limit < 1 or limit > self.config.max_page_size:
            raise InvalidRangeError(f"Limit must be between 1 and {self.config.max_page_size}")
        self._require_owned(user_id, investment_id)
        
        returns = self._returns_for(investment_id)
        if date_from:
            returns = [r for r in returns if r.return_date >= date_from]
        if date_to:
            returns = [r for r in returns if r.return_date <= date_to]
        
        total = len(returns)
        start = (page - 1) * limit
        return {
            "returns": returns[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit)
            }
        }
    
    def get_investment(self, investment_id: str) -> Optional[Investment]:
        """Get investment by ID"""
        data = self.storage.load(self.investments_table, investment_id)
        if data:
            return self._investment_from_dict(data)
        return None
    
    def get_user_investments(self, user_id: str) -> List[Investment]:
        investments = [
            self._investment_from_dict(data)
            for data in self.storage.find(self.investments_table, {"user_id": user_id})
        ]
        investments.sort(key=lambda i: i.created_at, reverse=True)
        return investments
    
    # Credit line, used by the financing engine inside its unit of work
    
    def reserve_credit(self, investment_id: str, amount: Decimal) -> Investment:
        """
        Draw ``amount`` against an investment's credit line.
        
        Raises:
            NotFoundError: investment missing or not ACTIVE
            InsufficientCreditError: amount above credit_limit - credit_used
        """
        self._require_unit_of_work()
        investment = self.get_investment(investment_id)
        if not investment or not investment.is_active:
            raise NotFoundError(f"Active investment {investment_id} not found")
        
        available = investment.credit_available
        if amount > available:
            raise InsufficientCreditError(
                "Amount exceeds available credit", required=amount, available=available
            )
        
        investment.credit_used += amount
        investment.updated_at = datetime.now(timezone.utc)
        self._save_investment(investment)
        return investment
    
    def release_credit(self, investment_id: str, amount: Decimal) -> Optional[Investment]:
        """Return ``amount`` to an investment's credit line"""
        self._require_unit_of_work()
        investment = self.get_investment(investment_id)
        if not investment:
            return None
        
        investment.credit_used = max(ZERO, investment.credit_used - amount)
        investment.updated_at = datetime.now(timezone.utc)
        self._save_investment(investment)
        return investment
    
    def liquidate_by_penalty(self, investment_id: str) -> Decimal:
        """
        Consume an investment as collateral for a dropped financing.
        
        Returns:
            The current value the investment had before liquidation
        """
        self._require_unit_of_work()
        investment = self.get_investment(investment_id)
        if not investment or not investment.is_active:
            raise StateError(f"Investment {investment_id} is not active")
        
        collateral = investment.current_value
        now = datetime.now(timezone.utc)
        investment.status = InvestmentStatus.LIQUIDATED_BY_PENALTY
        investment.current_value = ZERO
        investment.credit_used = ZERO
        investment.credit_limit = ZERO
        investment.liquidated_at = now
        investment.updated_at = now
        self._save_investment(investment)
        
        log_action(
            self.logger, "warning", "Investment liquidated by penalty",
            user_id=investment.user_id, action="investment.liquidate_by_penalty",
            resource=f"investment:{investment.id}", extra={"collateral": str(collateral)}
        )
        return collateral
    
    # Internals
    
    def _accrue(self, investment_id: str, as_of: date) -> Optional[Return]:
        """Accrue one day on one investment in its own unit of work"""
        with self.ledger.atomic():
            investment = self.get_investment(investment_id)
            if not investment or not investment.is_active:
                return None
            
            return_id = f"{investment.id}:{as_of.isoformat()}"
            if self.storage.exists(self.returns_table, return_id):
                return None
            
            amount = self.accrual_step(investment.current_value, investment.annual_rate)
            now = datetime.now(timezone.utc)
            accrued = Return(
                id=return_id,
                created_at=now,
                updated_at=now,
                investment_id=investment.id,
                user_id=investment.user_id,
                base_amount=investment.current_value,
                rate_applied=daily_rate(investment.annual_rate),
                return_amount=amount,
                return_date=as_of
            )
            self.storage.save(self.returns_table, accrued.id, accrued.to_dict())
            
            investment.current_value += amount
            investment.returns_earned += amount
            investment.credit_limit = self.credit_limit_for(investment.current_value)
            investment.updated_at = now
            self._save_investment(investment)
            
            self.ledger.record(
                investment.user_id, TransactionType.FCI_RETURN, amount,
                balance_delta=ZERO,
                metadata={
                    "investment_id": investment.id,
                    "return_id": accrued.id,
                    "return_date": as_of.isoformat(),
                    "return_amount": str(amount)
                },
                description="FCI daily return"
            )
        return accrued
    
    def _require_owned(self, user_id: str, investment_id: str) -> Investment:
        investment = self.get_investment(investment_id)
        if not investment or investment.user_id != user_id:
            raise NotFoundError(f"Investment {investment_id} not found")
        return investment
    
    def _returns_for(self, investment_id: str) -> List[Return]:
        returns = [
            self._return_from_dict(data)
            for data in self.storage.find(self.returns_table, {"investment_id": investment_id})
        ]
        returns.sort(key=lambda r: r.return_date, reverse=True)
        return returns
    
    def _active_financing_ids(self, investment_id: str) -> List[str]:
        return [
            data['id'] for data in self.storage.find(
                self.financings_table, {"investment_id": investment_id, "status": "active"})
        ]
    
    def _require_unit_of_work(self) -> None:
        if not self.storage.in_transaction:
            raise RuntimeError("Credit line changes must run inside a unit of work")
    
    def _save_investment(self, investment: Investment) -> None:
        self.storage.save(self.investments_table, investment.id, investment.to_dict())
    
    def _investment_from_dict(self, data: Dict[str, Any]) -> Investment:
        return Investment(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            amount=Decimal(data['amount']),
            current_value=Decimal(data['current_value']),
            returns_earned=Decimal(data['returns_earned']),
            annual_rate=Decimal(data['annual_rate']),
            credit_limit=Decimal(data['credit_limit']),
            credit_used=Decimal(data['credit_used']),
            status=InvestmentStatus(data['status']),
            fci_type=data['fci_type'],
            started_at=parse_datetime(data['started_at']),
            liquidated_at=parse_datetime(data.get('liquidated_at'))
        )
    
    def _return_from_dict(self, data: Dict[str, Any]) -> Return:
        return Return(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            investment_id=data['investment_id'],
            user_id=data['user_id'],
            base_amount=Decimal(data['base_amount']),
            rate_applied=Decimal(data['rate_applied']),
            return_amount=Decimal(data['return_amount']),
            return_date=parse_date(data['return_date'])
        )
