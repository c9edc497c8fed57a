"""
Money Module

Decimal helpers for every monetary value in the system. Balances and ledger
amounts carry 2 decimal places; investment accrual figures carry a configurable
higher precision. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import List, Union

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS = Decimal('0.01')
HUNDRED = Decimal('100')
ZERO = Decimal('0')

# Largest accepted amount is 10^15 - 0.01
MAX_AMOUNT_DIGITS = 15


class Currency(Enum):
    """ISO 4217 currency codes with precision info"""
    ARS = ("ARS", 2)  # Argentine Peso, 2 decimal places
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Used for balance figures reported to clients.
    """
    amount: Decimal
    currency: Currency = Currency.ARS
    
    def __post_init__(self):
        object.__setattr__(self, 'amount', to_decimal(self.amount).quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        ))
    
    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)
    
    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)
    
    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount
    
    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == ZERO
    
    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_decimal(value: Union[Decimal, int, str]) -> Decimal:
    """
    Convert an incoming value to Decimal.
    
    Floats are rejected: they cannot represent most decimal fractions exactly.
    
    Raises:
        ValueError: If the value is a float, a bool or not a finite number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary values must not be floats: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    else:
        raise ValueError(f"Unsupported monetary value type: {type(value).__name__}")
    
    if not result.is_finite():
        raise ValueError(f"Monetary value must be finite: {value!r}")
    return result


def round_money(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def round_to(value: Decimal, places: int) -> Decimal:
    """Round to the given number of decimal places, half-up"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    """Return ``percent``% of ``amount`` rounded to cents"""
    return round_money(amount * percent / HUNDRED)


def split_installments(total: Decimal, count: int) -> List[Decimal]:
    """
    Split ``total`` into ``count`` flat installments.
    
    Each installment is total/count rounded half-up to cents; the last one
    absorbs the rounding remainder so the parts always sum to ``total``.
    
    Example:
        1000.00 / 3 -> [333.33, 333.33, 333.34]
    """
    if count < 1:
        raise ValueError("Installment count must be at least 1")
    
    base = round_money(total / Decimal(count))
    parts = [base] * (count - 1)
    parts.append(round_money(total) - base * (count - 1))
    return parts


def parse_amount(value: Union[Decimal, int, str]) -> Decimal:
    """
    Parse a client-supplied monetary amount with at most 2 decimal places.
    
    Raises:
        InvalidAmountError: If the value is a float, not a number, too large
            or has sub-cent digits
    """
    try:
        amount = to_decimal(value)
    except ValueError as e:
        raise InvalidAmountError(str(e))
    if amount and amount.adjusted() >= MAX_AMOUNT_DIGITS:
        raise InvalidAmountError(
            f"Amounts must have at most {MAX_AMOUNT_DIGITS} integer digits",
            {"amount": str(value)}
        )
    try:
        rounded = round_money(amount)
    except InvalidOperation:
        raise InvalidAmountError("Amount cannot be represented", {"amount": str(value)})
    if amount != rounded:
        raise InvalidAmountError("Amounts must have at most 2 decimal places", {"amount": amount})
    return rounded
