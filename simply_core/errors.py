"""
Domain Error Taxonomy

Every failure an engine can report is a SimplyError subclass carrying a stable
machine-readable code, a human-readable message and structured details. The
HTTP layer maps the base classes to status codes.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class SimplyError(Exception):
    """Base exception for the ledger and accrual engine"""
    
    code = "error"
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": {k: (str(v) if isinstance(v, Decimal) else v) for k, v in self.details.items()}
        }


# Validation

class ValidationError(SimplyError):
    """Input is malformed or outside accepted bounds"""
    code = "validation_error"


class InvalidFormatError(ValidationError):
    code = "invalid_format"


class InvalidRangeError(ValidationError):
    code = "invalid_range"


class BelowMinimumError(ValidationError):
    code = "below_minimum"
    
    def __init__(self, message: str, minimum: Decimal):
        super().__init__(message, {"minimum": minimum})
        self.minimum = minimum


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class InvalidMotiveError(ValidationError):
    code = "invalid_motive"


class MissingDestinationError(ValidationError):
    code = "missing_destination"


class SelfTransferError(ValidationError):
    code = "self_transfer"


class InvalidCVUError(ValidationError):
    code = "invalid_cvu"


# Lookup and ownership

class NotFoundError(SimplyError):
    """Entity does not exist, is not owned by the caller or is not in a usable state"""
    code = "not_found"


class ForbiddenError(SimplyError):
    """Entity exists but belongs to someone else"""
    code = "forbidden"


class ConflictError(SimplyError):
    """Unique value already taken"""
    code = "conflict"


# Funds

class _ShortfallError(SimplyError):
    """Base for errors that report how much was missing"""
    
    def __init__(self, message: str, required: Decimal, available: Decimal):
        shortfall = required - available
        super().__init__(message, {
            "required": required,
            "available": available,
            "shortfall": shortfall
        })
        self.required = required
        self.available = available
        self.shortfall = shortfall


class InsufficientFundsError(_ShortfallError):
    code = "insufficient_funds"


class InsufficientCreditError(_ShortfallError):
    code = "insufficient_credit"


class InsufficientCollateralError(_ShortfallError):
    code = "insufficient_collateral"


# Limits

class LimitExceededError(SimplyError):
    """A daily, monthly or alias-change cap would be exceeded"""
    code = "limit_exceeded"


class DailyLimitExceededError(LimitExceededError):
    code = "daily_limit_exceeded"


# State

class StateError(SimplyError):
    """Entity is in a state that does not allow the operation"""
    code = "invalid_state"


class AlreadyPaidError(StateError):
    code = "already_paid"


class HasActiveFinancingError(StateError):
    code = "has_active_financing"


class InactiveAccountError(StateError):
    code = "inactive_account"


# Provisioning

class ProvisioningError(SimplyError):
    """Account identity could not be provisioned"""
    code = "provisioning_failed"
