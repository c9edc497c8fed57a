"""
Pydantic schemas for API requests, and response serialization
"""

from datetime import date, datetime, time, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field

from ..storage import to_storable


class CreateAccountRequest(BaseModel):
    holder_name: Optional[str] = None


class UpdateAliasRequest(BaseModel):
    alias: str


class CreateInvestmentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")


class SimulateInvestmentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    months: int = 12


class CreateFinancingRequest(BaseModel):
    investment_id: str
    amount: str = Field(..., description="Decimal amount as string")
    installments: int
    destination_type: Optional[str] = None
    destination_ref: Optional[str] = None
    description: Optional[str] = None


class SimulateFinancingRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    installments: int


class TransferRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    motive: str = Field(..., description="BCRA motive code (VAR, ALQ, ...)")
    destination_cvu: Optional[str] = None
    destination_alias: Optional[str] = None
    reference: Optional[str] = None


class ValidateDestinationRequest(BaseModel):
    identifier: str = Field(..., description="22-digit CVU or alias")


class SaveContactRequest(BaseModel):
    cvu: str
    name: str
    alias: Optional[str] = None
    is_favorite: Optional[bool] = None


class SettleTransferRequest(BaseModel):
    success: bool
    reason: Optional[str] = None


class IncomingTransferRequest(BaseModel):
    destination: str = Field(..., description="CVU or alias of the receiving account")
    amount: str = Field(..., description="Decimal amount as string")
    source_cvu: str
    source_name: Optional[str] = None
    motive: str = "VAR"
    reference: Optional[str] = None


class AccountStatusRequest(BaseModel):
    status: str = Field(..., description="active, suspended or blocked")
    reason: str


class SweepRequest(BaseModel):
    as_of: Optional[date] = None


def to_response(value: Any) -> Any:
    """Serialize engine results: records via to_dict, Decimals as strings"""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: to_response(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_response(item) for item in value]
    return to_storable(value)


def start_of_day(day: Optional[date]) -> Optional[datetime]:
    if day is None:
        return None
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: Optional[date]) -> Optional[datetime]:
    if day is None:
        return None
    return datetime.combine(day, time.max, tzinfo=timezone.utc)
