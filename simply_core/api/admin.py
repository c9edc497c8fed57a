"""
Admin endpoints (scheduled sweeps, settlement callbacks, account maintenance)

Callers are internal services: the scheduler, the interbank connector and
back-office tooling.
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_system
from .schemas import (
    AccountStatusRequest, IncomingTransferRequest, SettleTransferRequest, SweepRequest, to_response
)
from ..errors import InvalidFormatError
from ..system import SimplySystem
from ..wallet import AccountStatus


router = APIRouter()


@router.post("/jobs/daily-returns")
async def run_daily_returns(
    request: Optional[SweepRequest] = None,
    system: SimplySystem = Depends(get_system)
):
    """Accrue FCI returns for a business day"""
    return to_response(system.investments.process_daily_returns(request.as_of if request else None))


@router.post("/jobs/overdue-installments")
async def run_overdue_installments(
    request: Optional[SweepRequest] = None,
    system: SimplySystem = Depends(get_system)
):
    """Apply penalties to installments past due"""
    return to_response(system.financing.process_overdue_installments(request.as_of if request else None))


@router.post("/transfers/{transaction_id}/settle")
async def settle_transfer(
    transaction_id: str,
    request: SettleTransferRequest,
    system: SimplySystem = Depends(get_system)
):
    """Interbank settlement result for an external transfer"""
    result = system.transfers.settle_external_transfer(transaction_id, request.success, request.reason)
    return to_response(result)


@router.post("/transfers/incoming", status_code=status.HTTP_201_CREATED)
async def incoming_transfer(
    request: IncomingTransferRequest,
    system: SimplySystem = Depends(get_system)
):
    """Credit funds received from another institution"""
    result = system.transfers.receive_external_transfer(
        request.destination,
        request.amount,
        request.source_cvu,
        source_name=request.source_name,
        motive=request.motive,
        reference=request.reference
    )
    return to_response(result)


@router.put("/accounts/{user_id}/status")
async def set_account_status(
    user_id: str,
    request: AccountStatusRequest,
    system: SimplySystem = Depends(get_system)
):
    """Suspend, block or reactivate an account"""
    try:
        new_status = AccountStatus(request.status.lower())
    except ValueError:
        raise InvalidFormatError(f"Unknown account status: {request.status}")
    return to_response(system.wallet.set_status(user_id, new_status, request.reason))


@router.get("/accounts/{user_id}/reconciliation")
async def reconcile_account(
    user_id: str,
    system: SimplySystem = Depends(get_system)
):
    """Compare the stored balance with the ledger"""
    return to_response(system.wallet.reconcile(user_id))
