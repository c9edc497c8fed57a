"""
Wallet endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_current_user_id, get_system
from .schemas import CreateAccountRequest, UpdateAliasRequest, end_of_day, start_of_day, to_response
from ..errors import InvalidFormatError
from ..ledger import TransactionType
from ..system import SimplySystem


router = APIRouter()


@router.post("/account", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Provision the caller's wallet account (idempotent)"""
    account = system.wallet.create_account(user_id, holder_name=request.holder_name)
    return to_response(account)


@router.get("/balance")
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Available, invested and financed balances"""
    return to_response(system.wallet.get_balance(user_id))


@router.get("/movements")
async def get_movements(
    page: int = Query(1),
    limit: int = Query(20),
    type: Optional[str] = Query(None, description="Transaction type filter"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Paginated movements, newest first"""
    tx_type = None
    if type:
        try:
            tx_type = TransactionType(type.lower())
        except ValueError:
            raise InvalidFormatError(f"Unknown transaction type: {type}")
    
    result = system.wallet.get_movements(
        user_id, page=page, limit=limit, tx_type=tx_type,
        date_from=start_of_day(date_from), date_to=end_of_day(date_to)
    )
    return to_response(result)


@router.put("/alias")
async def update_alias(
    request: UpdateAliasRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Change the account alias"""
    return to_response(system.wallet.update_alias(user_id, request.alias))
