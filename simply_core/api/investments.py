"""
Investment (FCI) endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_current_user_id, get_system
from .schemas import CreateInvestmentRequest, SimulateInvestmentRequest, to_response
from ..system import SimplySystem


router = APIRouter()


@router.get("")
async def list_investments(
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """All investments with a summary of the active ones"""
    return to_response(system.investments.get_all(user_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_investment(
    request: CreateInvestmentRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Subscribe wallet funds into the FCI"""
    investment = system.investments.create(user_id, request.amount)
    return to_response(investment)


@router.post("/simulate")
async def simulate_investment(
    request: SimulateInvestmentRequest,
    system: SimplySystem = Depends(get_system)
):
    """Project returns without creating anything"""
    return to_response(system.investments.simulate(request.amount, request.months))


@router.get("/{investment_id}")
async def get_investment(
    investment_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Investment detail with recent returns"""
    return to_response(system.investments.get_by_id(user_id, investment_id))


@router.post("/{investment_id}/liquidate")
async def liquidate_investment(
    investment_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Redeem an investment to the wallet balance"""
    return to_response(system.investments.liquidate(user_id, investment_id))


@router.get("/{investment_id}/returns")
async def get_investment_returns(
    investment_id: str,
    page: int = Query(1),
    limit: int = Query(30),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Paginated daily returns"""
    result = system.investments.get_returns(
        user_id, investment_id, page=page, limit=limit, date_from=date_from, date_to=date_to
    )
    return to_response(result)
