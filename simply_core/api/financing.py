"""
Financing endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_current_user_id, get_system
from .schemas import CreateFinancingRequest, SimulateFinancingRequest, to_response
from ..system import SimplySystem


router = APIRouter()


@router.get("")
async def list_financings(
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """All financings with a debt summary"""
    return to_response(system.financing.get_all(user_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_financing(
    request: CreateFinancingRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Originate a financing against an investment"""
    financing = system.financing.create(
        user_id,
        request.investment_id,
        request.amount,
        request.installments,
        destination_type=request.destination_type,
        destination_ref=request.destination_ref,
        description=request.description
    )
    return to_response(system.financing.get_by_id(user_id, financing.id))


@router.post("/simulate")
async def simulate_financing(
    request: SimulateFinancingRequest,
    system: SimplySystem = Depends(get_system)
):
    """Preview installments and schedule"""
    return to_response(system.financing.simulate(request.amount, request.installments))


@router.post("/installments/{installment_id}/pay")
async def pay_installment(
    installment_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Pay one installment from the wallet balance"""
    return to_response(system.financing.pay_installment(user_id, installment_id))


@router.get("/{financing_id}")
async def get_financing(
    financing_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Financing detail with installments"""
    return to_response(system.financing.get_by_id(user_id, financing_id))


@router.post("/{financing_id}/drop")
async def drop_financing(
    financing_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Terminate early, settling from the backing investment"""
    return to_response(system.financing.drop_financing(user_id, financing_id))
