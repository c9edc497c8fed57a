"""
Transfer and contact endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_current_user_id, get_system
from .schemas import SaveContactRequest, TransferRequest, ValidateDestinationRequest, to_response
from ..system import SimplySystem


router = APIRouter()
contacts_router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_transfer(
    request: TransferRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Send money to a CVU or alias"""
    result = system.transfers.transfer(
        user_id,
        request.amount,
        request.motive,
        destination_cvu=request.destination_cvu,
        destination_alias=request.destination_alias,
        reference=request.reference
    )
    return to_response(result)


@router.post("/validate")
async def validate_destination(
    request: ValidateDestinationRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Resolve a destination before transferring"""
    return to_response(system.transfers.validate_destination(request.identifier))


@router.get("/motives")
async def list_motives(system: SimplySystem = Depends(get_system)):
    """BCRA motive codes"""
    return {"motives": system.transfers.motives()}


@contacts_router.get("")
async def list_contacts(
    search: Optional[str] = Query(None),
    favorites_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Contacts, favorites first"""
    contacts = system.transfers.get_contacts(
        user_id, search=search, favorites_only=favorites_only, limit=limit
    )
    return {"contacts": to_response(contacts)}


@contacts_router.post("", status_code=status.HTTP_201_CREATED)
async def save_contact(
    request: SaveContactRequest,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Create or update a contact"""
    contact = system.transfers.save_contact(
        user_id, request.cvu, request.name, alias=request.alias, is_favorite=request.is_favorite
    )
    return to_response(contact)


@contacts_router.delete("/{contact_id}")
async def delete_contact(
    contact_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Remove a contact"""
    return system.transfers.delete_contact(user_id, contact_id)


@contacts_router.post("/{contact_id}/favorite")
async def toggle_favorite(
    contact_id: str,
    user_id: str = Depends(get_current_user_id),
    system: SimplySystem = Depends(get_system)
):
    """Flip the favorite flag"""
    return to_response(system.transfers.toggle_favorite(user_id, contact_id))
