"""
Location API endpoints.

Address suggestions for the "where is your queue" field.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from waitline.auth.dependencies import get_current_session
from waitline.auth.identity import Session
from waitline.services.address_lookup import AddressLookup
from waitline.services.errors import AddressLookupError

router = APIRouter()


class LocationSuggestionResponse(BaseModel):
    """One address suggestion."""
    id: str
    label: str
    latitude: float
    longitude: float


def get_address_lookup(request: Request) -> AddressLookup:
    return request.app.state.address_lookup


@router.get("/search", response_model=list[LocationSuggestionResponse])
async def search_locations(
    q: str = "",
    session: Session = Depends(get_current_session),
    lookup: AddressLookup = Depends(get_address_lookup),
):
    """
    Search real addresses.

    Queries shorter than three characters return an empty list without
    calling the lookup service.
    """
    try:
        suggestions = await lookup.search(q)
    except AddressLookupError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return [
        LocationSuggestionResponse(id=s.id, label=s.label, latitude=s.latitude, longitude=s.longitude)
        for s in suggestions
    ]
