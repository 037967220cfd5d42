"""
Authentication API endpoints.

Sign-up and sign-in belong to the identity provider; this API only needs
to know who holds the bearer token.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr

from waitline.auth.dependencies import get_current_session
from waitline.auth.identity import Session

router = APIRouter()


class SessionResponse(BaseModel):
    """Schema for the caller's identity."""
    user_id: UUID
    email: Optional[EmailStr] = None


@router.get("/me", response_model=SessionResponse)
async def get_me(session: Session = Depends(get_current_session)):
    """
    Get the identity behind the current access token.

    Requires a valid access token in the Authorization header.
    """
    return SessionResponse(user_id=session.user_id, email=session.email)
