"""
Authentication dependencies for FastAPI.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from waitline.auth.identity import Session
from waitline.auth.jwt import decode_access_token
from waitline.services.session_registry import QueueContext, SessionRegistry

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


async def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Session:
    """
    Get the current authenticated session.

    Raises 401 if not authenticated or token is invalid.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    session = decode_access_token(credentials.credentials)
    if session is None:
        raise credentials_exception

    return session


def get_registry(request: Request) -> SessionRegistry:
    """The registry created in the application lifespan."""
    return request.app.state.registry


async def get_queue_context(
    session: Session = Depends(get_current_session),
    registry: SessionRegistry = Depends(get_registry),
) -> QueueContext:
    """Sync engine and queue service of the calling user."""
    return await registry.get(session)
