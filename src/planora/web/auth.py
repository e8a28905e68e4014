"""
Authentication utilities for FastAPI routes.

Two dependencies:
- get_current_user: validates the bearer token with Supabase (read endpoints)
- get_session_credentials: parses the token pair WITHOUT validating it, for
  endpoints that hand the session to SessionGuard, which refreshes or
  rejects it before anything is written
"""

import logging

from fastapi import Header, HTTPException
from pydantic import BaseModel

from planora.db.client import get_service_client

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    """Authenticated user info from Supabase JWT."""
    id: str
    email: str | None
    access_token: str
    refresh_token: str | None = None


class SessionCredentials(BaseModel):
    """Token pair sent by the browser. Not yet validated."""
    access_token: str
    refresh_token: str | None = None
    user_id: str | None = None  # unverified `sub` claim


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization format")

    return authorization[7:]  # Remove "Bearer " prefix


async def get_current_user(
    authorization: str = Header(None),
    x_refresh_token: str | None = Header(None),
) -> AuthenticatedUser:
    """
    Validate Supabase JWT and extract user info.

    Expects Authorization header: "Bearer <access_token>"
    Optional X-Refresh-Token header carries the refresh token.
    """
    access_token = _bearer_token(authorization)

    try:
        client = get_service_client()
        user_response = client.auth.get_user(access_token)

        if not user_response or not user_response.user:
            raise HTTPException(status_code=401, detail="Invalid or expired token")

        user = user_response.user
        return AuthenticatedUser(
            id=user.id,
            email=user.email,
            access_token=access_token,
            refresh_token=x_refresh_token,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.warning(f"Auth validation failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def get_session_credentials(
    authorization: str = Header(None),
    x_refresh_token: str | None = Header(None),
) -> SessionCredentials:
    """
    Parse the token pair without a Supabase round trip.

    An expired access token is fine here as long as a refresh token is
    present; the completion flow refreshes it before committing.
    """
    from onboarding.supabase_stores import jwt_subject

    access_token = _bearer_token(authorization)
    user_id = jwt_subject(access_token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Malformed access token")

    return SessionCredentials(
        access_token=access_token,
        refresh_token=x_refresh_token,
        user_id=user_id,
    )
