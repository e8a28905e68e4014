"""
Onboarding API Endpoints.

Separate router from the rest of the app. Exposes the completion flow:
finish the wizard, ask where to route the user, verify/repair flags, and
re-submit a captured completion after re-authentication.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from planora.web.auth import AuthenticatedUser, SessionCredentials, get_current_user, get_session_credentials

from .completion import CompletionResult, OnboardingCompletionService, get_completion_service
from .errors import (
    ConflictError,
    RecoveryNotFoundError,
    SessionExpiredError,
    StoreError,
    ValidationError,
)
from .preferences import get_wizard_options
from .state import OutcomeStatus
from .stores import SessionProvider
from .supabase_stores import SupabaseSessionProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onboarding", tags=["onboarding"])


# =============================================================================
# Dependencies
# =============================================================================


def get_service() -> OnboardingCompletionService:
    return get_completion_service()


def get_session_provider(
    credentials: SessionCredentials = Depends(get_session_credentials),
) -> SessionProvider:
    return SupabaseSessionProvider(credentials.access_token, credentials.refresh_token)


# =============================================================================
# Request/Response Models
# =============================================================================


class CompleteRequest(BaseModel):
    """Raw wizard capture. Field names are normalized server-side."""
    preferences: dict[str, Any]
    attempt: int | None = Field(default=None, ge=1)  # set when retrying the same attempt


class VerifyRequest(BaseModel):
    repair: bool = True


# =============================================================================
# Helpers
# =============================================================================


def _session_payload(provider: SessionProvider) -> dict | None:
    """New token pair when the flow refreshed the session."""
    session = getattr(provider, "current", None)
    if session is None or not getattr(provider, "refreshed", False):
        return None
    return {
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "expires_at": session.expires_at.isoformat() if session.expires_at else None,
    }


def _completion_response(result: CompletionResult, provider: SessionProvider) -> dict:
    if result.outcome.status == OutcomeStatus.FAILED:
        raise HTTPException(status_code=502, detail=result.to_dict())
    return {**result.to_dict(), "session": _session_payload(provider)}


async def _run_completion(coro, provider: SessionProvider) -> dict:
    """Map completion errors to HTTP responses."""
    try:
        result = await coro
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": "Invalid preferences", "issues": [i.to_dict() for i in e.issues]},
        )
    except SessionExpiredError as e:
        raise HTTPException(
            status_code=401,
            detail={"message": str(e), "recoverable": e.recoverable},
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RecoveryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _completion_response(result, provider)


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/options")
async def get_onboarding_options():
    """Enum options for rendering the wizard steps."""
    return get_wizard_options()


@router.post("/complete")
async def complete_onboarding(
    request: CompleteRequest,
    credentials: SessionCredentials = Depends(get_session_credentials),
    provider: SessionProvider = Depends(get_session_provider),
    service: OnboardingCompletionService = Depends(get_service),
) -> dict:
    """
    Finish onboarding.

    200 for completed and partially completed (the durable store has the
    data; `may_proceed` says whether to leave the wizard), 422 with every
    field issue, 401 when the session cannot be refreshed (capture kept
    for re-submit), 502 when the durable store write failed.
    """
    return await _run_completion(
        service.complete(
            request.preferences,
            credentials.user_id,
            provider,
            attempt=request.attempt,
        ),
        provider,
    )


@router.get("/status")
async def get_onboarding_status(
    user: AuthenticatedUser = Depends(get_current_user),
    service: OnboardingCompletionService = Depends(get_service),
) -> dict:
    """Where should this user go: the app or the wizard?"""
    try:
        status = await service.resolve_status(user.id)
    except StoreError as e:
        logger.error(f"Status lookup failed for user {user.id}: {e}")
        raise HTTPException(status_code=503, detail="Onboarding status unavailable")
    return status.to_dict()


@router.post("/verify")
async def verify_onboarding(
    request: VerifyRequest | None = None,
    user: AuthenticatedUser = Depends(get_current_user),
    service: OnboardingCompletionService = Depends(get_service),
) -> dict:
    """Compare completion flags across stores, repairing the identity store."""
    repair = request.repair if request else True
    report = await service.verify(user.id, repair=repair)
    return report.to_dict()


@router.get("/recovery")
async def get_onboarding_recovery(
    user: AuthenticatedUser = Depends(get_current_user),
    service: OnboardingCompletionService = Depends(get_service),
) -> dict:
    """Captured completion waiting for re-submit, if any."""
    entry = service.get_recovery(user.id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Nothing to recover")
    return {
        "preferences": entry.record.to_wire(),
        "attempt": entry.key.attempt,
        "saved_at": entry.saved_at.isoformat(),
        "phase": entry.attempt_state.phase.value if entry.attempt_state else None,
    }


@router.post("/recovery/resubmit")
async def resubmit_onboarding(
    user: AuthenticatedUser = Depends(get_current_user),
    provider: SessionProvider = Depends(get_session_provider),
    service: OnboardingCompletionService = Depends(get_service),
) -> dict:
    """Re-submit the captured completion under its original idempotency key."""
    return await _run_completion(service.resubmit(user.id, provider), provider)
