"""
Onboarding Errors.

Error taxonomy for onboarding completion:
- ValidationError: normalizer rejected the wizard capture (field-level issues)
- SessionExpiredError: no fresh session; nothing was written for this attempt
- TransientStoreError: retryable store failure (network, timeout, 5xx)
- FatalStoreError: non-retryable store failure; aborts the commit at that step
- ConflictError: another completion for the same user is already in flight
- RecoveryNotFoundError: re-submit requested but the recovery buffer is empty
- PartialConsistencyWarning: not an error, attached to partial outcomes
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .state import CommitOutcome, StoreName


class OnboardingError(Exception):
    """Base class for onboarding completion errors."""


@dataclass(frozen=True)
class FieldIssue:
    """One violated invariant in the wizard capture."""
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class ValidationError(OnboardingError):
    """Wizard capture could not be normalized. Carries every issue found."""

    def __init__(self, issues: list[FieldIssue]):
        self.issues = list(issues)
        summary = "; ".join(f"{i.field}: {i.message}" for i in self.issues)
        super().__init__(f"Invalid preferences ({len(self.issues)} issues): {summary}")

    @property
    def fields(self) -> list[str]:
        return [i.field for i in self.issues]


class SessionExpiredError(OnboardingError):
    """
    Session is missing, expired, or could not be refreshed.

    recoverable=True means captured data was kept in the recovery buffer
    and can be re-submitted after re-authentication.
    """

    def __init__(self, message: str = "Session expired", recoverable: bool = True):
        self.recoverable = recoverable
        super().__init__(message)


class StoreError(OnboardingError):
    """A store call failed."""

    def __init__(self, store: "StoreName | str", message: str):
        self.store = store
        super().__init__(f"[{getattr(store, 'value', store)}] {message}")


class TransientStoreError(StoreError):
    """Retryable store failure."""


class FatalStoreError(StoreError):
    """Non-retryable store failure."""


class InvalidTransitionError(OnboardingError):
    """Commit state machine was asked for a transition it does not allow."""


class ConflictError(OnboardingError):
    """
    A completion for this user is already in flight.

    Callers should await `wait()` and reuse the in-flight outcome rather
    than starting a second write sequence. `in_flight` is whatever the
    lease holder registered about its attempt.
    """

    def __init__(
        self,
        user_id: str,
        waiter: "asyncio.Future[CommitOutcome] | None" = None,
        in_flight: Any = None,
    ):
        self.user_id = user_id
        self.in_flight = in_flight
        self._waiter = waiter
        super().__init__(f"Onboarding completion already in flight for user {user_id}")

    async def wait(self) -> "CommitOutcome | None":
        """Await the in-flight attempt's outcome (None if it ended without one)."""
        if self._waiter is None:
            return None
        return await asyncio.shield(self._waiter)


class PartialConsistencyWarning(UserWarning):
    """
    Completion reached the durable store but not every cache of it.

    Logged and attached to the outcome; reconciliation is scheduled.
    """

    def __init__(self, user_id: str, pending: "tuple[StoreName, ...]"):
        self.user_id = user_id
        self.pending = pending
        names = ", ".join(getattr(p, "value", str(p)) for p in pending)
        super().__init__(f"Onboarding for user {user_id} completed with pending stores: {names}")


class RecoveryNotFoundError(OnboardingError):
    """No captured completion is waiting in the recovery buffer."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No onboarding recovery entry for user {user_id}")
