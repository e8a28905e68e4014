"""
Store Protocols.

Collaborator contracts the completion flow depends on. Implementations
live in supabase_stores (durable + identity + session) and cache (local).

Store methods raise TransientStoreError / FatalStoreError instead of
returning error values. The async methods may block on the network; the
orchestrator wraps each call in its own timeout.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, runtime_checkable

from .preferences import CanonicalPreferenceRecord
from .state import OnboardingCompletionFlag, StoreAck


@runtime_checkable
class PrimaryStore(Protocol):
    """Durable preference store. Source of truth for completion."""

    async def upsert_preferences(
        self,
        user_id: str,
        record: CanonicalPreferenceRecord,
        *,
        completed_at: datetime,
        idempotency_key: str,
    ) -> StoreAck:
        """
        Upsert the record and its completion flag, keyed by user id.

        A replay carrying an already-applied idempotency key is a no-op
        (returns StoreAck(applied=False)).
        """
        ...

    async def read_completion_flag(self, user_id: str) -> bool:
        ...

    async def read_completion(self, user_id: str) -> OnboardingCompletionFlag:
        ...

    async def read_preferences(self, user_id: str) -> CanonicalPreferenceRecord | None:
        ...


@runtime_checkable
class IdentityStore(Protocol):
    """Auth provider's per-user metadata. Also gates UI navigation."""

    async def update_metadata_bundle(self, user_id: str, fields: dict[str, Any]) -> StoreAck:
        """Write every field in one call (one auth-state-change event)."""
        ...

    async def read_completion_flag(self, user_id: str) -> bool:
        ...

    async def read_metadata(self, user_id: str) -> dict[str, Any]:
        ...


@runtime_checkable
class LocalCache(Protocol):
    """Process-local, best-effort key/value cache."""

    def set_flag(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        ...

    def get_flag(self, key: str) -> Any | None:
        ...

    def delete(self, key: str) -> None:
        ...


@dataclass(frozen=True)
class SessionToken:
    """An authenticated session for one user."""
    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """True if the token is expired or will expire within `seconds`."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now <= timedelta(seconds=seconds)


@runtime_checkable
class SessionProvider(Protocol):
    """Source of the current user's session."""

    async def get_session(self) -> SessionToken | None:
        """Current session, or None when it is missing/expired."""
        ...

    async def refresh(self) -> SessionToken:
        """Refresh the session. Raises SessionExpiredError on failure."""
        ...
