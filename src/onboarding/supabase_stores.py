"""
Supabase Store Adapters.

- SupabasePreferenceStore: travel_preferences table (durable store)
- SupabaseIdentityStore: auth user_metadata via the admin API
- SupabaseSessionProvider: the caller's access/refresh token pair

The Supabase client is synchronous; every call runs in a worker thread so
the orchestrator's timeouts apply. Supabase/httpx exceptions never leave
this module: they are classified into TransientStoreError, FatalStoreError
or SessionExpiredError.
"""

import asyncio
import base64
import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import httpx
from postgrest.exceptions import APIError
from pydantic import ValidationError as PydanticValidationError
from supabase import AuthApiError, AuthError, AuthRetryableError, AuthSessionMissingError, Client

from planora.db import create_session_client, get_service_client

from .errors import FatalStoreError, OnboardingError, SessionExpiredError, TransientStoreError
from .metadata import metadata_says_completed
from .preferences import CanonicalPreferenceRecord
from .state import OnboardingCompletionFlag, StoreAck, StoreName
from .stores import SessionToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

PREFERENCES_TABLE = "travel_preferences"

# Retryable HTTP statuses
TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}

# PostgREST / Postgres codes worth retrying
TRANSIENT_PG_CODES = {
    "PGRST000",  # could not connect to database
    "PGRST001",  # internal connection error
    "PGRST002",  # schema cache not ready
    "PGRST003",  # connection pool timeout
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "57014",  # query_canceled (statement timeout)
    "57P01",  # admin_shutdown
}

# PostgREST codes that mean the JWT is no good
SESSION_PG_CODES = {"PGRST300", "PGRST301", "PGRST302", "PGRST303"}

SESSION_AUTH_CODES = {
    "bad_jwt",
    "invalid_jwt",
    "no_authorization",
    "session_not_found",
    "refresh_token_not_found",
    "refresh_token_already_used",
    "reauthentication_needed",
}

TRANSIENT_AUTH_CODES = {"request_timeout", "over_request_rate_limit", "hook_timeout"}


# =============================================================================
# Error classification
# =============================================================================


def _classify_status(store: StoreName, status: int | None, message: str) -> OnboardingError:
    if status in (401, 403):
        return SessionExpiredError(f"{store.value} store rejected the session: {message}")
    if status in TRANSIENT_STATUSES or (status is not None and status >= 500):
        return TransientStoreError(store, message)
    return FatalStoreError(store, message)


def classify_error(store: StoreName, error: Exception) -> OnboardingError:
    """Map a Supabase/httpx exception to the onboarding error taxonomy."""
    if isinstance(error, OnboardingError):
        return error

    if isinstance(error, httpx.TransportError):
        return TransientStoreError(store, f"network error: {error}")

    if isinstance(error, httpx.HTTPStatusError):
        return _classify_status(store, error.response.status_code, str(error))

    if isinstance(error, AuthSessionMissingError):
        return SessionExpiredError("Auth session missing")

    if isinstance(error, AuthRetryableError):
        return TransientStoreError(store, error.message)

    if isinstance(error, AuthApiError):
        if error.code in SESSION_AUTH_CODES:
            return SessionExpiredError(f"{store.value} store rejected the session: {error.message}")
        if error.code in TRANSIENT_AUTH_CODES:
            return TransientStoreError(store, error.message)
        return _classify_status(store, error.status, error.message)

    if isinstance(error, AuthError):
        return FatalStoreError(store, error.message)

    if isinstance(error, APIError):
        code = str(error.code or "")
        message = error.message or repr(error)
        if code in SESSION_PG_CODES:
            return SessionExpiredError(f"{store.value} store rejected the session: {message}")
        if code in TRANSIENT_PG_CODES or code.startswith("08"):
            return TransientStoreError(store, message)
        if code.isdigit():
            return _classify_status(store, int(code), message)
        return FatalStoreError(store, f"{code}: {message}" if code else message)

    if isinstance(error, (TimeoutError, ConnectionError)):
        return TransientStoreError(store, str(error) or type(error).__name__)

    return FatalStoreError(store, f"{type(error).__name__}: {error}")


async def _run(store: StoreName, fn: Callable[[], T]) -> T:
    """Run a blocking Supabase call in a thread and classify its failure."""
    try:
        return await asyncio.to_thread(fn)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        classified = classify_error(store, e)
        if classified is not e:
            logger.debug(f"{store.value} store error {type(e).__name__} -> {type(classified).__name__}")
            raise classified from e
        raise


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable completion timestamp: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# =============================================================================
# Durable store
# =============================================================================


class SupabasePreferenceStore:
    """travel_preferences row per user, carrying the completion flag."""

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    def _select_row(self, user_id: str, columns: str = "*") -> dict | None:
        result = (
            self.client.table(PREFERENCES_TABLE)
            .select(columns)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def upsert_preferences(
        self,
        user_id: str,
        record: CanonicalPreferenceRecord,
        *,
        completed_at: datetime,
        idempotency_key: str,
    ) -> StoreAck:
        def upsert() -> StoreAck:
            existing = self._select_row(user_id, "last_commit_key, onboarding_completed, onboarding_completed_at")
            if existing and existing.get("onboarding_completed") and existing.get("last_commit_key") == idempotency_key:
                return StoreAck(
                    StoreName.PRIMARY,
                    applied=False,
                    completed_at=_parse_timestamp(existing.get("onboarding_completed_at")),
                )

            row = {
                "user_id": user_id,
                **record.to_row(),
                "onboarding_completed": True,
                "onboarding_completed_at": completed_at.isoformat(),
                "last_commit_key": idempotency_key,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            self.client.table(PREFERENCES_TABLE).upsert(row, on_conflict="user_id").execute()
            return StoreAck(StoreName.PRIMARY)

        return await _run(StoreName.PRIMARY, upsert)

    async def read_completion(self, user_id: str) -> OnboardingCompletionFlag:
        row = await _run(
            StoreName.PRIMARY,
            lambda: self._select_row(user_id, "onboarding_completed, onboarding_completed_at, last_commit_key"),
        )
        if not row:
            return OnboardingCompletionFlag.not_completed()
        return OnboardingCompletionFlag(
            completed=row.get("onboarding_completed") is True,
            completed_at=_parse_timestamp(row.get("onboarding_completed_at")),
            commit_key=row.get("last_commit_key"),
        )

    async def read_completion_flag(self, user_id: str) -> bool:
        return (await self.read_completion(user_id)).completed

    async def read_preferences(self, user_id: str) -> CanonicalPreferenceRecord | None:
        row = await _run(StoreName.PRIMARY, lambda: self._select_row(user_id))
        if not row:
            return None
        try:
            return CanonicalPreferenceRecord.from_row(row)
        except (KeyError, PydanticValidationError) as e:
            raise FatalStoreError(StoreName.PRIMARY, f"stored preferences are not a valid record: {e}") from e


# =============================================================================
# Identity store
# =============================================================================


class SupabaseIdentityStore:
    """
    Auth user_metadata, written through the admin API.

    GoTrue merges user_metadata keys, so one update carries the whole
    bundle and leaves unrelated keys alone.
    """

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    async def update_metadata_bundle(self, user_id: str, fields: dict[str, Any]) -> StoreAck:
        def update() -> StoreAck:
            self.client.auth.admin.update_user_by_id(user_id, {"user_metadata": fields})
            return StoreAck(StoreName.IDENTITY)

        return await _run(StoreName.IDENTITY, update)

    async def read_metadata(self, user_id: str) -> dict[str, Any]:
        def read() -> dict[str, Any]:
            response = self.client.auth.admin.get_user_by_id(user_id)
            if not response or not response.user:
                return {}
            return dict(response.user.user_metadata or {})

        return await _run(StoreName.IDENTITY, read)

    async def read_completion_flag(self, user_id: str) -> bool:
        return metadata_says_completed(await self.read_metadata(user_id))


# =============================================================================
# Session provider
# =============================================================================


def _jwt_claims(token: str) -> dict[str, Any] | None:
    """
    Decode the JWT payload without verifying the signature.

    Only used for refresh scheduling and routing; the token itself is
    validated by Supabase in get_session() / refresh().
    """
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (IndexError, TypeError, ValueError):
        return None
    return claims if isinstance(claims, dict) else None


def jwt_expiry(token: str) -> datetime | None:
    claims = _jwt_claims(token)
    try:
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError):
        return None


def jwt_subject(token: str) -> str | None:
    claims = _jwt_claims(token) or {}
    subject = claims.get("sub")
    return str(subject) if subject else None


class SupabaseSessionProvider:
    """
    Session of the user making the request.

    Holds the bearer token (and refresh token, when the client sent one).
    After refresh(), `current` carries the new pair so the web layer can
    hand it back to the browser.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str | None = None,
        client_factory: Callable[[], Client] = create_session_client,
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self._client_factory = client_factory
        self._client: Client | None = None
        self.current: SessionToken | None = None
        self.refreshed = False

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def get_session(self) -> SessionToken | None:
        def lookup() -> SessionToken | None:
            response = self.client.auth.get_user(self.access_token)
            if not response or not response.user:
                return None
            return SessionToken(
                user_id=response.user.id,
                access_token=self.access_token,
                refresh_token=self.refresh_token,
                expires_at=jwt_expiry(self.access_token),
            )

        try:
            session = await _run(StoreName.IDENTITY, lookup)
        except SessionExpiredError:
            return None
        except FatalStoreError as e:
            logger.warning(f"Session lookup rejected: {e}")
            return None
        self.current = session
        return session

    async def refresh(self) -> SessionToken:
        if not self.refresh_token:
            raise SessionExpiredError("No refresh token available")

        def do_refresh() -> SessionToken:
            response = self.client.auth.refresh_session(self.refresh_token)
            session = response.session if response else None
            if session is None or session.user is None:
                raise SessionExpiredError("Refresh returned no session")
            expires_at = (
                datetime.fromtimestamp(session.expires_at, tz=timezone.utc)
                if session.expires_at else jwt_expiry(session.access_token)
            )
            return SessionToken(
                user_id=session.user.id,
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                expires_at=expires_at,
            )

        try:
            session = await _run(StoreName.IDENTITY, do_refresh)
        except (FatalStoreError, TransientStoreError) as e:
            raise SessionExpiredError(f"Session refresh failed: {e}") from e

        self.access_token = session.access_token
        self.refresh_token = session.refresh_token
        self.current = session
        self.refreshed = True
        logger.info(f"Refreshed session for user {session.user_id}")
        return session
