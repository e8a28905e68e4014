"""
Pytest configuration and fixtures for Planora tests.

In-memory fakes stand in for the three stores and the session provider.
Each fake can be scripted to fail: push exceptions onto `failures` and the
next calls raise them in order.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

# Set test environment before importing planora modules
os.environ["PLANORA_ENV"] = "development"
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")

from onboarding.cache import InMemoryLocalCache
from onboarding.errors import SessionExpiredError
from onboarding.metadata import metadata_says_completed
from onboarding.normalizer import normalize_preferences
from onboarding.state import OnboardingCompletionFlag, StoreAck, StoreName
from onboarding.stores import SessionToken

USER_ID = "5b1c9e0a-3f4d-4a51-9d2e-7c1e2b3a4d5f"


async def no_sleep(_delay: float) -> None:
    """Backoff sleep replacement: retries happen immediately."""
    return None


# =============================================================================
# Fakes
# =============================================================================


class FakePrimaryStore:
    """travel_preferences stand-in keyed by user id."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.upsert_calls: list[str] = []
        self.writes = 0
        self.failures: list[Exception] = []
        self.read_failures: list[Exception] = []
        self.drop_writes = False  # ack without persisting
        self.after_write = None

    async def upsert_preferences(self, user_id, record, *, completed_at, idempotency_key):
        self.upsert_calls.append(idempotency_key)
        if self.failures:
            raise self.failures.pop(0)

        existing = self.rows.get(user_id)
        if existing and existing["commit_key"] == idempotency_key:
            ack = StoreAck(StoreName.PRIMARY, applied=False, completed_at=existing["completed_at"])
        else:
            if not self.drop_writes:
                self.rows[user_id] = {
                    "record": record,
                    "completed_at": completed_at,
                    "commit_key": idempotency_key,
                }
                self.writes += 1
            ack = StoreAck(StoreName.PRIMARY)

        if self.after_write:
            self.after_write()
        return ack

    async def read_completion(self, user_id):
        if self.read_failures:
            raise self.read_failures.pop(0)
        row = self.rows.get(user_id)
        if row is None:
            return OnboardingCompletionFlag.not_completed()
        return OnboardingCompletionFlag(True, row["completed_at"], row["commit_key"])

    async def read_completion_flag(self, user_id):
        return (await self.read_completion(user_id)).completed

    async def read_preferences(self, user_id):
        row = self.rows.get(user_id)
        return row["record"] if row else None


class FakeIdentityStore:
    """Auth user_metadata stand-in; updates merge like GoTrue."""

    def __init__(self, metadata: dict | None = None):
        self.metadata: dict[str, dict] = {USER_ID: dict(metadata or {})}
        self.update_calls: list[dict] = []
        self.failures: list[Exception] = []
        self.read_failures: list[Exception] = []

    async def update_metadata_bundle(self, user_id, fields):
        self.update_calls.append(dict(fields))
        if self.failures:
            raise self.failures.pop(0)
        self.metadata.setdefault(user_id, {}).update(fields)
        return StoreAck(StoreName.IDENTITY)

    async def read_metadata(self, user_id):
        if self.read_failures:
            raise self.read_failures.pop(0)
        return dict(self.metadata.get(user_id, {}))

    async def read_completion_flag(self, user_id):
        return metadata_says_completed(await self.read_metadata(user_id))


class FailingCache(InMemoryLocalCache):
    """Cache whose completion-flag writes fail."""

    def set_flag(self, key, value, ttl=None):
        if key.startswith("onboarding:completed:"):
            raise OSError("storage quota exceeded")
        super().set_flag(key, value, ttl)


class FakeSessionProvider:
    """Session for USER_ID with scripted expiry/refresh behavior."""

    def __init__(
        self,
        user_id: str = USER_ID,
        expires_in: float = 3600,
        refresh_ok: bool = True,
        present: bool = True,
    ):
        self.user_id = user_id
        self.expires_in = expires_in
        self.refresh_ok = refresh_ok
        self.present = present
        self.lost = False
        self.get_calls = 0
        self.refresh_calls = 0
        self.current = None
        self.refreshed = False

    def _token(self, seconds: float, suffix: str = "") -> SessionToken:
        return SessionToken(
            user_id=self.user_id,
            access_token=f"access{suffix}",
            refresh_token=f"refresh{suffix}",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=seconds),
        )

    async def get_session(self):
        self.get_calls += 1
        if self.lost or not self.present:
            return None
        if not self.refreshed:
            self.current = self._token(self.expires_in)
        return self.current

    async def refresh(self):
        self.refresh_calls += 1
        if not self.refresh_ok:
            raise SessionExpiredError("refresh token revoked")
        self.present = True
        self.expires_in = 3600
        self.current = self._token(3600, suffix="-refreshed")
        self.refreshed = True
        return self.current


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def user_id():
    return USER_ID


@pytest.fixture
def primary():
    return FakePrimaryStore()


@pytest.fixture
def identity():
    return FakeIdentityStore({"first_name": "Ada", "last_name": "Lovelace"})


@pytest.fixture
def cache():
    return InMemoryLocalCache()


@pytest.fixture
def provider():
    return FakeSessionProvider()


@pytest.fixture
def raw_preferences():
    """Wizard capture from the worked example."""
    return {
        "budgetMin": 500,
        "budgetMax": 1000,
        "budgetFlexibilityPct": 10,
        "duration": "week",
        "dateFlexibility": "flexible-few",
        "planningIntent": "planning",
        "accommodationTypes": ["hotel", "apartment"],
        "accommodationComfort": ["private-room", "private-bathroom"],
        "comfortTier": "standard",
        "locationPreference": "beach",
        "distanceBand": "up-to-5km",
        "flightType": "direct",
        "acceptCheaperStopover": False,
        "priceVsConvenience": "balanced",
        "departureCountry": "Portugal",
        "departureCity": "Lisbon",
    }


@pytest.fixture
def record(raw_preferences):
    return normalize_preferences(raw_preferences)


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for adapter tests."""
    mock_client = MagicMock()

    mock_table = MagicMock()
    mock_table.select.return_value = mock_table
    mock_table.upsert.return_value = mock_table
    mock_table.eq.return_value = mock_table
    mock_table.limit.return_value = mock_table
    mock_table.execute.return_value = MagicMock(data=[])

    mock_client.table.return_value = mock_table

    return mock_client
