"""
Local Cache and Recovery Buffer.

The local cache holds three kinds of entries per user:
- onboarding:completed:<user_id>  fast-path completion flag for navigation
- onboarding:attempt:<user_id>    monotonically increasing attempt counter
- onboarding:recovery:<user_id>   captured record + attempt state, short-lived

Completion flags expire so the durable store gets re-consulted; attempt
counters do not, since a counter that restarted would re-derive a key the
durable store already holds.

The cache is owned by this subsystem and is never a source of truth.
A miss is not an error.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .preferences import CanonicalPreferenceRecord
from .state import CommitAttemptState, IdempotencyKey
from .stores import LocalCache

logger = logging.getLogger(__name__)


# Fast-path flag lifetime; the durable store answers after expiry
COMPLETION_FLAG_TTL = timedelta(hours=24)


def completion_key(user_id: str) -> str:
    return f"onboarding:completed:{user_id}"


def attempt_key(user_id: str) -> str:
    return f"onboarding:attempt:{user_id}"


def recovery_key(user_id: str) -> str:
    return f"onboarding:recovery:{user_id}"


class InMemoryLocalCache:
    """
    Dict-backed LocalCache with optional per-entry expiry.

    Expired entries are dropped on read, and swept from the whole table at
    most once per sweep interval on write.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval_seconds: float = 60.0):
        self._entries: dict[str, tuple[Any, float | None]] = {}
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    def set_flag(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        expires_at = now + ttl.total_seconds() if ttl is not None else None
        self._entries[key] = (value, expires_at)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")

    def get_flag(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# Attempt counter
# =============================================================================


class AttemptCounter:
    """Client-side attempt counter backing idempotency keys."""

    def __init__(self, cache: LocalCache):
        self._cache = cache

    def current(self, user_id: str) -> int:
        return int(self._cache.get_flag(attempt_key(user_id)) or 0)

    def peek(self, user_id: str) -> IdempotencyKey:
        """Key the next call to next() will return, without taking it."""
        return IdempotencyKey.derive(user_id, self.current(user_id) + 1)

    def next(self, user_id: str) -> IdempotencyKey:
        """Start a genuinely new attempt."""
        attempt = self.current(user_id) + 1
        self._cache.set_flag(attempt_key(user_id), attempt)
        return IdempotencyKey.derive(user_id, attempt)

    def reuse(self, user_id: str, attempt: int) -> IdempotencyKey:
        """Key for a retry of an attempt the client already started."""
        if attempt > self.current(user_id):
            # Counter was lost (cache restart); keep it monotonic
            self._cache.set_flag(attempt_key(user_id), attempt)
        return IdempotencyKey.derive(user_id, attempt)


# =============================================================================
# Recovery buffer
# =============================================================================


@dataclass(frozen=True)
class RecoveryEntry:
    """What a re-authenticated user needs to re-submit a completion."""
    record: CanonicalPreferenceRecord
    key: IdempotencyKey
    attempt_state: CommitAttemptState | None
    saved_at: datetime

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_wire(),
            "user_id": self.key.user_id,
            "attempt": self.key.attempt,
            "attempt_state": self.attempt_state.to_dict() if self.attempt_state else None,
            "saved_at": self.saved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryEntry":
        return cls(
            record=CanonicalPreferenceRecord.from_wire(data["record"]),
            key=IdempotencyKey.derive(data["user_id"], data["attempt"]),
            attempt_state=(
                CommitAttemptState.from_dict(data["attempt_state"])
                if data.get("attempt_state") else None
            ),
            saved_at=datetime.fromisoformat(data["saved_at"]),
        )


class RecoveryBuffer:
    """Short-lived copy of the captured record for resume after re-auth."""

    def __init__(self, cache: LocalCache, ttl: timedelta = timedelta(hours=24)):
        self._cache = cache
        self._ttl = ttl

    def save(
        self,
        record: CanonicalPreferenceRecord,
        key: IdempotencyKey,
        attempt_state: CommitAttemptState | None = None,
    ) -> None:
        entry = RecoveryEntry(
            record=record,
            key=key,
            attempt_state=attempt_state,
            saved_at=datetime.now().astimezone(),
        )
        try:
            self._cache.set_flag(recovery_key(key.user_id), entry.to_dict(), ttl=self._ttl)
        except Exception as e:
            logger.warning(f"Failed to write recovery buffer for user {key.user_id}: {e}")

    def load(self, user_id: str) -> RecoveryEntry | None:
        data = self._cache.get_flag(recovery_key(user_id))
        if not data:
            return None
        try:
            return RecoveryEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable recovery entry for user {user_id}: {e}")
            self._cache.delete(recovery_key(user_id))
            return None

    def clear(self, user_id: str) -> None:
        self._cache.delete(recovery_key(user_id))
