"""
Single-Flight Guard.

At most one completion commit per user id at a time. Double-clicking
"Finish" or a redirect-triggered re-entry gets a ConflictError carrying a
waiter for the in-flight outcome instead of a second write sequence.

Leases have a bounded hold time so a crashed attempt cannot lock a user out;
an expired lease is taken over by the next begin().
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import ConflictError
from .state import CommitOutcome

logger = logging.getLogger(__name__)

_tokens = itertools.count(1)


@dataclass(frozen=True)
class AttemptHandle:
    """Proof of holding the per-user lease."""
    user_id: str
    token: int
    acquired_at: float
    expires_at: float


@dataclass
class _Lease:
    handle: AttemptHandle
    outcome: "asyncio.Future[CommitOutcome | None]"
    context: Any = None


class SingleFlightGuard:
    """Per-user lease table. Not shared across processes."""

    def __init__(self, lease_seconds: float = 45.0, clock: Callable[[], float] = time.monotonic):
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._leases: dict[str, _Lease] = {}

    def begin(self, user_id: str, context: Any = None) -> AttemptHandle:
        """
        Acquire the lease for user_id.

        `context` describes what the holder is committing; a conflicting
        caller gets it back on the ConflictError. Must be called from a
        running event loop.

        Raises:
            ConflictError: an unexpired lease is held; its wait() yields the
                in-flight outcome.
        """
        now = self._clock()
        current = self._leases.get(user_id)
        if current is not None:
            if now < current.handle.expires_at:
                raise ConflictError(user_id, waiter=current.outcome, in_flight=current.context)
            logger.warning(f"Taking over expired onboarding lease for user {user_id}")
            if not current.outcome.done():
                current.outcome.set_result(None)

        handle = AttemptHandle(
            user_id=user_id,
            token=next(_tokens),
            acquired_at=now,
            expires_at=now + self.lease_seconds,
        )
        loop = asyncio.get_running_loop()
        self._leases[user_id] = _Lease(handle=handle, outcome=loop.create_future(), context=context)
        return handle

    def release(self, handle: AttemptHandle, outcome: CommitOutcome | None = None) -> None:
        """Release the lease and hand the outcome to waiters. Stale handles are ignored."""
        current = self._leases.get(handle.user_id)
        if current is None or current.handle.token != handle.token:
            logger.debug(f"Ignoring release of stale lease for user {handle.user_id}")
            return
        del self._leases[handle.user_id]
        if not current.outcome.done():
            current.outcome.set_result(outcome)

    def in_flight(self, user_id: str) -> bool:
        current = self._leases.get(user_id)
        return current is not None and self._clock() < current.handle.expires_at
