"""
Retry and Timeout Policy.

BackoffPolicy: bounded exponential backoff for TransientStoreError.
CommitBudget / Deadline: per-call timeout capped by one overall wall-clock budget.

Every store call in a commit goes through call_with_timeout / call_with_retry,
so a hung store surfaces as a TransientStoreError instead of blocking.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from .errors import TransientStoreError
from .state import StoreName

if TYPE_CHECKING:
    from planora.config import PlanoraSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: base, base*m, base*m^2, ... capped at max_delay."""
    max_attempts: int = 4
    base_delay: float = 0.25
    max_delay: float = 2.0
    multiplier: float = 2.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry number `retry_number` (1-based)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (retry_number - 1)))

    @classmethod
    def from_settings(cls, settings: "PlanoraSettings") -> "BackoffPolicy":
        return cls(
            max_attempts=settings.onboarding_retry_max_attempts,
            base_delay=settings.onboarding_retry_base_delay_seconds,
            max_delay=settings.onboarding_retry_max_delay_seconds,
        )


NO_RETRY = BackoffPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0)


class Deadline:
    """Overall commit budget plus an independent per-call timeout."""

    def __init__(
        self,
        total_seconds: float,
        call_timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._expires_at = clock() + total_seconds
        self.call_timeout_seconds = call_timeout

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def call_timeout(self) -> float:
        """Timeout for the next call: the per-call limit or what is left."""
        return min(self.call_timeout_seconds, self.remaining())


@dataclass(frozen=True)
class CommitBudget:
    """Per-call timeout and overall wall-clock budget for one commit."""
    call_timeout_seconds: float = 5.0
    total_seconds: float = 20.0

    def start(self, clock: Callable[[], float] = time.monotonic) -> Deadline:
        return Deadline(self.total_seconds, self.call_timeout_seconds, clock=clock)

    @classmethod
    def from_settings(cls, settings: "PlanoraSettings") -> "CommitBudget":
        return cls(
            call_timeout_seconds=settings.onboarding_call_timeout_seconds,
            total_seconds=settings.onboarding_commit_budget_seconds,
        )


async def call_with_timeout(
    store: StoreName,
    operation: Callable[[], Awaitable[T]],
    deadline: Deadline,
) -> T:
    """Run one store call within the deadline. Timeouts become transient errors."""
    if deadline.expired:
        raise TransientStoreError(store, "commit budget exhausted")
    try:
        return await asyncio.wait_for(operation(), timeout=deadline.call_timeout())
    except asyncio.TimeoutError as e:
        raise TransientStoreError(store, "call timed out") from e


async def call_with_retry(
    store: StoreName,
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    deadline: Deadline,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, TransientStoreError], None] | None = None,
) -> T:
    """
    Run a store call, retrying TransientStoreError with backoff.

    FatalStoreError (and anything else) propagates immediately. The last
    TransientStoreError propagates when attempts or the budget run out.
    """
    attempt = 1
    while True:
        try:
            return await call_with_timeout(store, operation, deadline)
        except TransientStoreError as e:
            if attempt >= policy.max_attempts:
                logger.warning(f"{store.value} store: giving up after {attempt} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            if delay >= deadline.remaining():
                logger.warning(f"{store.value} store: no budget left for retry {attempt}: {e}")
                raise
            logger.warning(f"{store.value} store: transient failure (attempt {attempt}), retrying in {delay:.2f}s: {e}")
            if on_retry:
                on_retry(attempt, e)
            await sleep(delay)
            attempt += 1
