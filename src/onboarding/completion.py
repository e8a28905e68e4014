"""
Onboarding Completion Service.

Entry point for "the user clicked Finish". Wires the flow end to end:

    normalize -> fresh session -> single-flight lease -> commit (primary,
    identity, cache, verify) -> session re-check -> outcome

Also answers the navigation question at login (resolve_status) and serves
the recovery buffer for re-submit after re-authentication.

The commit runs in its own task. A caller that goes away (request
cancelled, user navigated off) does not cancel it; the lease is released
when the task ends.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from planora.observability.commit_logger import CommitLogger

from .cache import (
    COMPLETION_FLAG_TTL,
    AttemptCounter,
    InMemoryLocalCache,
    RecoveryBuffer,
    RecoveryEntry,
    completion_key,
)
from .errors import ConflictError, OnboardingError, RecoveryNotFoundError, SessionExpiredError
from .normalizer import normalize_preferences
from .orchestrator import MultiStoreCommitOrchestrator
from .preferences import CanonicalPreferenceRecord
from .retry import BackoffPolicy, CommitBudget, Deadline, call_with_timeout
from .session_guard import SessionGuard
from .single_flight import AttemptHandle, SingleFlightGuard
from .state import CommitAttemptState, CommitOutcome, IdempotencyKey, OutcomeStatus, StoreName
from .stores import IdentityStore, LocalCache, PrimaryStore, SessionProvider, SessionToken
from .verifier import (
    ConsistencyReport,
    ConsistencyVerifier,
    ReconciliationScheduler,
    cache_flag_value,
    cache_says_completed,
)

logger = logging.getLogger(__name__)

HOME_ROUTE = "/"
ONBOARDING_ROUTE = "/onboarding"
REAUTH_ROUTE = "/login"


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class CompletionResult:
    """What the UI needs after Finish: outcome, where to go, fresh session."""
    outcome: CommitOutcome
    record: CanonicalPreferenceRecord
    idempotency_key: IdempotencyKey
    session: SessionToken | None = None
    reused: bool = False  # outcome of a concurrent in-flight attempt

    @property
    def next_route(self) -> str:
        if self.outcome.requires_reauth:
            return REAUTH_ROUTE
        return HOME_ROUTE if self.outcome.may_proceed else ONBOARDING_ROUTE

    def to_dict(self) -> dict:
        return {
            **self.outcome.to_dict(),
            "attempt": self.idempotency_key.attempt,
            "next_route": self.next_route,
            "reused": self.reused,
            "preferences": self.record.to_wire(),
        }


@dataclass(frozen=True)
class CompletionStatus:
    """Navigation decision at login / route guard time."""
    completed: bool
    source: str  # "cache" or "primary"
    reconciling: bool = False

    @property
    def next_route(self) -> str:
        return HOME_ROUTE if self.completed else ONBOARDING_ROUTE

    def to_dict(self) -> dict:
        return {
            "completed": self.completed,
            "source": self.source,
            "reconciling": self.reconciling,
            "next_route": self.next_route,
        }


# =============================================================================
# Service
# =============================================================================


class OnboardingCompletionService:
    """Owns the per-process guard, counters, verifier and scheduler."""

    def __init__(
        self,
        primary: PrimaryStore,
        identity: IdentityStore,
        cache: LocalCache,
        *,
        policy: BackoffPolicy | None = None,
        budget: CommitBudget | None = None,
        lease_seconds: float = 45.0,
        refresh_leeway_seconds: float = 60.0,
        recovery_ttl: timedelta = timedelta(hours=24),
        reconcile_delay_seconds: float = 5.0,
        reconcile_max_passes: int = 3,
        trace: CommitLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.primary = primary
        self.identity = identity
        self.cache = cache
        self.budget = budget or CommitBudget()
        self.refresh_leeway_seconds = refresh_leeway_seconds

        self.single_flight = SingleFlightGuard(lease_seconds=lease_seconds)
        self.attempts = AttemptCounter(cache)
        self.recovery = RecoveryBuffer(cache, ttl=recovery_ttl)
        self.verifier = ConsistencyVerifier(
            primary, identity, cache,
            call_timeout_seconds=self.budget.call_timeout_seconds,
            trace=trace,
        )
        self.scheduler = ReconciliationScheduler(
            self.verifier,
            delay_seconds=reconcile_delay_seconds,
            max_passes=reconcile_max_passes,
            sleep=sleep,
        )
        self.orchestrator = MultiStoreCommitOrchestrator(
            primary, identity, cache,
            policy=policy,
            budget=self.budget,
            verifier=self.verifier,
            scheduler=self.scheduler,
            trace=trace,
            sleep=sleep,
        )
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings,
        primary: PrimaryStore,
        identity: IdentityStore,
        cache: LocalCache,
    ) -> "OnboardingCompletionService":
        return cls(
            primary,
            identity,
            cache,
            policy=BackoffPolicy.from_settings(settings),
            budget=CommitBudget.from_settings(settings),
            lease_seconds=settings.onboarding_lease_seconds,
            refresh_leeway_seconds=settings.session_refresh_leeway_seconds,
            recovery_ttl=timedelta(hours=settings.onboarding_recovery_ttl_hours),
            reconcile_delay_seconds=settings.onboarding_reconcile_delay_seconds,
            reconcile_max_passes=settings.onboarding_reconcile_max_passes,
        )

    def session_guard(self, provider: SessionProvider) -> SessionGuard:
        return SessionGuard(
            provider,
            refresh_leeway_seconds=self.refresh_leeway_seconds,
            call_timeout_seconds=self.budget.call_timeout_seconds,
        )

    # =========================================================================
    # Completion
    # =========================================================================

    async def complete(
        self,
        raw: Mapping[str, Any],
        user_id: str,
        session_provider: SessionProvider,
        *,
        attempt: int | None = None,
    ) -> CompletionResult:
        """
        Normalize the wizard capture and commit it.

        `attempt` is set when the client retries an attempt it already
        started (same idempotency key); omitted for a new Finish click.

        Raises:
            ValidationError: the capture cannot be normalized (nothing written)
            SessionExpiredError: no fresh session (capture kept for re-submit)
            ConflictError: an in-flight attempt ended without an outcome
        """
        record = normalize_preferences(raw)
        key = self.attempts.reuse(user_id, attempt) if attempt is not None else None
        return await self.submit(record, user_id, session_provider, key)

    async def submit(
        self,
        record: CanonicalPreferenceRecord,
        user_id: str,
        session_provider: SessionProvider,
        key: IdempotencyKey | None = None,
        attempt_state: CommitAttemptState | None = None,
    ) -> CompletionResult:
        """
        Commit an already-normalized record.

        Without a key a new attempt number is taken, but only once this call
        holds the lease (or has to park the capture for re-submit).
        """
        guard = self.session_guard(session_provider)
        try:
            session = await guard.ensure_fresh_session(user_id)
        except SessionExpiredError:
            self.recovery.save(record, key or self.attempts.next(user_id), attempt_state)
            raise

        new_attempt = key is None
        if new_attempt:
            key = self.attempts.peek(user_id)
        try:
            handle = self.single_flight.begin(user_id, context=(record, key))
        except ConflictError as conflict:
            logger.info(f"Completion already in flight for user {user_id}; waiting for its outcome")
            outcome = await conflict.wait()
            if outcome is None:
                raise
            committed_record, committed_key = conflict.in_flight
            return CompletionResult(outcome, committed_record, committed_key, session=session, reused=True)
        if new_attempt:
            self.attempts.next(user_id)

        task = asyncio.get_running_loop().create_task(
            self._run_commit(handle, record, user_id, key, attempt_state, guard)
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

        outcome = await asyncio.shield(task)
        current = getattr(session_provider, "current", None) or session
        return CompletionResult(outcome, record, key, session=current)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, OnboardingError):
            logger.error(f"Onboarding commit task crashed: {error!r}")

    async def _run_commit(
        self,
        handle: AttemptHandle,
        record: CanonicalPreferenceRecord,
        user_id: str,
        key: IdempotencyKey,
        attempt_state: CommitAttemptState | None,
        guard: SessionGuard,
    ) -> CommitOutcome:
        outcome: CommitOutcome | None = None
        live_state: CommitAttemptState | None = None

        def capture(state: CommitAttemptState) -> None:
            nonlocal live_state
            live_state = state

        try:
            try:
                outcome = await self.orchestrator.commit(
                    record, user_id, key,
                    attempt_state=attempt_state,
                    on_state=capture,
                )
            except SessionExpiredError:
                self.recovery.save(record, key, live_state)
                raise

            if outcome.status == OutcomeStatus.FAILED:
                self.recovery.save(record, key, live_state)
            elif not await guard.reverify(user_id):
                outcome = outcome.downgrade_for_lost_session(user_id)
                self.recovery.save(record, key, live_state)
            else:
                self.recovery.clear(user_id)
            return outcome
        finally:
            self.single_flight.release(handle, outcome)

    # =========================================================================
    # Navigation status
    # =========================================================================

    async def resolve_status(self, user_id: str) -> CompletionStatus:
        """
        Has this user completed onboarding?

        The cache answers when it can. Otherwise the durable store decides;
        a completed durable store back-fills the cache and schedules a
        reconciliation pass for the identity store.
        """
        try:
            cached = self.cache.get_flag(completion_key(user_id))
        except Exception as e:
            logger.warning(f"Cache read failed for user {user_id}: {e}")
            cached = None
        if cache_says_completed(cached):
            return CompletionStatus(completed=True, source="cache")

        deadline = Deadline(self.budget.call_timeout_seconds, self.budget.call_timeout_seconds)
        flag = await call_with_timeout(StoreName.PRIMARY, lambda: self.primary.read_completion(user_id), deadline)
        if not flag.completed:
            return CompletionStatus(completed=False, source="primary")

        try:
            self.cache.set_flag(
                completion_key(user_id),
                cache_flag_value(flag.completed_at or datetime.now(timezone.utc)),
                ttl=COMPLETION_FLAG_TTL,
            )
        except Exception as e:
            logger.warning(f"Cache back-fill failed for user {user_id}: {e}")
        self.scheduler.schedule(user_id)
        return CompletionStatus(completed=True, source="primary", reconciling=True)

    async def verify(self, user_id: str, *, repair: bool = True) -> ConsistencyReport:
        return await self.verifier.verify(user_id, repair=repair)

    # =========================================================================
    # Recovery
    # =========================================================================

    def get_recovery(self, user_id: str) -> RecoveryEntry | None:
        return self.recovery.load(user_id)

    async def resubmit(self, user_id: str, session_provider: SessionProvider) -> CompletionResult:
        """
        Re-submit the captured record after re-authentication.

        Reuses the original idempotency key, so a primary store that
        already has the write treats it as a no-op.
        """
        entry = self.recovery.load(user_id)
        if entry is None or entry.key.user_id != user_id:
            raise RecoveryNotFoundError(user_id)
        logger.info(f"Re-submitting onboarding attempt {entry.key.attempt} for user {user_id}")
        return await self.submit(entry.record, user_id, session_provider, entry.key, entry.attempt_state)

    async def close(self) -> None:
        """Let in-flight commits finish, then stop reconciliation."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.scheduler.close()


# =============================================================================
# Process-wide instance
# =============================================================================

_service: OnboardingCompletionService | None = None


def get_completion_service() -> OnboardingCompletionService:
    """Get or create the service backed by Supabase and the in-process cache."""
    global _service
    if _service is None:
        from planora.config import get_settings

        from .supabase_stores import SupabaseIdentityStore, SupabasePreferenceStore

        _service = OnboardingCompletionService.from_settings(
            get_settings(),
            primary=SupabasePreferenceStore(),
            identity=SupabaseIdentityStore(),
            cache=InMemoryLocalCache(),
        )
    return _service


def reset_completion_service() -> None:
    """Drop the process-wide instance (tests, app shutdown)."""
    global _service
    _service = None
