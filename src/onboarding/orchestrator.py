"""
Multi-Store Commit Orchestrator.

Writes one onboarding completion into the three stores under a single
idempotency key, in a fixed order that encodes the recovery policy:

1. Read-before-write: fetch identity fields this commit must not clobber
   (best-effort, read-only)
2. Primary write: upsert record + completion flag into the durable store,
   retried with backoff on transient errors; fatal or exhausted -> Failed
3. Identity write: completion flag and every derived field in ONE bundled
   call; failure -> PartiallyCompleted(identity) + reconciliation
4. Cache write: fast-path flag, best-effort
5. Verify: re-read primary/identity flags, repair identity in place

Store writes are strictly sequential. Each call has its own timeout and the
whole sequence runs against one wall-clock budget.
"""

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable

from planora.observability.commit_logger import CommitLogger, get_commit_logger

from .cache import COMPLETION_FLAG_TTL, completion_key
from .errors import (
    FatalStoreError,
    OnboardingError,
    PartialConsistencyWarning,
    SessionExpiredError,
    TransientStoreError,
)
from .metadata import build_identity_bundle, extract_protected_fields
from .preferences import CanonicalPreferenceRecord
from .retry import BackoffPolicy, CommitBudget, Deadline, call_with_retry, call_with_timeout
from .state import (
    CommitAttemptState,
    CommitOutcome,
    CommitPhase,
    IdempotencyKey,
    StoreName,
    StoreStatus,
)
from .stores import IdentityStore, LocalCache, PrimaryStore
from .verifier import ConsistencyVerifier, ReconciliationScheduler, cache_flag_value

logger = logging.getLogger(__name__)


class MultiStoreCommitOrchestrator:
    """Sequences the primary, identity and cache writes for one completion."""

    def __init__(
        self,
        primary: PrimaryStore,
        identity: IdentityStore,
        cache: LocalCache,
        *,
        policy: BackoffPolicy | None = None,
        budget: CommitBudget | None = None,
        verifier: ConsistencyVerifier | None = None,
        scheduler: ReconciliationScheduler | None = None,
        trace: CommitLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.primary = primary
        self.identity = identity
        self.cache = cache
        self.policy = policy or BackoffPolicy()
        self.budget = budget or CommitBudget()
        self.verifier = verifier
        self.scheduler = scheduler
        self._trace = trace
        self._sleep = sleep
        self._clock = clock

    @property
    def trace(self) -> CommitLogger:
        return self._trace or get_commit_logger()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _advance(self, state: CommitAttemptState, target: CommitPhase) -> None:
        old = state.phase
        state.advance(target)
        logger.debug(f"Commit {state.idempotency_key[:8]} for user {state.user_id}: {old.value} -> {target.value}")
        self.trace.phase(state.user_id, old.value, target.value)

    def _mark(
        self,
        state: CommitAttemptState,
        store: StoreName,
        status: StoreStatus,
        error: str | None = None,
        applied: bool | None = None,
    ) -> None:
        state.mark(store, status, error)
        self.trace.store_write(state.user_id, store.value, status.value, applied=applied, error=error)

    def _on_retry(self, state: CommitAttemptState, store: StoreName) -> Callable[[int, TransientStoreError], None]:
        def record(attempt: int, error: TransientStoreError) -> None:
            self.trace.retry(state.user_id, store.value, attempt, str(error))
        return record

    def _fail(self, state: CommitAttemptState, reason: str) -> CommitOutcome:
        self._advance(state, CommitPhase.FAILED)
        logger.error(f"Onboarding commit failed for user {state.user_id}: {reason}")
        self.trace.commit_end(state.user_id, "failed", reason=reason)
        return CommitOutcome.failed(reason, idempotency_key=state.idempotency_key)

    @staticmethod
    def _initial_state(
        user_id: str,
        key: IdempotencyKey | str,
        previous: CommitAttemptState | None,
    ) -> CommitAttemptState:
        """
        Fresh state machine for this run.

        A resumed attempt keeps its completion timestamp so a replay writes
        identical content everywhere.
        """
        if isinstance(key, IdempotencyKey):
            state = CommitAttemptState.start(key)
        else:
            state = CommitAttemptState(user_id=user_id, idempotency_key=key)
        if previous is not None and previous.idempotency_key == state.idempotency_key:
            state.started_at = previous.started_at
            state.completed_at = previous.completed_at
        return state

    # =========================================================================
    # Commit
    # =========================================================================

    async def commit(
        self,
        record: CanonicalPreferenceRecord,
        user_id: str,
        idempotency_key: IdempotencyKey | str,
        *,
        attempt_state: CommitAttemptState | None = None,
        on_state: Callable[[CommitAttemptState], None] | None = None,
    ) -> CommitOutcome:
        """
        Commit one completion to all three stores.

        Returns Completed, PartiallyCompleted(pending stores) or
        Failed(reason). Only a primary write that cannot be confirmed
        yields Failed.

        Raises:
            SessionExpiredError: the durable store rejected the session
                before anything was written.
        """
        state = self._initial_state(user_id, idempotency_key, attempt_state)
        if on_state:
            on_state(state)
        key = state.idempotency_key
        deadline = self.budget.start(self._clock)

        attempt = idempotency_key.attempt if isinstance(idempotency_key, IdempotencyKey) else None
        self.trace.commit_start(user_id, key, attempt=attempt)
        logger.info(f"Onboarding commit started for user {user_id} (key {key[:8]})")

        self._advance(state, CommitPhase.VALIDATING)
        if not isinstance(record, CanonicalPreferenceRecord):
            return self._fail(state, "record is not a CanonicalPreferenceRecord")
        if not user_id or state.user_id != user_id:
            return self._fail(state, "idempotency key does not belong to this user")

        preserved = await self._read_protected_fields(user_id, deadline)

        # --- Primary ---------------------------------------------------------
        self._advance(state, CommitPhase.COMMITTING_PRIMARY)
        try:
            ack = await call_with_retry(
                StoreName.PRIMARY,
                lambda: self.primary.upsert_preferences(
                    user_id,
                    record,
                    completed_at=state.completed_at,
                    idempotency_key=key,
                ),
                self.policy,
                deadline,
                sleep=self._sleep,
                on_retry=self._on_retry(state, StoreName.PRIMARY),
            )
        except TransientStoreError as e:
            self._mark(state, StoreName.PRIMARY, StoreStatus.FAILED_TRANSIENT, str(e))
            return self._fail(state, f"durable store unavailable: {e}")
        except FatalStoreError as e:
            self._mark(state, StoreName.PRIMARY, StoreStatus.FAILED_FATAL, str(e))
            return self._fail(state, f"durable store rejected the write: {e}")
        except SessionExpiredError as e:
            self._mark(state, StoreName.PRIMARY, StoreStatus.FAILED_FATAL, str(e))
            self._fail(state, "session expired before the durable write")
            raise
        self._mark(state, StoreName.PRIMARY, StoreStatus.SUCCEEDED, applied=ack.applied)
        if not ack.applied:
            logger.info(f"Primary write for user {user_id} was a replay of {key[:8]}")
            if ack.completed_at is not None:
                # Downstream stores follow the timestamp the durable store kept
                state.completed_at = ack.completed_at

        # --- Identity --------------------------------------------------------
        self._advance(state, CommitPhase.COMMITTING_IDENTITY)
        bundle = build_identity_bundle(record, state.completed_at, key, preserved)
        try:
            ack = await call_with_retry(
                StoreName.IDENTITY,
                lambda: self.identity.update_metadata_bundle(user_id, bundle),
                self.policy,
                deadline,
                sleep=self._sleep,
                on_retry=self._on_retry(state, StoreName.IDENTITY),
            )
            self._mark(state, StoreName.IDENTITY, StoreStatus.SUCCEEDED, applied=ack.applied)
        except (FatalStoreError, SessionExpiredError) as e:
            self._mark(state, StoreName.IDENTITY, StoreStatus.FAILED_FATAL, str(e))
        except TransientStoreError as e:
            self._mark(state, StoreName.IDENTITY, StoreStatus.FAILED_TRANSIENT, str(e))

        # --- Cache -----------------------------------------------------------
        self._advance(state, CommitPhase.COMMITTING_CACHE)
        try:
            self.cache.set_flag(
                completion_key(user_id), cache_flag_value(state.completed_at), ttl=COMPLETION_FLAG_TTL,
            )
            self._mark(state, StoreName.CACHE, StoreStatus.SUCCEEDED)
        except Exception as e:
            logger.warning(f"Cache flag write failed for user {user_id}: {e}")
            self._mark(state, StoreName.CACHE, StoreStatus.FAILED_TRANSIENT, str(e))

        # --- Verify ----------------------------------------------------------
        self._advance(state, CommitPhase.VERIFYING)
        if self.verifier is not None:
            report = await self.verifier.verify(user_id, repair=True, deadline=deadline)
            if report.primary is False:
                self._mark(state, StoreName.PRIMARY, StoreStatus.FAILED_TRANSIENT, "completion did not read back")
                return self._fail(state, "durable store did not persist the completion")
            if report.identity is True:
                self._mark(state, StoreName.IDENTITY, StoreStatus.SUCCEEDED)
            elif report.identity is False and state.stores[StoreName.IDENTITY] == StoreStatus.SUCCEEDED:
                self._mark(state, StoreName.IDENTITY, StoreStatus.FAILED_TRANSIENT, "identity flag did not read back")
            if report.cache is True and state.stores[StoreName.CACHE] != StoreStatus.SUCCEEDED:
                self._mark(state, StoreName.CACHE, StoreStatus.SUCCEEDED)

        return self._finish(state)

    async def _read_protected_fields(self, user_id: str, deadline: Deadline) -> dict:
        """Best-effort read of fields the identity bundle must carry over."""
        try:
            existing = await call_with_timeout(
                StoreName.IDENTITY,
                lambda: self.identity.read_metadata(user_id),
                deadline,
            )
        except OnboardingError as e:
            logger.warning(f"Could not read existing identity metadata for user {user_id}: {e}")
            return {}
        return extract_protected_fields(existing)

    def _finish(self, state: CommitAttemptState) -> CommitOutcome:
        user_id = state.user_id
        identity_pending = state.stores[StoreName.IDENTITY] != StoreStatus.SUCCEEDED
        cache_pending = state.stores[StoreName.CACHE] != StoreStatus.SUCCEEDED

        if identity_pending:
            self._advance(state, CommitPhase.PARTIALLY_COMPLETED)
            pending = state.pending_stores()
            outcome = CommitOutcome.partial(
                user_id,
                pending,
                idempotency_key=state.idempotency_key,
                reason=state.errors.get(StoreName.IDENTITY.value),
            )
            for warning in outcome.warnings:
                logger.warning(str(warning))
            if self.scheduler is not None:
                self.scheduler.schedule(user_id, state)
        else:
            self._advance(state, CommitPhase.COMPLETED)
            outcome = CommitOutcome.completed(idempotency_key=state.idempotency_key)
            if cache_pending:
                # Cache is an optimization: reported, never downgrades the outcome
                warning = PartialConsistencyWarning(user_id, (StoreName.CACHE,))
                logger.warning(str(warning))
                outcome = dataclasses.replace(outcome, pending_stores=(StoreName.CACHE,), warnings=(warning,))
            logger.info(f"Onboarding completed for user {user_id}")

        self.trace.commit_end(
            user_id,
            outcome.status.value,
            pending=[s.value for s in outcome.pending_stores],
            reason=outcome.reason,
        )
        return outcome
