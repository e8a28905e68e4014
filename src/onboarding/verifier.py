"""
Consistency Verifier.

Re-reads the completion flag from the durable store and the identity store
and reports whether they agree. When the durable store says "completed" and
the identity store does not, only the identity bundle is re-issued, rebuilt
from the durable record (no normalizer, no full commit).

Runs right after every commit (VERIFYING phase), from the reconciliation
scheduler, at login (status resolution), and standalone from the API/CLI.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from planora.observability.commit_logger import CommitLogger, get_commit_logger

from .cache import COMPLETION_FLAG_TTL, completion_key
from .errors import OnboardingError
from .metadata import build_identity_bundle, extract_protected_fields
from .retry import Deadline, call_with_timeout
from .state import CommitAttemptState, CommitPhase, OnboardingCompletionFlag, StoreName, StoreStatus
from .stores import IdentityStore, LocalCache, PrimaryStore

logger = logging.getLogger(__name__)


def cache_flag_value(completed_at: datetime) -> dict:
    """Value stored under the cache completion key."""
    return {"completed": True, "completed_at": completed_at.isoformat()}


def cache_says_completed(value) -> bool:
    if isinstance(value, dict):
        return value.get("completed") is True
    return value is True or value == "true"


@dataclass
class ConsistencyReport:
    """
    Flags as read from each store. None means the store could not be read.
    """
    user_id: str
    primary: bool | None
    identity: bool | None
    cache: bool | None = None
    repaired: bool = False
    errors: dict[str, str] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def consistent(self) -> bool:
        return self.primary is not None and self.primary == self.identity

    @property
    def needs_reconciliation(self) -> bool:
        """Durable store completed, identity store not (yet) confirmed."""
        return self.primary is True and self.identity is not True

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "primary": self.primary,
            "identity": self.identity,
            "cache": self.cache,
            "consistent": self.consistent,
            "repaired": self.repaired,
            "errors": dict(self.errors),
            "checked_at": self.checked_at.isoformat(),
        }


class ConsistencyVerifier:
    """Detects and repairs durable/identity disagreement for one user."""

    def __init__(
        self,
        primary: PrimaryStore,
        identity: IdentityStore,
        cache: LocalCache | None = None,
        *,
        call_timeout_seconds: float = 5.0,
        trace: CommitLogger | None = None,
    ):
        self.primary = primary
        self.identity = identity
        self.cache = cache
        self.call_timeout_seconds = call_timeout_seconds
        self._trace = trace

    @property
    def trace(self) -> CommitLogger:
        return self._trace or get_commit_logger()

    def _deadline(self) -> Deadline:
        # Reads + repair write + confirmation read
        return Deadline(self.call_timeout_seconds * 6, self.call_timeout_seconds)

    async def _read(self, report: ConsistencyReport, store: StoreName, operation: Callable[[], Awaitable], deadline: Deadline):
        try:
            return await call_with_timeout(store, operation, deadline)
        except OnboardingError as e:
            logger.warning(f"Verifier could not read {store.value} store for user {report.user_id}: {e}")
            report.errors[store.value] = str(e)
            return None

    def _read_cache(self, user_id: str) -> bool | None:
        if self.cache is None:
            return None
        try:
            return cache_says_completed(self.cache.get_flag(completion_key(user_id)))
        except Exception as e:
            logger.warning(f"Verifier could not read cache for user {user_id}: {e}")
            return None

    async def verify(
        self,
        user_id: str,
        *,
        repair: bool = True,
        deadline: Deadline | None = None,
    ) -> ConsistencyReport:
        """
        Compare completion flags and optionally repair the identity store.

        Primary false with identity true is reported, never repaired upward:
        the durable store is the source of truth.
        """
        deadline = deadline or self._deadline()
        report = ConsistencyReport(user_id=user_id, primary=None, identity=None)

        flag: OnboardingCompletionFlag | None = await self._read(report, StoreName.PRIMARY, lambda: self.primary.read_completion(user_id), deadline)
        report.primary = flag.completed if flag is not None else None
        report.identity = await self._read(
            report, StoreName.IDENTITY, lambda: self.identity.read_completion_flag(user_id), deadline,
        )
        report.cache = self._read_cache(user_id)

        if repair and report.primary is True and report.identity is False:
            await self._repair_identity(report, flag, deadline)

        if repair and self.cache is not None and report.primary is not None:
            self._sync_cache(report, flag)

        if report.consistent:
            logger.debug(f"Onboarding flags consistent for user {user_id}")
        else:
            logger.warning(
                f"Onboarding flags disagree for user {user_id}: "
                f"primary={report.primary} identity={report.identity}"
            )
        self.trace.verify(user_id, report.to_dict())
        return report

    async def _repair_identity(
        self,
        report: ConsistencyReport,
        flag: OnboardingCompletionFlag,
        deadline: Deadline,
    ) -> None:
        user_id = report.user_id
        record = await self._read(report, StoreName.PRIMARY, lambda: self.primary.read_preferences(user_id), deadline)
        if record is None:
            report.errors.setdefault(StoreName.PRIMARY.value, "completed but no preference record to rebuild from")
            logger.error(f"Cannot reconcile user {user_id}: durable record missing")
            return

        existing = await self._read(report, StoreName.IDENTITY, lambda: self.identity.read_metadata(user_id), deadline)
        bundle = build_identity_bundle(
            record,
            flag.completed_at or datetime.now(timezone.utc),
            flag.commit_key,
            preserved=extract_protected_fields(existing),
        )

        try:
            await call_with_timeout(
                StoreName.IDENTITY,
                lambda: self.identity.update_metadata_bundle(user_id, bundle),
                deadline,
            )
        except OnboardingError as e:
            logger.warning(f"Identity repair failed for user {user_id}: {e}")
            report.errors[StoreName.IDENTITY.value] = str(e)
            return

        report.repaired = True
        report.identity = await self._read(
            report, StoreName.IDENTITY, lambda: self.identity.read_completion_flag(user_id), deadline,
        )
        logger.info(f"Re-issued identity metadata for user {user_id} (confirmed={report.identity})")

    def _sync_cache(self, report: ConsistencyReport, flag: OnboardingCompletionFlag | None) -> None:
        """Cache follows the durable store in both directions."""
        key = completion_key(report.user_id)
        try:
            if report.primary and not report.cache:
                completed_at = (flag.completed_at if flag else None) or datetime.now(timezone.utc)
                self.cache.set_flag(key, cache_flag_value(completed_at), ttl=COMPLETION_FLAG_TTL)
                report.cache = True
            elif report.primary is False and report.cache:
                self.cache.delete(key)
                report.cache = False
        except Exception as e:
            logger.warning(f"Cache sync failed for user {report.user_id}: {e}")


# =============================================================================
# Reconciliation
# =============================================================================


def _settle_reconciled_state(state: CommitAttemptState, identity_ok: bool) -> None:
    """Walk a re-entered attempt back to a terminal phase."""
    state.mark(
        StoreName.IDENTITY,
        StoreStatus.SUCCEEDED if identity_ok else StoreStatus.FAILED_TRANSIENT,
        None if identity_ok else "identity store still disagrees",
    )
    state.advance(CommitPhase.COMMITTING_CACHE)
    state.advance(CommitPhase.VERIFYING)
    state.advance(CommitPhase.COMPLETED if identity_ok else CommitPhase.PARTIALLY_COMPLETED)


class ReconciliationScheduler:
    """
    Background passes that re-run the verifier after a partial commit.

    One task per user; scheduling again while a task runs returns that task.
    Tasks are held here until done so they are not garbage collected.
    """

    def __init__(
        self,
        verifier: ConsistencyVerifier,
        *,
        delay_seconds: float = 5.0,
        max_passes: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.verifier = verifier
        self.delay_seconds = delay_seconds
        self.max_passes = max_passes
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, user_id: str, state: CommitAttemptState | None = None) -> asyncio.Task:
        """Start (or reuse) the reconciliation task for user_id."""
        existing = self._tasks.get(user_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.get_running_loop().create_task(self._run(user_id, state))
        self._tasks[user_id] = task
        task.add_done_callback(lambda t, uid=user_id: self._forget(uid, t))
        logger.info(f"Scheduled identity reconciliation for user {user_id}")
        return task

    def _forget(self, user_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(user_id) is task:
            del self._tasks[user_id]

    def pending(self, user_id: str) -> bool:
        task = self._tasks.get(user_id)
        return task is not None and not task.done()

    async def _run(self, user_id: str, state: CommitAttemptState | None) -> ConsistencyReport | None:
        report = None
        for pass_number in range(1, self.max_passes + 1):
            await self._sleep(self.delay_seconds * pass_number)
            if state is not None and state.phase == CommitPhase.PARTIALLY_COMPLETED:
                state.advance(CommitPhase.COMMITTING_IDENTITY)
            try:
                report = await self.verifier.verify(user_id, repair=True)
            except Exception as e:
                logger.exception(f"Reconciliation pass {pass_number} crashed for user {user_id}")
                self.verifier.trace.reconcile(user_id, pass_number, False, error=str(e))
                if state is not None and state.phase == CommitPhase.COMMITTING_IDENTITY:
                    _settle_reconciled_state(state, identity_ok=False)
                continue

            self.verifier.trace.reconcile(user_id, pass_number, report.consistent)
            if state is not None and state.phase == CommitPhase.COMMITTING_IDENTITY:
                _settle_reconciled_state(state, identity_ok=report.identity is True)

            if report.consistent:
                logger.info(f"Reconciled onboarding flags for user {user_id} on pass {pass_number}")
                return report
            if report.primary is False:
                logger.warning(f"Nothing to reconcile for user {user_id}: durable store not completed")
                return report

        logger.error(f"Reconciliation gave up for user {user_id} after {self.max_passes} passes")
        return report

    async def wait(self, user_id: str) -> ConsistencyReport | None:
        """Wait for the user's reconciliation task, if any."""
        task = self._tasks.get(user_id)
        if task is None:
            return None
        return await task

    async def close(self) -> None:
        """Cancel outstanding passes (app shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
