"""
Onboarding Completion State.

Tracks one completion attempt through the commit state machine and
describes its terminal outcome.

State machine:
    IDLE -> VALIDATING -> COMMITTING_PRIMARY -> COMMITTING_IDENTITY
         -> COMMITTING_CACHE -> VERIFYING -> COMPLETED | PARTIALLY_COMPLETED | FAILED

Any non-terminal phase may fail. PARTIALLY_COMPLETED is terminal for the
caller but re-enters COMMITTING_IDENTITY when reconciliation runs.

CommitAttemptState lives for one commit (plus any reconciliation) and is
persisted only in the short-lived recovery buffer of the local cache.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import InvalidTransitionError, PartialConsistencyWarning


class StoreName(str, Enum):
    """The three named copies of the completion flag."""
    PRIMARY = "primary"    # durable preference store, source of truth
    IDENTITY = "identity"  # auth provider user metadata, gates navigation
    CACHE = "cache"        # process-local fast path


class StoreStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_TRANSIENT = "failed-transient"
    FAILED_FATAL = "failed-fatal"


class CommitPhase(Enum):
    """Commit state machine phases."""
    IDLE = "idle"
    VALIDATING = "validating"
    COMMITTING_PRIMARY = "committing_primary"
    COMMITTING_IDENTITY = "committing_identity"
    COMMITTING_CACHE = "committing_cache"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


TERMINAL_PHASES = {
    CommitPhase.COMPLETED,
    CommitPhase.PARTIALLY_COMPLETED,
    CommitPhase.FAILED,
}

_TRANSITIONS: dict[CommitPhase, set[CommitPhase]] = {
    CommitPhase.IDLE: {CommitPhase.VALIDATING},
    CommitPhase.VALIDATING: {CommitPhase.COMMITTING_PRIMARY},
    CommitPhase.COMMITTING_PRIMARY: {CommitPhase.COMMITTING_IDENTITY},
    CommitPhase.COMMITTING_IDENTITY: {CommitPhase.COMMITTING_CACHE},
    CommitPhase.COMMITTING_CACHE: {CommitPhase.VERIFYING},
    CommitPhase.VERIFYING: {CommitPhase.COMPLETED, CommitPhase.PARTIALLY_COMPLETED},
    # Reconciliation pass
    CommitPhase.PARTIALLY_COMPLETED: {CommitPhase.COMMITTING_IDENTITY},
    CommitPhase.COMPLETED: set(),
    CommitPhase.FAILED: set(),
}


def can_transition(current: CommitPhase, target: CommitPhase) -> bool:
    """Check whether the state machine allows current -> target."""
    if target == CommitPhase.FAILED:
        return current not in TERMINAL_PHASES
    return target in _TRANSITIONS[current]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Flags, keys, acks
# =============================================================================


@dataclass(frozen=True)
class OnboardingCompletionFlag:
    """One copy of "has this user completed onboarding"."""
    completed: bool
    completed_at: datetime | None = None
    commit_key: str | None = None  # idempotency key of the write that set it

    @classmethod
    def not_completed(cls) -> "OnboardingCompletionFlag":
        return cls(completed=False, completed_at=None)


@dataclass(frozen=True)
class IdempotencyKey:
    """
    Deterministic key for one logical completion attempt.

    Derived from (user_id, attempt). Retries of the same attempt reuse the
    key; a new "Finish" click increments the client-side attempt counter.
    """
    user_id: str
    attempt: int
    value: str

    @classmethod
    def derive(cls, user_id: str, attempt: int) -> "IdempotencyKey":
        if attempt < 1:
            raise ValueError("attempt counter starts at 1")
        digest = hashlib.sha256(f"{user_id}:{attempt}".encode("utf-8")).hexdigest()
        return cls(user_id=user_id, attempt=attempt, value=digest[:32])

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StoreAck:
    """
    Successful store write. applied=False means the write was a replay;
    completed_at then carries the completion timestamp already stored.
    """
    store: StoreName
    applied: bool = True
    completed_at: datetime | None = None


# =============================================================================
# Attempt state
# =============================================================================


@dataclass
class CommitAttemptState:
    """
    Ephemeral per-attempt state.

    completed_at is fixed when the attempt starts so that every store and
    every retry records the same completion timestamp.
    """
    user_id: str
    idempotency_key: str
    phase: CommitPhase = CommitPhase.IDLE
    stores: dict[StoreName, StoreStatus] = field(
        default_factory=lambda: {name: StoreStatus.PENDING for name in StoreName}
    )
    errors: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_utc_now)
    completed_at: datetime = field(default_factory=_utc_now)

    @classmethod
    def start(cls, key: IdempotencyKey) -> "CommitAttemptState":
        now = _utc_now()
        return cls(user_id=key.user_id, idempotency_key=key.value, started_at=now, completed_at=now)

    def advance(self, target: CommitPhase) -> None:
        """Move to the next phase, rejecting transitions the machine forbids."""
        if not can_transition(self.phase, target):
            raise InvalidTransitionError(
                f"Cannot move from {self.phase.value} to {target.value}"
            )
        self.phase = target

    def mark(self, store: StoreName, status: StoreStatus, error: str | None = None) -> None:
        self.stores[store] = status
        if error:
            self.errors[store.value] = error
        else:
            self.errors.pop(store.value, None)

    def pending_stores(self) -> tuple[StoreName, ...]:
        return tuple(name for name in StoreName if self.stores[name] != StoreStatus.SUCCEEDED)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict:
        """Serialize for the recovery buffer."""
        return {
            "user_id": self.user_id,
            "idempotency_key": self.idempotency_key,
            "phase": self.phase.value,
            "stores": {name.value: status.value for name, status in self.stores.items()},
            "errors": dict(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommitAttemptState":
        return cls(
            user_id=data["user_id"],
            idempotency_key=data["idempotency_key"],
            phase=CommitPhase(data.get("phase", CommitPhase.IDLE.value)),
            stores={
                StoreName(name): StoreStatus(status)
                for name, status in data.get("stores", {}).items()
            } or {name: StoreStatus.PENDING for name in StoreName},
            errors=dict(data.get("errors", {})),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=datetime.fromisoformat(data["completed_at"]),
        )


# =============================================================================
# Outcome
# =============================================================================


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CommitOutcome:
    """
    Terminal result handed back to the caller.

    The user may leave onboarding whenever the durable store is confirmed,
    i.e. for COMPLETED and PARTIALLY_COMPLETED, unless the session was lost
    and re-authentication must happen first.
    """
    status: OutcomeStatus
    pending_stores: tuple[StoreName, ...] = ()
    reason: str | None = None
    requires_reauth: bool = False
    idempotency_key: str | None = None
    warnings: tuple[PartialConsistencyWarning, ...] = ()

    @classmethod
    def completed(cls, idempotency_key: str | None = None) -> "CommitOutcome":
        return cls(status=OutcomeStatus.COMPLETED, idempotency_key=idempotency_key)

    @classmethod
    def partial(
        cls,
        user_id: str,
        pending: tuple[StoreName, ...],
        idempotency_key: str | None = None,
        reason: str | None = None,
    ) -> "CommitOutcome":
        return cls(
            status=OutcomeStatus.PARTIALLY_COMPLETED,
            pending_stores=pending,
            reason=reason,
            idempotency_key=idempotency_key,
            warnings=(PartialConsistencyWarning(user_id, pending),),
        )

    @classmethod
    def failed(cls, reason: str, idempotency_key: str | None = None) -> "CommitOutcome":
        return cls(status=OutcomeStatus.FAILED, reason=reason, idempotency_key=idempotency_key)

    def downgrade_for_lost_session(self, user_id: str) -> "CommitOutcome":
        """
        Session vanished during the commit.

        Durable data stays committed; navigation waits for re-authentication.
        A failed outcome stays failed.
        """
        if self.status == OutcomeStatus.FAILED:
            return self
        pending = self.pending_stores or (StoreName.IDENTITY,)
        return CommitOutcome(
            status=OutcomeStatus.PARTIALLY_COMPLETED,
            pending_stores=pending,
            reason="session lost during commit",
            requires_reauth=True,
            idempotency_key=self.idempotency_key,
            warnings=self.warnings or (PartialConsistencyWarning(user_id, pending),),
        )

    @property
    def may_proceed(self) -> bool:
        return self.status != OutcomeStatus.FAILED and not self.requires_reauth

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "pending_stores": [s.value for s in self.pending_stores],
            "reason": self.reason,
            "requires_reauth": self.requires_reauth,
            "may_proceed": self.may_proceed,
            "idempotency_key": self.idempotency_key,
        }
