"""
Tests for commit state, idempotency keys, outcomes and backoff.
"""

import pytest

from onboarding.errors import InvalidTransitionError, PartialConsistencyWarning
from onboarding.retry import BackoffPolicy, CommitBudget, Deadline
from onboarding.state import (
    CommitAttemptState,
    CommitOutcome,
    CommitPhase,
    IdempotencyKey,
    OutcomeStatus,
    StoreName,
    StoreStatus,
    can_transition,
)

HAPPY_PATH = [
    CommitPhase.VALIDATING,
    CommitPhase.COMMITTING_PRIMARY,
    CommitPhase.COMMITTING_IDENTITY,
    CommitPhase.COMMITTING_CACHE,
    CommitPhase.VERIFYING,
    CommitPhase.COMPLETED,
]


class TestIdempotencyKey:

    def test_deterministic(self):
        assert IdempotencyKey.derive("user-1", 3) == IdempotencyKey.derive("user-1", 3)

    def test_differs_per_attempt_and_user(self):
        base = IdempotencyKey.derive("user-1", 1).value
        assert IdempotencyKey.derive("user-1", 2).value != base
        assert IdempotencyKey.derive("user-2", 1).value != base

    def test_attempt_starts_at_one(self):
        with pytest.raises(ValueError):
            IdempotencyKey.derive("user-1", 0)

    def test_str_is_value(self):
        key = IdempotencyKey.derive("user-1", 1)
        assert str(key) == key.value
        assert len(key.value) == 32


class TestStateMachine:

    def test_happy_path(self):
        state = CommitAttemptState.start(IdempotencyKey.derive("user-1", 1))
        for phase in HAPPY_PATH:
            state.advance(phase)
        assert state.is_terminal

    def test_cannot_skip_primary(self):
        state = CommitAttemptState.start(IdempotencyKey.derive("user-1", 1))
        state.advance(CommitPhase.VALIDATING)
        with pytest.raises(InvalidTransitionError):
            state.advance(CommitPhase.COMMITTING_IDENTITY)

    def test_any_non_terminal_phase_may_fail(self):
        for phase in HAPPY_PATH[:-1]:
            assert can_transition(phase, CommitPhase.FAILED)

    def test_terminal_phases_are_final(self):
        assert not can_transition(CommitPhase.COMPLETED, CommitPhase.FAILED)
        assert not can_transition(CommitPhase.FAILED, CommitPhase.COMMITTING_IDENTITY)

    def test_partial_reenters_identity(self):
        assert can_transition(CommitPhase.PARTIALLY_COMPLETED, CommitPhase.COMMITTING_IDENTITY)
        assert not can_transition(CommitPhase.PARTIALLY_COMPLETED, CommitPhase.COMMITTING_PRIMARY)

    def test_completed_at_fixed_per_attempt(self):
        state = CommitAttemptState.start(IdempotencyKey.derive("user-1", 1))
        assert state.completed_at == state.started_at

    def test_pending_stores(self):
        state = CommitAttemptState.start(IdempotencyKey.derive("user-1", 1))
        state.mark(StoreName.PRIMARY, StoreStatus.SUCCEEDED)
        state.mark(StoreName.IDENTITY, StoreStatus.FAILED_TRANSIENT, "timeout")

        assert state.pending_stores() == (StoreName.IDENTITY, StoreName.CACHE)
        assert state.errors == {"identity": "timeout"}

    def test_dict_round_trip(self):
        state = CommitAttemptState.start(IdempotencyKey.derive("user-1", 1))
        state.advance(CommitPhase.VALIDATING)
        state.mark(StoreName.PRIMARY, StoreStatus.FAILED_FATAL, "constraint violation")

        restored = CommitAttemptState.from_dict(state.to_dict())

        assert restored.phase == CommitPhase.VALIDATING
        assert restored.stores[StoreName.PRIMARY] == StoreStatus.FAILED_FATAL
        assert restored.completed_at == state.completed_at


class TestCommitOutcome:

    def test_completed_may_proceed(self):
        assert CommitOutcome.completed().may_proceed

    def test_partial_may_proceed_with_warning(self):
        outcome = CommitOutcome.partial("user-1", (StoreName.IDENTITY,))

        assert outcome.status == OutcomeStatus.PARTIALLY_COMPLETED
        assert outcome.may_proceed
        assert isinstance(outcome.warnings[0], PartialConsistencyWarning)

    def test_failed_blocks(self):
        assert not CommitOutcome.failed("primary down").may_proceed

    def test_lost_session_defers_navigation(self):
        outcome = CommitOutcome.completed("key").downgrade_for_lost_session("user-1")

        assert outcome.status == OutcomeStatus.PARTIALLY_COMPLETED
        assert outcome.requires_reauth
        assert not outcome.may_proceed
        assert outcome.idempotency_key == "key"

    def test_failed_stays_failed_on_session_loss(self):
        failed = CommitOutcome.failed("primary down")
        assert failed.downgrade_for_lost_session("user-1") is failed


class TestBackoff:

    def test_delays_grow_and_cap(self):
        policy = BackoffPolicy(max_attempts=6, base_delay=0.25, max_delay=1.0)
        delays = [policy.delay_for(n) for n in range(1, 6)]
        assert delays == [0.25, 0.5, 1.0, 1.0, 1.0]

    def test_deadline_caps_call_timeout(self):
        now = [100.0]
        deadline = Deadline(total_seconds=3.0, call_timeout=5.0, clock=lambda: now[0])

        assert deadline.call_timeout() == 3.0
        now[0] += 2.5
        assert deadline.call_timeout() == pytest.approx(0.5)
        now[0] += 1.0
        assert deadline.expired

    def test_budget_starts_deadline(self):
        deadline = CommitBudget(call_timeout_seconds=1.0, total_seconds=10.0).start(clock=lambda: 0.0)
        assert deadline.call_timeout() == 1.0
        assert deadline.remaining() == 10.0
