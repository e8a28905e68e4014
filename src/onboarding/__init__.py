"""
Planora Onboarding Completion.

Records "this user finished the preference wizard" in three stores and keeps
them converging:
1. Durable preference store (travel_preferences) - source of truth
2. Identity metadata (Supabase auth user_metadata) - gates navigation
3. Local cache - fast path for navigation decisions

Flow: normalize -> fresh session -> single-flight -> ordered commit -> verify.
The Supabase adapters and the FastAPI router live in supabase_stores / api
and are not imported here.
"""

from .completion import CompletionResult, CompletionStatus, OnboardingCompletionService
from .errors import (
    ConflictError,
    FatalStoreError,
    OnboardingError,
    PartialConsistencyWarning,
    SessionExpiredError,
    TransientStoreError,
    ValidationError,
)
from .normalizer import normalize_preferences
from .orchestrator import MultiStoreCommitOrchestrator
from .preferences import CanonicalPreferenceRecord
from .state import CommitOutcome, CommitPhase, IdempotencyKey, OutcomeStatus, StoreName
from .verifier import ConsistencyReport, ConsistencyVerifier

__all__ = [
    "CanonicalPreferenceRecord",
    "normalize_preferences",
    "MultiStoreCommitOrchestrator",
    "ConsistencyVerifier",
    "ConsistencyReport",
    "OnboardingCompletionService",
    "CompletionResult",
    "CompletionStatus",
    "CommitOutcome",
    "CommitPhase",
    "OutcomeStatus",
    "IdempotencyKey",
    "StoreName",
    "OnboardingError",
    "ValidationError",
    "SessionExpiredError",
    "TransientStoreError",
    "FatalStoreError",
    "ConflictError",
    "PartialConsistencyWarning",
]
