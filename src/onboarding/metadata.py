"""
Identity Metadata Bundle.

Everything the identity store carries about onboarding is written in ONE
update call. Separate sequential updates each emit an auth-state-change
event, and the UI can observe the intermediate state and route the user
back into onboarding.

Fields populated by earlier auth steps (names, avatar) are read first and
merged back in so the bundle never blanks them.
"""

from datetime import datetime
from typing import Any

from .preferences import CanonicalPreferenceRecord

# Navigation gate read by the frontend route guard
COMPLETION_FLAG_FIELD = "has_completed_onboarding"
COMPLETED_AT_FIELD = "onboarding_completed_at"
COMMIT_KEY_FIELD = "onboarding_commit_key"

# Set by sign-up / OAuth; a completion commit must not clobber them
PROTECTED_FIELDS = (
    "first_name",
    "last_name",
    "full_name",
    "display_name",
    "avatar_url",
)


def extract_protected_fields(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Non-blank protected fields from existing identity metadata."""
    if not metadata:
        return {}
    preserved = {}
    for name in PROTECTED_FIELDS:
        value = metadata.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        preserved[name] = value
    return preserved


def build_identity_bundle(
    record: CanonicalPreferenceRecord,
    completed_at: datetime,
    idempotency_key: str | None,
    preserved: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Build the single identity metadata payload for a completion.

    Derived from the canonical record only, so reconciliation can rebuild
    an identical bundle from the durable store without the normalizer.
    """
    bundle: dict[str, Any] = {
        COMPLETION_FLAG_FIELD: True,
        COMPLETED_AT_FIELD: completed_at.isoformat(),
        "planning_intent": record.planning_intent.value,
        "location_preference": record.location_preference.value,
        "flight_type": record.flight_type.value,
        "prefer_cheaper_with_stopover": record.accept_cheaper_stopover,
        "departure_country": record.departure_country,
        "departure_city": record.departure_city,
    }
    if idempotency_key:
        bundle[COMMIT_KEY_FIELD] = idempotency_key
    bundle.update(extract_protected_fields(preserved))
    return bundle


def metadata_says_completed(metadata: dict[str, Any] | None) -> bool:
    """Strict read of the navigation gate: only a literal True counts."""
    return bool(metadata) and metadata.get(COMPLETION_FLAG_FIELD) is True
