"""
Preference Normalizer.

Turns raw wizard capture (loosely typed, possibly partial, possibly using
legacy field names) into one CanonicalPreferenceRecord.

Pure function, no I/O. Numeric fields are coerced and clamped instead of
rejected; only missing required enums/sets, unparseable numbers, blank
departure fields and budgetMin > budgetMax are hard failures. Every issue
is collected before raising, so the UI can flag all fields at once.
"""

import logging
import math
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .errors import FieldIssue, ValidationError
from .preferences import (
    BUDGET_FLEXIBILITY_MAX,
    BUDGET_FLEXIBILITY_MIN,
    AccommodationComfort,
    AccommodationType,
    CanonicalPreferenceRecord,
    ComfortTier,
    DateFlexibility,
    DistanceBand,
    FlightType,
    LocationPreference,
    PlanningIntent,
    PriceVsConvenience,
    TripDuration,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


# Wizard defaults, used when an optional numeric field is missing
DEFAULT_BUDGET_MIN = 500
DEFAULT_BUDGET_MAX = 1000
DEFAULT_BUDGET_FLEXIBILITY = 10

# City picker value meaning "my city is not in the list"
CUSTOM_CITY_VALUES = {"other", "custom", "not-listed"}

# Canonical field -> accepted input keys (wire name first)
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "budget_min": ("budgetMin", "budget_min"),
    "budget_max": ("budgetMax", "budget_max"),
    "budget_flexibility_pct": (
        "budgetFlexibilityPct", "budget_flexibility_pct",
        "budgetFlexibility", "budget_flexibility", "budgetTolerance",
    ),
    "duration": ("duration", "travelDuration", "travel_duration"),
    "date_flexibility": ("dateFlexibility", "date_flexibility"),
    "date_flexibility_text": (
        "dateFlexibilityText", "date_flexibility_text",
        "customDateFlexibility", "custom_date_flexibility",
    ),
    "planning_intent": ("planningIntent", "planning_intent"),
    "accommodation_types": ("accommodationTypes", "accommodation_types"),
    "accommodation_comfort": ("accommodationComfort", "accommodation_comfort"),
    "comfort_tier": ("comfortTier", "comfort_tier", "comfortLevel", "comfort_level"),
    "location_preference": ("locationPreference", "location_preference"),
    "distance_band": (
        "distanceBand", "distance_band",
        "cityDistancePreference", "city_distance_preference",
    ),
    "flight_type": ("flightType", "flight_type"),
    "accept_cheaper_stopover": (
        "acceptCheaperStopover", "accept_cheaper_stopover",
        "preferCheaperWithStopover", "prefer_cheaper_with_stopover",
    ),
    "price_vs_convenience": ("priceVsConvenience", "price_vs_convenience", "priceConvenience"),
    "departure_country": ("departureCountry", "departure_country"),
    "departure_city": ("departureCity", "departure_city"),
    "custom_departure_city": ("customDepartureCity", "custom_departure_city"),
}

# Old enum spellings still found in saved wizard state
LEGACY_ENUM_VALUES: dict[type[Enum], dict[str, str]] = {
    TripDuration: {"longer": "extended", "two-week": "two-weeks"},
    LocationPreference: {"centre": "center", "city-center": "center"},
}


def _wire_name(field: str) -> str:
    return FIELD_ALIASES[field][0]


def _pick(raw: Mapping[str, Any], field: str) -> Any:
    """First non-None value among the field's accepted keys."""
    for key in FIELD_ALIASES[field]:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _token(value: Any) -> str:
    return str(value).strip().lower().replace("_", "-").replace(" ", "-")


def _coerce_enum(enum_cls: type[E], value: Any) -> E | None:
    """Match an enum value case- and separator-insensitively."""
    if _is_blank(value):
        return None
    if isinstance(value, enum_cls):
        return value
    token = _token(value)
    token = LEGACY_ENUM_VALUES.get(enum_cls, {}).get(token, token)
    try:
        return enum_cls(token)
    except ValueError:
        return None


def _coerce_int(value: Any, bounds: tuple[int, int] | None = None) -> int | None:
    """
    Coerce str/float/int to int. Returns None if not numeric.

    NaN is never numeric. Infinities saturate to `bounds` when given,
    otherwise they are not numeric either.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    if math.isinf(number):
        if bounds is None:
            return None
        return bounds[1] if number > 0 else bounds[0]
    return int(round(number))


def _coerce_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in {"true", "1", "yes", "on"}:
        return True
    if token in {"false", "0", "no", "off", ""}:
        return False
    return default


def _as_items(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        # Checkbox state: {"hotel": true, "hostel": false}
        return [key for key, checked in value.items() if _coerce_bool(checked, default=False)]
    if isinstance(value, str):
        return [part for part in value.split(",")]
    if isinstance(value, Iterable):
        return value
    return [value]


def _clean_text(value: Any) -> str | None:
    if _is_blank(value):
        return None
    return str(value).strip()


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


# =============================================================================
# Field groups
# =============================================================================


def _required_enum(
    raw: Mapping[str, Any],
    field: str,
    enum_cls: type[E],
    issues: list[FieldIssue],
) -> E | None:
    value = _pick(raw, field)
    coerced = _coerce_enum(enum_cls, value)
    if coerced is None:
        if _is_blank(value):
            issues.append(FieldIssue(_wire_name(field), "is required"))
        else:
            issues.append(FieldIssue(_wire_name(field), f"unknown value {value!r}"))
    return coerced


def _enum_set(
    raw: Mapping[str, Any],
    field: str,
    enum_cls: type[E],
    issues: list[FieldIssue],
) -> frozenset[E]:
    members = set()
    for item in _as_items(_pick(raw, field)):
        coerced = _coerce_enum(enum_cls, item)
        if coerced is None:
            if not _is_blank(item):
                logger.info(f"Unknown {field} value dropped: {item!r}")
            continue
        members.add(coerced)
    if not members:
        issues.append(FieldIssue(_wire_name(field), "select at least one option"))
    return frozenset(members)


def _budget(raw: Mapping[str, Any], issues: list[FieldIssue]) -> tuple[int | None, int | None, int]:
    budget_range = raw.get("budgetRange") or raw.get("budget_range")
    raw_min = _pick(raw, "budget_min")
    raw_max = _pick(raw, "budget_max")
    if isinstance(budget_range, Mapping):
        raw_min = raw_min if raw_min is not None else budget_range.get("min")
        raw_max = raw_max if raw_max is not None else budget_range.get("max")

    budget_min = _coerce_int(raw_min) if raw_min is not None else DEFAULT_BUDGET_MIN
    budget_max = _coerce_int(raw_max) if raw_max is not None else None

    if budget_min is None:
        issues.append(FieldIssue("budgetMin", f"not a number: {raw_min!r}"))
    else:
        budget_min = max(1, budget_min)

    if raw_max is not None and budget_max is None:
        issues.append(FieldIssue("budgetMax", f"not a number: {raw_max!r}"))
    elif budget_max is None:
        budget_max = max(DEFAULT_BUDGET_MAX, budget_min or 1)
    else:
        budget_max = max(1, budget_max)

    if budget_min is not None and budget_max is not None and budget_min > budget_max:
        issues.append(FieldIssue("budgetMin", "must not exceed budgetMax"))

    raw_flex = _pick(raw, "budget_flexibility_pct")
    flexibility = (
        _coerce_int(raw_flex, bounds=(BUDGET_FLEXIBILITY_MIN, BUDGET_FLEXIBILITY_MAX))
        if raw_flex is not None
        else DEFAULT_BUDGET_FLEXIBILITY
    )
    if flexibility is None:
        logger.info(f"Non-numeric budget flexibility replaced with default: {raw_flex!r}")
        flexibility = DEFAULT_BUDGET_FLEXIBILITY
    flexibility = _clamp(flexibility, BUDGET_FLEXIBILITY_MIN, BUDGET_FLEXIBILITY_MAX)

    return budget_min, budget_max, flexibility


def _departure(raw: Mapping[str, Any], issues: list[FieldIssue]) -> tuple[str | None, str | None]:
    country = _clean_text(_pick(raw, "departure_country"))
    if country is None:
        issues.append(FieldIssue("departureCountry", "is required"))

    city = _clean_text(_pick(raw, "departure_city"))
    custom_city = _clean_text(_pick(raw, "custom_departure_city"))
    if city is None or city.lower() in CUSTOM_CITY_VALUES:
        city = custom_city
    if city is None:
        issues.append(FieldIssue("departureCity", "is required"))

    return country, city


# =============================================================================
# Public API
# =============================================================================


def normalize_preferences(raw: Mapping[str, Any]) -> CanonicalPreferenceRecord:
    """
    Normalize raw wizard capture into a CanonicalPreferenceRecord.

    Raises:
        ValidationError: with every violated invariant, not just the first.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError([FieldIssue("preferences", "expected an object")])

    issues: list[FieldIssue] = []

    budget_min, budget_max, flexibility = _budget(raw, issues)

    duration = _required_enum(raw, "duration", TripDuration, issues)
    date_flexibility = _coerce_enum(DateFlexibility, _pick(raw, "date_flexibility"))
    date_flexibility_text = _clean_text(_pick(raw, "date_flexibility_text"))
    if duration == TripDuration.EXTENDED:
        date_flexibility = None
    else:
        date_flexibility_text = None

    planning_intent = _required_enum(raw, "planning_intent", PlanningIntent, issues)
    accommodation_types = _enum_set(raw, "accommodation_types", AccommodationType, issues)
    accommodation_comfort = _enum_set(raw, "accommodation_comfort", AccommodationComfort, issues)
    comfort_tier = _required_enum(raw, "comfort_tier", ComfortTier, issues)

    location = _required_enum(raw, "location_preference", LocationPreference, issues)
    distance_band = None
    if location == LocationPreference.CENTER:
        distance_band = _coerce_enum(DistanceBand, _pick(raw, "distance_band"))

    flight_type = _required_enum(raw, "flight_type", FlightType, issues)
    accept_cheaper_stopover = _coerce_bool(_pick(raw, "accept_cheaper_stopover"), default=True)
    price_vs_convenience = _required_enum(raw, "price_vs_convenience", PriceVsConvenience, issues)

    country, city = _departure(raw, issues)

    if issues:
        raise ValidationError(issues)

    try:
        return CanonicalPreferenceRecord(
            budget_min=budget_min,
            budget_max=budget_max,
            budget_flexibility_pct=flexibility,
            duration=duration,
            date_flexibility=date_flexibility,
            date_flexibility_text=date_flexibility_text,
            planning_intent=planning_intent,
            accommodation_types=accommodation_types,
            accommodation_comfort=accommodation_comfort,
            comfort_tier=comfort_tier,
            location_preference=location,
            distance_band=distance_band,
            flight_type=flight_type,
            accept_cheaper_stopover=accept_cheaper_stopover,
            price_vs_convenience=price_vs_convenience,
            departure_country=country,
            departure_city=city,
        )
    except PydanticValidationError as e:
        raise ValidationError([
            FieldIssue(".".join(str(part) for part in err["loc"]) or "preferences", err["msg"])
            for err in e.errors()
        ]) from e
