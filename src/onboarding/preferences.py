"""
Travel Preferences - Canonical Record.

CanonicalPreferenceRecord is the contract between the onboarding wizard and
every store that keeps preferences. All downstream components (orchestrator,
verifier, store adapters) work on this type only, never on raw wizard dicts.

Invariants enforced at construction:
- budget_min > 0 and budget_min <= budget_max
- budget_flexibility_pct in [0, 25]
- date_flexibility and date_flexibility_text are mutually exclusive;
  the free-text override only exists for the "extended" duration
- distance_band only exists when location_preference is "center"
- accommodation sets are non-empty, departure country/city are non-empty
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# Enums (values match the wizard step options)
# =============================================================================


class TripDuration(str, Enum):
    """How long are your trips?"""
    WEEKEND = "weekend"
    WEEK = "week"
    TWO_WEEKS = "two-weeks"
    EXTENDED = "extended"


class DateFlexibility(str, Enum):
    FIXED = "fixed"
    FLEXIBLE_FEW = "flexible-few"
    FLEXIBLE_WEEK = "flexible-week"
    VERY_FLEXIBLE = "very-flexible"


class PlanningIntent(str, Enum):
    """Are you dreaming or planning?"""
    EXPLORING = "exploring"
    PLANNING = "planning"


class AccommodationType(str, Enum):
    HOTEL = "hotel"
    APARTMENT = "apartment"
    HOSTEL = "hostel"
    RESORT = "resort"


class AccommodationComfort(str, Enum):
    PRIVATE_ROOM = "private-room"
    SHARED_ROOM = "shared-room"
    PRIVATE_BATHROOM = "private-bathroom"
    SHARED_BATHROOM = "shared-bathroom"
    LUXURY = "luxury"


class ComfortTier(str, Enum):
    BUDGET = "budget"
    STANDARD = "standard"
    PREMIUM = "premium"
    LUXURY = "luxury"


class LocationPreference(str, Enum):
    CENTER = "center"
    NEAR = "near"
    OUTSKIRTS = "outskirts"
    BEACH = "beach"
    ANYWHERE = "anywhere"


class DistanceBand(str, Enum):
    """Distance from the city center, only meaningful for CENTER."""
    VERY_CLOSE = "very-close"
    UP_TO_5KM = "up-to-5km"
    UP_TO_10KM = "up-to-10km"
    MORE_THAN_10KM = "more-than-10km"


class FlightType(str, Enum):
    DIRECT = "direct"
    ANY = "any"


class PriceVsConvenience(str, Enum):
    PRICE = "price"
    BALANCED = "balanced"
    CONVENIENCE = "convenience"


BUDGET_FLEXIBILITY_MIN = 0
BUDGET_FLEXIBILITY_MAX = 25


# =============================================================================
# Canonical Record
# =============================================================================


class CanonicalPreferenceRecord(BaseModel):
    """
    One normalized, fully-typed set of travel preferences for a user.

    Exactly one exists per user id; stores upsert it by user id.
    Wire shape is camelCase (budgetMin, distanceBand, ...); Python
    attributes are snake_case.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=True,
        extra="forbid",
    )

    budget_min: int = Field(gt=0)
    budget_max: int = Field(gt=0)
    budget_flexibility_pct: int = Field(ge=BUDGET_FLEXIBILITY_MIN, le=BUDGET_FLEXIBILITY_MAX)

    duration: TripDuration
    date_flexibility: DateFlexibility | None = None
    date_flexibility_text: str | None = None

    planning_intent: PlanningIntent

    accommodation_types: frozenset[AccommodationType] = Field(min_length=1)
    accommodation_comfort: frozenset[AccommodationComfort] = Field(min_length=1)
    comfort_tier: ComfortTier

    location_preference: LocationPreference
    distance_band: DistanceBand | None = None

    flight_type: FlightType
    accept_cheaper_stopover: bool
    price_vs_convenience: PriceVsConvenience

    departure_country: str = Field(min_length=1)
    departure_city: str = Field(min_length=1)

    @model_validator(mode="after")
    def check_invariants(self) -> "CanonicalPreferenceRecord":
        if self.budget_min > self.budget_max:
            raise ValueError("budgetMin must not exceed budgetMax")
        if self.date_flexibility is not None and self.date_flexibility_text is not None:
            raise ValueError("dateFlexibility and dateFlexibilityText are mutually exclusive")
        if self.date_flexibility_text is not None and self.duration != TripDuration.EXTENDED:
            raise ValueError("dateFlexibilityText is only valid for the extended duration")
        if self.distance_band is not None and self.location_preference != LocationPreference.CENTER:
            raise ValueError("distanceBand is only valid when locationPreference is center")
        return self

    @field_serializer("accommodation_types", "accommodation_comfort")
    def _serialize_set(self, value: frozenset[Enum]) -> list[str]:
        return sorted(v.value for v in value)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the camelCase wire shape."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "CanonicalPreferenceRecord":
        """Deserialize from the camelCase wire shape (no normalization)."""
        return cls.model_validate(data)

    def to_row(self) -> dict[str, Any]:
        """Map to travel_preferences table columns (without user_id/flags)."""
        return {
            "budget_min": self.budget_min,
            "budget_max": self.budget_max,
            "budget_flexibility": self.budget_flexibility_pct,
            "travel_duration": self.duration.value,
            "date_flexibility": self.date_flexibility.value if self.date_flexibility else None,
            "custom_date_flexibility": self.date_flexibility_text,
            "planning_intent": self.planning_intent.value,
            "accommodation_types": sorted(t.value for t in self.accommodation_types),
            "accommodation_comfort": sorted(c.value for c in self.accommodation_comfort),
            "comfort_level": self.comfort_tier.value,
            "location_preference": self.location_preference.value,
            "city_distance_preference": self.distance_band.value if self.distance_band else None,
            "flight_type": self.flight_type.value,
            "prefer_cheaper_with_stopover": self.accept_cheaper_stopover,
            "price_vs_convenience": self.price_vs_convenience.value,
            "departure_country": self.departure_country,
            "departure_city": self.departure_city,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CanonicalPreferenceRecord":
        """Rebuild the record from a travel_preferences row."""
        return cls(
            budget_min=row["budget_min"],
            budget_max=row["budget_max"],
            budget_flexibility_pct=row["budget_flexibility"],
            duration=row["travel_duration"],
            date_flexibility=row.get("date_flexibility"),
            date_flexibility_text=row.get("custom_date_flexibility"),
            planning_intent=row["planning_intent"],
            accommodation_types=frozenset(row["accommodation_types"]),
            accommodation_comfort=frozenset(row["accommodation_comfort"]),
            comfort_tier=row["comfort_level"],
            location_preference=row["location_preference"],
            distance_band=row.get("city_distance_preference"),
            flight_type=row["flight_type"],
            accept_cheaper_stopover=row["prefer_cheaper_with_stopover"],
            price_vs_convenience=row["price_vs_convenience"],
            departure_country=row["departure_country"],
            departure_city=row["departure_city"],
        )


# =============================================================================
# Wizard Options (for frontend rendering)
# =============================================================================

DURATION_OPTIONS = [
    {"id": "weekend", "label": "Weekend", "description": "2-3 days"},
    {"id": "week", "label": "One week", "description": "5-7 days"},
    {"id": "two-weeks", "label": "Two weeks", "description": "10-14 days"},
    {"id": "extended", "label": "Longer", "description": "More than two weeks"},
]

DATE_FLEXIBILITY_OPTIONS = [
    {"id": "fixed", "label": "Fixed dates"},
    {"id": "flexible-few", "label": "A few days either way"},
    {"id": "flexible-week", "label": "Up to a week either way"},
    {"id": "very-flexible", "label": "Very flexible"},
]

COMFORT_TIER_OPTIONS = [
    {"id": "budget", "label": "Budget", "description": "Basic comfort, great value"},
    {"id": "standard", "label": "Standard", "description": "Good comfort and amenities"},
    {"id": "premium", "label": "Premium", "description": "Enhanced comfort and service"},
    {"id": "luxury", "label": "Luxury", "description": "Ultimate comfort and luxury"},
]

DISTANCE_BAND_OPTIONS = [
    {"id": "very-close", "label": "Very Close", "description": "Direct city center"},
    {"id": "up-to-5km", "label": "Up to 5 km", "description": "Very close to city center"},
    {"id": "up-to-10km", "label": "Up to 10 km", "description": "Reasonable distance from center"},
    {"id": "more-than-10km", "label": "More than 10 km", "description": "Further out but still accessible"},
]


def get_wizard_options() -> dict:
    """
    Get all enum options for the onboarding wizard.

    Labels only exist for the steps that show descriptions; the rest
    are plain value lists.
    """
    return {
        "duration": DURATION_OPTIONS,
        "date_flexibility": DATE_FLEXIBILITY_OPTIONS,
        "planning_intent": [p.value for p in PlanningIntent],
        "accommodation_types": [t.value for t in AccommodationType],
        "accommodation_comfort": [c.value for c in AccommodationComfort],
        "comfort_tier": COMFORT_TIER_OPTIONS,
        "location_preference": [loc.value for loc in LocationPreference],
        "distance_band": DISTANCE_BAND_OPTIONS,
        "flight_type": [f.value for f in FlightType],
        "price_vs_convenience": [p.value for p in PriceVsConvenience],
        "budget_flexibility": {"min": BUDGET_FLEXIBILITY_MIN, "max": BUDGET_FLEXIBILITY_MAX},
    }
