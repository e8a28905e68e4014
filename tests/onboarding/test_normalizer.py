"""
Tests for the preference normalizer.

Tests cover:
- The worked example (beach location drops the distance band)
- Duration / date flexibility mutual exclusivity
- Coercion and clamping of numeric fields
- Legacy field names and enum spellings
- Collecting every issue before raising
"""

import pytest

from onboarding.errors import ValidationError
from onboarding.normalizer import normalize_preferences
from onboarding.preferences import (
    AccommodationType,
    CanonicalPreferenceRecord,
    DateFlexibility,
    DistanceBand,
    LocationPreference,
    TripDuration,
    get_wizard_options,
)


class TestWorkedExample:
    """budget 500-1000, week, beach, up-to-5km."""

    def test_distance_band_dropped_for_beach(self, raw_preferences):
        record = normalize_preferences(raw_preferences)

        assert record.budget_min == 500
        assert record.budget_max == 1000
        assert record.duration == TripDuration.WEEK
        assert record.location_preference == LocationPreference.BEACH
        assert record.distance_band is None

    def test_wire_shape(self, raw_preferences):
        wire = normalize_preferences(raw_preferences).to_wire()

        assert wire["distanceBand"] is None
        assert wire["accommodationTypes"] == ["apartment", "hotel"]
        assert wire["departureCity"] == "Lisbon"
        assert wire["acceptCheaperStopover"] is False

    def test_distance_band_kept_for_center(self, raw_preferences):
        raw_preferences["locationPreference"] = "center"
        record = normalize_preferences(raw_preferences)
        assert record.distance_band == DistanceBand.UP_TO_5KM

    def test_normalizing_is_deterministic(self, raw_preferences):
        assert normalize_preferences(raw_preferences) == normalize_preferences(dict(raw_preferences))


class TestMutualExclusivity:
    """Extended duration uses free text; every other duration uses the enum."""

    def test_extended_clears_enum_keeps_text(self, raw_preferences):
        raw_preferences["duration"] = "extended"
        raw_preferences["dateFlexibility"] = "fixed"
        raw_preferences["dateFlexibilityText"] = "  Sometime in spring  "

        record = normalize_preferences(raw_preferences)

        assert record.date_flexibility is None
        assert record.date_flexibility_text == "Sometime in spring"

    def test_non_extended_clears_text_keeps_enum(self, raw_preferences):
        raw_preferences["dateFlexibilityText"] = "whenever"

        record = normalize_preferences(raw_preferences)

        assert record.date_flexibility == DateFlexibility.FLEXIBLE_FEW
        assert record.date_flexibility_text is None

    def test_legacy_longer_means_extended(self, raw_preferences):
        raw_preferences["duration"] = "longer"
        raw_preferences["customDateFlexibility"] = "Summer holidays"

        record = normalize_preferences(raw_preferences)

        assert record.duration == TripDuration.EXTENDED
        assert record.date_flexibility_text == "Summer holidays"


class TestCoercion:
    """Numbers are coerced and clamped, not rejected."""

    def test_flexibility_clamped_high(self, raw_preferences):
        raw_preferences["budgetFlexibilityPct"] = 80
        assert normalize_preferences(raw_preferences).budget_flexibility_pct == 25

    def test_flexibility_clamped_low(self, raw_preferences):
        raw_preferences["budgetFlexibilityPct"] = -5
        assert normalize_preferences(raw_preferences).budget_flexibility_pct == 0

    def test_numeric_strings(self, raw_preferences):
        raw_preferences["budgetMin"] = "750"
        raw_preferences["budgetMax"] = "1200.4"
        raw_preferences["budgetFlexibilityPct"] = "15"

        record = normalize_preferences(raw_preferences)

        assert record.budget_min == 750
        assert record.budget_max == 1200
        assert record.budget_flexibility_pct == 15

    def test_missing_budget_uses_wizard_defaults(self, raw_preferences):
        del raw_preferences["budgetMin"]
        del raw_preferences["budgetMax"]
        del raw_preferences["budgetFlexibilityPct"]

        record = normalize_preferences(raw_preferences)

        assert (record.budget_min, record.budget_max, record.budget_flexibility_pct) == (500, 1000, 10)

    def test_budget_range_object(self, raw_preferences):
        del raw_preferences["budgetMin"]
        del raw_preferences["budgetMax"]
        raw_preferences["budgetRange"] = {"min": 300, "max": 900}

        record = normalize_preferences(raw_preferences)

        assert (record.budget_min, record.budget_max) == (300, 900)

    def test_boolean_strings(self, raw_preferences):
        raw_preferences["acceptCheaperStopover"] = "true"
        assert normalize_preferences(raw_preferences).accept_cheaper_stopover is True

    def test_stopover_defaults_to_true(self, raw_preferences):
        del raw_preferences["acceptCheaperStopover"]
        assert normalize_preferences(raw_preferences).accept_cheaper_stopover is True

    def test_enum_case_and_separators(self, raw_preferences):
        raw_preferences["duration"] = "Two Weeks"
        raw_preferences["accommodationTypes"] = "Hotel, RESORT"

        record = normalize_preferences(raw_preferences)

        assert record.duration == TripDuration.TWO_WEEKS
        assert record.accommodation_types == frozenset({AccommodationType.HOTEL, AccommodationType.RESORT})

    def test_unknown_set_members_dropped(self, raw_preferences):
        raw_preferences["accommodationTypes"] = ["hotel", "treehouse"]
        record = normalize_preferences(raw_preferences)
        assert record.accommodation_types == frozenset({AccommodationType.HOTEL})

    def test_checkbox_mapping_takes_checked_keys(self, raw_preferences):
        raw_preferences["accommodationTypes"] = {"hotel": True, "hostel": False, "apartment": "true"}
        record = normalize_preferences(raw_preferences)
        assert record.accommodation_types == frozenset({AccommodationType.HOTEL, AccommodationType.APARTMENT})

    def test_checkbox_mapping_nothing_checked(self, raw_preferences):
        raw_preferences["accommodationTypes"] = {"hotel": False}

        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences(raw_preferences)

        assert exc_info.value.fields == ["accommodationTypes"]

    @pytest.mark.parametrize("value, expected", [("inf", 25), ("-inf", 0), ("1e400", 25), (float("inf"), 25)])
    def test_infinite_flexibility_saturates(self, raw_preferences, value, expected):
        raw_preferences["budgetFlexibilityPct"] = value
        assert normalize_preferences(raw_preferences).budget_flexibility_pct == expected

    def test_nan_flexibility_uses_default(self, raw_preferences):
        raw_preferences["budgetFlexibilityPct"] = "nan"
        assert normalize_preferences(raw_preferences).budget_flexibility_pct == 10


class TestLegacyNames:
    """Snake_case and old wizard field names are accepted."""

    def test_snake_case_and_legacy_keys(self, raw_preferences):
        raw = {
            "budget_min": 400,
            "budget_max": 800,
            "budgetTolerance": 5,
            "travelDuration": "weekend",
            "date_flexibility": "fixed",
            "planning_intent": "exploring",
            "accommodation_types": ["hostel"],
            "accommodation_comfort": ["shared-room"],
            "comfortLevel": "budget",
            "location_preference": "centre",
            "cityDistancePreference": "very-close",
            "flight_type": "any",
            "preferCheaperWithStopover": "1",
            "priceConvenience": "price",
            "departure_country": "Spain",
            "departure_city": "Madrid",
        }

        record = normalize_preferences(raw)

        assert record.budget_flexibility_pct == 5
        assert record.duration == TripDuration.WEEKEND
        assert record.location_preference == LocationPreference.CENTER
        assert record.distance_band == DistanceBand.VERY_CLOSE
        assert record.accept_cheaper_stopover is True

    def test_custom_departure_city(self, raw_preferences):
        raw_preferences["departureCity"] = "other"
        raw_preferences["customDepartureCity"] = " Évora "

        assert normalize_preferences(raw_preferences).departure_city == "Évora"


class TestValidationErrors:
    """Hard failures report every issue at once."""

    def test_all_issues_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences({"budgetMin": 2000, "budgetMax": 1000})

        fields = exc_info.value.fields
        assert "budgetMin" in fields
        assert "duration" in fields
        assert "planningIntent" in fields
        assert "accommodationTypes" in fields
        assert "accommodationComfort" in fields
        assert "comfortTier" in fields
        assert "locationPreference" in fields
        assert "flightType" in fields
        assert "priceVsConvenience" in fields
        assert "departureCountry" in fields
        assert "departureCity" in fields

    def test_min_greater_than_max(self, raw_preferences):
        raw_preferences["budgetMin"] = 1500

        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences(raw_preferences)

        assert exc_info.value.fields == ["budgetMin"]

    def test_non_numeric_budget(self, raw_preferences):
        raw_preferences["budgetMax"] = "lots"

        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences(raw_preferences)

        assert exc_info.value.fields == ["budgetMax"]

    @pytest.mark.parametrize("value", ["1e400", "inf", "nan", float("nan")])
    def test_non_finite_budget(self, raw_preferences, value):
        raw_preferences["budgetMin"] = value

        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences(raw_preferences)

        assert exc_info.value.fields == ["budgetMin"]

    def test_unknown_required_enum(self, raw_preferences):
        raw_preferences["comfortTier"] = "palatial"

        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences(raw_preferences)

        assert "unknown value" in exc_info.value.issues[0].message

    def test_empty_set_after_cleaning(self, raw_preferences):
        raw_preferences["accommodationComfort"] = ["", "igloo"]

        with pytest.raises(ValidationError) as exc_info:
            normalize_preferences(raw_preferences)

        assert exc_info.value.fields == ["accommodationComfort"]

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            normalize_preferences(["budgetMin", 500])


class TestCanonicalRecord:
    """The record itself refuses invalid combinations."""

    def test_row_round_trip(self, record):
        assert CanonicalPreferenceRecord.from_row(record.to_row()) == record

    def test_distance_band_rejected_off_center(self, record):
        data = record.to_wire()
        data["distanceBand"] = "up-to-5km"

        with pytest.raises(ValueError):
            CanonicalPreferenceRecord.from_wire(data)

    def test_text_rejected_for_non_extended(self, record):
        data = record.to_wire()
        data["dateFlexibility"] = None
        data["dateFlexibilityText"] = "anytime"

        with pytest.raises(ValueError):
            CanonicalPreferenceRecord.from_wire(data)

    def test_frozen(self, record):
        with pytest.raises(ValueError):
            record.budget_min = 1

    def test_wizard_options(self):
        options = get_wizard_options()
        assert [o["id"] for o in options["duration"]] == ["weekend", "week", "two-weeks", "extended"]
        assert options["budget_flexibility"] == {"min": 0, "max": 25}
