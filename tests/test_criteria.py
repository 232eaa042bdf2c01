"""Tests for the compatibility predicates shared by both algorithms."""

from datetime import datetime, timedelta, timezone

import pytest

from app.matching_engine import criteria
from app.models import SearchZone


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


# ===========================================================================
# GEOGRAPHY
# ===========================================================================


class TestHaversine:

    def test_same_point_is_zero(self):
        assert criteria.haversine_m(48.85, 2.35, 48.85, 2.35) == pytest.approx(0.0)

    def test_paris_lyon_distance(self):
        """Paris -> Lyon is roughly 392 km as the crow flies."""
        d = criteria.haversine_m(48.8566, 2.3522, 45.7640, 4.8357)
        assert 385_000 < d < 400_000


class TestLocationInZones:

    def test_no_zones_accepts_anywhere(self):
        assert criteria.location_in_zones(10.0, 10.0, []) is True

    def test_invalid_zones_are_ignored(self):
        zones = [SearchZone(lat=None, lng=2.0, radius=1000), SearchZone(lat=1.0, lng=2.0, radius=0)]
        assert criteria.location_in_zones(10.0, 10.0, zones) is True

    def test_inside_radius(self):
        zones = [SearchZone(lat=48.8566, lng=2.3522, radius=2_000)]
        # ~1.1 km north
        assert criteria.location_in_zones(48.8666, 2.3522, zones) is True

    def test_outside_radius(self):
        zones = [SearchZone(lat=48.8566, lng=2.3522, radius=500)]
        assert criteria.location_in_zones(48.8666, 2.3522, zones) is False

    def test_any_zone_suffices(self):
        zones = [
            SearchZone(lat=45.7640, lng=4.8357, radius=1_000),
            SearchZone(lat=48.8566, lng=2.3522, radius=1_000),
        ]
        assert criteria.location_in_zones(48.8570, 2.3525, zones) is True

    def test_zones_but_no_coordinates(self):
        zones = [SearchZone(lat=48.8566, lng=2.3522, radius=1_000)]
        assert criteria.location_in_zones(None, None, zones) is False


class TestBoundingBoxes:

    def test_box_contains_center(self):
        zones = [SearchZone(lat=48.0, lng=2.0, radius=10_000)]
        (min_lat, max_lat, min_lng, max_lng), = criteria.zone_bounding_boxes(zones)
        assert min_lat < 48.0 < max_lat
        assert min_lng < 2.0 < max_lng

    def test_box_is_wider_than_radius(self):
        zones = [SearchZone(lat=48.0, lng=2.0, radius=111_000)]
        (min_lat, max_lat, _, _), = criteria.zone_bounding_boxes(zones)
        assert max_lat - 48.0 >= 1.0

    def test_no_valid_zone_no_box(self):
        assert criteria.zone_bounding_boxes([SearchZone(lat=1.0, lng=1.0, radius=None)]) == []


# ===========================================================================
# HOME vs SEARCH
# ===========================================================================


class TestDwellingRejection:

    def test_all_bounds_satisfied(self, make_home, make_search):
        home = make_home(rent=800, surface=40, nb_rooms=2, home_type="T2")
        search = make_search(
            min_rent=500, max_rent=900,
            min_room_surface=30, max_room_surface=50,
            min_room_nb=1, max_room_nb=3,
            home_types=["T2", "T3"],
        )
        assert criteria.dwelling_rejection(home, search) is None
        assert criteria.dwelling_satisfies_search(home, search) is True

    def test_null_bounds_are_unbounded(self, make_home, make_search):
        home = make_home(rent=5_000, surface=500, nb_rooms=9)
        search = make_search(max_rent=None, home_types=[])
        assert criteria.dwelling_rejection(home, search) is None

    def test_bounds_are_inclusive(self, make_home, make_search):
        home = make_home(rent=900)
        search = make_search(min_rent=900, max_rent=900)
        assert criteria.dwelling_rejection(home, search) is None

    @pytest.mark.parametrize("field,value,expected", [
        ("rent", 1_200, "rent"),
        ("surface", 10, "surface"),
        ("nb_rooms", 6, "rooms"),
        ("home_type", "T5", "home_type"),
    ])
    def test_first_failing_criterion(self, make_home, make_search, field, value, expected):
        home = make_home(**{field: value})
        search = make_search(
            max_rent=1_000, min_room_surface=20, max_room_nb=4, home_types=["T2"],
        )
        assert criteria.dwelling_rejection(home, search) == expected

    def test_missing_value_fails_a_bounded_criterion(self, make_home, make_search):
        home = make_home(rent=None)
        search = make_search(max_rent=1_000)
        assert criteria.dwelling_rejection(home, search) == "rent"

    def test_missing_home_or_search(self, make_search):
        assert criteria.dwelling_rejection(None, make_search()) == "missing_home_or_search"


# ===========================================================================
# DATES
# ===========================================================================


class TestDateOverlap:

    def test_open_windows_overlap(self, make_search):
        a = make_search(search_start_date=None, search_end_date=None)
        b = make_search(search_start_date=None, search_end_date=None)
        assert criteria.date_windows_overlap(a, b, now=NOW) is True

    def test_disjoint_windows_strict(self, make_search):
        a = make_search(search_start_date=NOW, search_end_date=NOW + timedelta(days=30))
        b = make_search(
            search_start_date=NOW + timedelta(days=31),
            search_end_date=NOW + timedelta(days=60),
        )
        assert criteria.date_windows_overlap(a, b, now=NOW) is False

    def test_touching_windows_overlap(self, make_search):
        a = make_search(search_start_date=NOW, search_end_date=NOW + timedelta(days=30))
        b = make_search(
            search_start_date=NOW + timedelta(days=30),
            search_end_date=NOW + timedelta(days=60),
        )
        assert criteria.date_windows_overlap(a, b, now=NOW) is True

    def test_tolerance_bridges_a_small_gap(self, make_search):
        """10% of a 30-day window is 3 days per side: a 2-day gap is bridged."""
        a = make_search(search_start_date=NOW, search_end_date=NOW + timedelta(days=30))
        b = make_search(
            search_start_date=NOW + timedelta(days=32),
            search_end_date=NOW + timedelta(days=62),
        )
        assert criteria.date_windows_overlap(a, b, fraction=0.1, now=NOW) is True

    def test_min_days_floor(self, make_search):
        a = make_search(search_start_date=NOW, search_end_date=NOW + timedelta(days=1))
        b = make_search(
            search_start_date=NOW + timedelta(days=5),
            search_end_date=NOW + timedelta(days=6),
        )
        assert criteria.date_windows_overlap(a, b, now=NOW) is False
        assert criteria.date_windows_overlap(a, b, min_days=2, now=NOW) is True

    def test_open_end_reaches_far_future(self, make_search):
        a = make_search(search_start_date=NOW, search_end_date=None)
        b = make_search(
            search_start_date=NOW + timedelta(days=365 * 5),
            search_end_date=NOW + timedelta(days=365 * 6),
        )
        assert criteria.date_windows_overlap(a, b, now=NOW) is True

    def test_naive_dates_are_treated_as_utc(self, make_search):
        a = make_search(
            search_start_date=datetime(2026, 6, 1),
            search_end_date=datetime(2026, 6, 30),
        )
        b = make_search(
            search_start_date=NOW + timedelta(days=10),
            search_end_date=NOW + timedelta(days=40),
        )
        assert criteria.date_windows_overlap(a, b, now=NOW) is True


# ===========================================================================
# INTENTS + SCORING
# ===========================================================================


class TestIntentEligibility:

    def test_eligible(self, make_intent):
        assert criteria.is_intent_eligible(make_intent()) is True

    def test_not_in_flow(self, make_intent):
        assert criteria.is_intent_eligible(make_intent(is_in_flow=False)) is False

    def test_no_credits(self, make_intent):
        assert criteria.is_intent_eligible(make_intent(total_matches_remaining=0)) is False

    def test_missing_links(self, make_intent):
        assert criteria.is_intent_eligible(make_intent(home_id=None)) is False
        assert criteria.is_intent_eligible(make_intent(search_id=None)) is False

    def test_none(self):
        assert criteria.is_intent_eligible(None) is False


class TestRentProximityScore:

    def test_exact_rent_scores_100(self, make_home, make_search):
        assert criteria.rent_proximity_score(make_home(rent=900), make_search(max_rent=900)) == 100.0

    def test_distance_lowers_score(self, make_home, make_search):
        assert criteria.rent_proximity_score(make_home(rent=850), make_search(max_rent=900)) == 50.0

    def test_unknown_values_use_default(self, make_home, make_search):
        score = criteria.rent_proximity_score(make_home(rent=None), make_search(max_rent=900))
        assert score == criteria.DEFAULT_EDGE_SCORE
