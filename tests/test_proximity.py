"""Geofence matching and check-in dedup"""

from datetime import datetime, timedelta, timezone

import pytest

from proximity_verifier import (
    DEFAULT_RADIUS_M,
    ProximityVerifier,
    haversine_meters,
    match_locations,
    valid_coordinates,
)

VENUE_LAT, VENUE_LON = 25.2048, 55.2708
METERS_PER_DEGREE_LAT = 6371000 * 3.141592653589793 / 180
T0 = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


def north_of_venue(meters):
    return VENUE_LAT + meters / METERS_PER_DEGREE_LAT, VENUE_LON


def venue(**overrides):
    return {
        "id": "loc-1",
        "code": "MARINA",
        "name": "Marina Stage",
        "latitude": VENUE_LAT,
        "longitude": VENUE_LON,
        "proximity_radius_m": 100,
        "sponsor_amount": 0,
        "active": 1,
        **overrides,
    }


class TestHaversine:

    def test_identical_points_are_zero(self):
        assert haversine_meters(VENUE_LAT, VENUE_LON, VENUE_LAT, VENUE_LON) == 0

    def test_symmetric(self):
        a, b = (25.2048, 55.2708), (25.1972, 55.2744)
        assert haversine_meters(*a, *b) == pytest.approx(haversine_meters(*b, *a))

    def test_one_degree_of_latitude(self):
        assert haversine_meters(0, 0, 1, 0) == pytest.approx(METERS_PER_DEGREE_LAT, rel=1e-9)

    @pytest.mark.parametrize("lat,lon,ok", [
        (0, 0, True), (90, 180, True), (-90, -180, True),
        (91, 0, False), (0, 181, False), (None, 0, False), ("25.2", 55.2, False),
        (True, 0, False), (float("nan"), 0, False),
    ])
    def test_coordinate_validation(self, lat, lon, ok):
        assert valid_coordinates(lat, lon) is ok


class TestMatching:

    def test_80m_matched_150m_not(self):
        assert [l["id"] for l in match_locations(*north_of_venue(80), [venue()])] == ["loc-1"]
        assert match_locations(*north_of_venue(150), [venue()]) == []

    def test_distance_is_rounded(self):
        matched = match_locations(*north_of_venue(80), [venue()])
        assert matched[0]["distance_m"] == 80

    def test_default_radius_when_unset(self):
        assert DEFAULT_RADIUS_M == 100
        assert match_locations(*north_of_venue(90), [venue(proximity_radius_m=None)])

    def test_custom_radius(self):
        assert match_locations(*north_of_venue(150), [venue(proximity_radius_m=200)])

    def test_locations_without_coordinates_skipped(self):
        assert match_locations(VENUE_LAT, VENUE_LON, [venue(latitude=None)]) == []

    def test_nearest_first(self):
        near = venue(id="near")
        far = venue(id="far", latitude=north_of_venue(60)[0])
        matched = match_locations(VENUE_LAT, VENUE_LON, [far, near])
        assert [l["id"] for l in matched] == ["near", "far"]


class TestCheckinDedup:

    @pytest.fixture
    def verifier(self, store):
        store.insert("locations", venue())
        return ProximityVerifier(store)

    def test_only_active_locations_considered(self, store, verifier):
        store.insert("locations", venue(id="loc-2", code="CLOSED", active=0))
        assert [l["id"] for l in verifier.match(VENUE_LAT, VENUE_LON)] == ["loc-1"]

    def test_checkin_fields(self, verifier):
        [row] = verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0)

        assert row["status"] == "here"
        assert row["venue_name"] == "Marina Stage"
        assert row["expires_at"] == (T0 + timedelta(hours=2)).isoformat(timespec="microseconds")

    def test_repeat_within_30_minutes_absorbed(self, store, verifier):
        verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0)
        again = verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0 + timedelta(minutes=29))

        assert again == []
        assert len(store.get("checkins", {"user_id": "telegram_42"})) == 1

    def test_repeat_after_31_minutes_creates_second(self, store, verifier):
        verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0)
        again = verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0 + timedelta(minutes=31))

        assert len(again) == 1
        assert len(store.get("checkins", {"user_id": "telegram_42"})) == 2

    def test_dedup_is_per_crew(self, verifier):
        verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0)
        created = verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a", "crew-b"], now=T0)
        assert [row["crew_id"] for row in created] == ["crew-b"]

    def test_dedup_is_per_user(self, verifier):
        verifier.record_checkins("telegram_42", "telegram", venue(), ["crew-a"], now=T0)
        assert verifier.record_checkins("telegram_43", "telegram", venue(), ["crew-a"], now=T0)
