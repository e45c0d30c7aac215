"""
FlowB — Proximity Check-in Verification
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Matches a claimed GPS position against active venues (haversine distance
within the venue radius) and records crew check-ins, absorbing repeats of
the same (user, crew, location) inside the dedup window.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from logger import checkin_logger
from record_store import RecordStore, utc_iso, utc_now
from verification_types import CheckinStatus

EARTH_RADIUS_M = 6371000
DEFAULT_RADIUS_M = 100
DEDUP_WINDOW = timedelta(minutes=30)
CHECKIN_TTL = timedelta(hours=2)


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def valid_coordinates(lat: Any, lon: Any) -> bool:
    for value in (lat, lon):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def is_sponsored(location: Dict[str, Any]) -> bool:
    try:
        return float(location.get("sponsor_amount") or 0) > 0
    except (TypeError, ValueError):
        return False


def match_locations(lat: float, lon: float, locations: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Locations whose radius contains (lat, lon), nearest first, with distance_m"""
    matched = []
    for location in locations:
        loc_lat, loc_lon = location.get("latitude"), location.get("longitude")
        if loc_lat is None or loc_lon is None:
            continue
        distance = haversine_meters(lat, lon, float(loc_lat), float(loc_lon))
        radius = location.get("proximity_radius_m") or DEFAULT_RADIUS_M
        if distance <= radius:
            matched.append({**location, "distance_m": round(distance)})
    return sorted(matched, key=lambda l: l["distance_m"])


class ProximityVerifier:

    def __init__(self, store: RecordStore):
        self.store = store

    def active_locations(self) -> List[Dict[str, Any]]:
        return self.store.get("locations", {"active": 1})

    def match(self, lat: float, lon: float) -> List[Dict[str, Any]]:
        return match_locations(lat, lon, self.active_locations())

    def recently_checked_in(self, user_id: str, crew_id: str, location_id: str, now: datetime) -> bool:
        since = utc_iso(now - DEDUP_WINDOW)
        return self.store.get_one("checkins", {
            "user_id": user_id,
            "crew_id": crew_id,
            "location_id": location_id,
            "created_at": (">", since),
        }) is not None

    def record_checkins(
        self,
        user_id: str,
        platform: str,
        location: Dict[str, Any],
        crew_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        One check-in per crew at this location, skipping crews that already
        have one inside the dedup window. Returns the newly created rows.
        """
        now = now or utc_now()
        created = []

        for crew_id in crew_ids:
            if self.recently_checked_in(user_id, crew_id, location["id"], now):
                checkin_logger.debug(f"⏸️ Duplicate check-in absorbed: {user_id} @ {location['id']} ({crew_id})")
                continue

            created.append(self.store.insert("checkins", {
                "user_id": user_id,
                "platform": platform,
                "crew_id": crew_id,
                "location_id": location["id"],
                "venue_name": location.get("name"),
                "status": CheckinStatus.HERE.value,
                "latitude": location.get("latitude"),
                "longitude": location.get("longitude"),
                "created_at": utc_iso(now),
                "expires_at": utc_iso(now + CHECKIN_TTL),
            }))

        if created:
            checkin_logger.info(f"📍 {user_id} checked in at {location.get('name')} ({len(created)} crew(s))")
        return created
