"""
FlowB — Points Ledger
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

award(subject, platform, action, metadata) -> {awarded, points, total}

Each action has a point value and a daily cap; "once" actions are only
ever awarded a single time per user. Unknown actions are ignored.
"""

import json
from typing import Any, Dict, Optional

from logger import logger
from record_store import RecordStore, utc_iso, utc_now

POINT_VALUES: Dict[str, Dict[str, Any]] = {
    "miniapp_open":       {"points": 2,  "daily_cap": 10},
    "event_checkin":      {"points": 5,  "daily_cap": 25},
    "qr_checkin":         {"points": 10, "daily_cap": 30},
    "proximity_checkin":  {"points": 5,  "daily_cap": 25},
    "sponsored_checkin":  {"points": 10, "daily_cap": 50},
    "sponsor_created":    {"points": 5,  "daily_cap": 25},
    "sponsor_verified":   {"points": 25, "daily_cap": 100},
    "verification_complete": {"points": 25, "daily_cap": 25, "once": True},
}

MILESTONES = [
    (1, 0, "Explorer"),
    (2, 50, "Mover"),
    (3, 150, "Groover"),
    (4, 500, "Dancer"),
    (5, 1000, "Star"),
    (6, 2500, "Legend"),
]


def milestone_for(total: int) -> int:
    level = 0
    for milestone_level, threshold, _ in MILESTONES:
        if total >= threshold:
            level = milestone_level
    return level


class PointsLedger:

    def __init__(self, store: RecordStore):
        self.store = store

    def award(
        self,
        subject: str,
        platform: str,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        definition = POINT_VALUES.get(action)
        if not definition:
            return {"awarded": False, "points": 0, "total": 0}

        key = {"user_id": subject, "platform": platform}
        self.store.upsert("user_points", {**key, "updated_at": utc_iso()}, conflict=("user_id", "platform"))
        row = self.store.get_one("user_points", key) or {}
        total = int(row.get("total_points") or 0)
        first_actions = json.loads(row.get("first_actions") or "{}")

        if definition.get("once") and first_actions.get(action):
            return {"awarded": False, "points": 0, "total": total}

        day_start = utc_iso(utc_now().replace(hour=0, minute=0, second=0, microsecond=0))
        today = self.store.get("points_ledger", {**key, "action": action, "created_at": (">=", day_start)})
        earned_today = sum(int(entry["points"]) for entry in today)
        if earned_today >= definition["daily_cap"]:
            return {"awarded": False, "points": 0, "total": total}

        points = min(definition["points"], definition["daily_cap"] - earned_today)
        self.store.insert("points_ledger", {
            **key,
            "action": action,
            "points": points,
            "metadata": metadata or {},
            "created_at": utc_iso(),
        })

        self.store.increment("user_points", key, "total_points", points)
        new_total = total + points
        updates = {"milestone_level": milestone_for(new_total), "updated_at": utc_iso()}
        if definition.get("once"):
            updates["first_actions"] = {**first_actions, action: True}
        self.store.update("user_points", key, updates)

        logger.debug(f"🏅 +{points} {action} → {subject} (total {new_total})")
        return {"awarded": True, "points": points, "total": new_total}
