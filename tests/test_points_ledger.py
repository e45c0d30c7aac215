"""Points awards, daily caps and milestones"""

import pytest

from points_ledger import PointsLedger, milestone_for


@pytest.fixture
def ledger(store):
    return PointsLedger(store)


class TestPointsLedger:

    def test_award_accumulates(self, ledger):
        first = ledger.award("telegram_42", "telegram", "miniapp_open")
        second = ledger.award("telegram_42", "telegram", "miniapp_open")

        assert first == {"awarded": True, "points": 2, "total": 2}
        assert second == {"awarded": True, "points": 2, "total": 4}

    def test_daily_cap(self, ledger):
        results = [ledger.award("telegram_42", "telegram", "miniapp_open") for _ in range(7)]

        assert [r["awarded"] for r in results] == [True] * 5 + [False] * 2
        assert results[-1]["total"] == 10

    def test_once_actions(self, ledger):
        assert ledger.award("app_user", "app", "verification_complete")["awarded"]
        assert not ledger.award("app_user", "app", "verification_complete")["awarded"]

    def test_unknown_action_ignored(self, ledger, store):
        assert ledger.award("app_user", "app", "free_money") == {"awarded": False, "points": 0, "total": 0}
        assert store.get("points_ledger") == []

    def test_platforms_are_separate_balances(self, ledger):
        ledger.award("user-1", "telegram", "qr_checkin")
        assert ledger.award("user-1", "farcaster", "qr_checkin")["total"] == 10

    def test_ledger_rows_and_milestone(self, ledger, store):
        ledger.award("telegram_42", "telegram", "sponsor_verified", {"sponsorship_id": "sp-1"})
        ledger.award("telegram_42", "telegram", "sponsor_verified", {"sponsorship_id": "sp-2"})

        row = store.get_one("user_points", {"user_id": "telegram_42"})
        assert row["total_points"] == 50
        assert row["milestone_level"] == 2
        assert len(store.get("points_ledger", {"action": "sponsor_verified"})) == 2

    @pytest.mark.parametrize("total,level", [(0, 1), (49, 1), (50, 2), (150, 3), (2500, 6)])
    def test_milestones(self, total, level):
        assert milestone_for(total) == level
