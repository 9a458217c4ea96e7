"""
Test: XP ledger, levels and streak transitions.
"""
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from obe_platform.backend.database.models import BonusXPEvent, XPTransaction
from obe_platform.backend.engine.gamification import (
    LEVEL_THRESHOLDS, award_xp, get_or_create_progress, level_for_xp, level_progress,
    milestone_progress, next_streak, process_streak
)
from obe_platform.backend.exceptions import ValidationException

from conftest import NOW


class TestLevels:
    def test_thresholds_start_at_zero(self):
        assert LEVEL_THRESHOLDS[:3] == [0, 100, 250]

    def test_level_for_xp(self):
        assert level_for_xp(0) == 1
        assert level_for_xp(99) == 1
        assert level_for_xp(100) == 2
        assert level_for_xp(250) == 3

    def test_thresholds_increase(self):
        assert all(b > a for a, b in zip(LEVEL_THRESHOLDS, LEVEL_THRESHOLDS[1:]))

    def test_progress_to_next_level(self):
        progress = level_progress(175)
        assert progress["level"] == 2
        assert progress["xp_to_next_level"] == 75
        assert progress["level_progress_percentage"] == 50.0


class TestNextStreak:
    today = date(2026, 3, 10)

    def test_first_activity_starts(self):
        assert next_streak(0, None, self.today, 0)["outcome"] == "started"

    def test_same_day_unchanged(self):
        step = next_streak(4, self.today, self.today, 0)
        assert step == {"streak": 4, "freezes": 0, "outcome": "unchanged"}

    def test_next_day_continues(self):
        step = next_streak(4, self.today - timedelta(days=1), self.today, 0)
        assert step["streak"] == 5
        assert step["outcome"] == "continued"

    def test_one_missed_day_uses_freeze(self):
        step = next_streak(4, self.today - timedelta(days=2), self.today, 1)
        assert step == {"streak": 5, "freezes": 0, "outcome": "frozen"}

    def test_gap_resets(self):
        step = next_streak(4, self.today - timedelta(days=2), self.today, 0)
        assert step["streak"] == 1
        assert step["outcome"] == "reset"

    def test_milestone_progress(self):
        assert milestone_progress(5) == {"next_milestone": 7, "progress_percent": 71.4}
        assert milestone_progress(100)["next_milestone"] is None


class TestAwardXP:
    async def test_ledger_and_total(self, db, world):
        student_id = world["student"].id
        await award_xp(db, student_id, 60, "submission")
        result = await award_xp(db, student_id, 50, "journal")

        assert result["new_total"] == 110
        assert result["level_up"] is True
        assert result["new_level"] == 2
        rows = (await db.execute(select(XPTransaction).where(XPTransaction.student_id == student_id))).scalars().all()
        assert len(rows) == 2

    async def test_bonus_event_multiplies(self, db, world):
        db.add(BonusXPEvent(title="Exam week", multiplier=2.0,
                            starts_at=NOW - timedelta(hours=1), ends_at=NOW + timedelta(hours=1)))
        await db.flush()

        result = await award_xp(db, world["student"].id, 25, "grade", now=NOW)
        assert result["xp_awarded"] == 50

    async def test_unknown_source_rejected(self, db, world):
        with pytest.raises(ValidationException):
            await award_xp(db, world["student"].id, 10, "lottery")

    async def test_only_admin_adjustment_may_subtract(self, db, world):
        with pytest.raises(ValidationException):
            await award_xp(db, world["student"].id, -10, "journal")

        await award_xp(db, world["student"].id, 30, "journal")
        result = await award_xp(db, world["student"].id, -10, "admin_adjustment")
        assert result["new_total"] == 20


class TestProcessStreak:
    async def test_seventh_day_awards_milestone(self, db, world):
        student_id = world["student"].id
        start = date(2026, 3, 1)
        results = [await process_streak(db, student_id, start + timedelta(days=i)) for i in range(7)]

        assert results[-1]["current_streak"] == 7
        assert results[-1]["milestone_xp"]["xp_awarded"] == 100
        assert all(r["milestone_xp"] is None for r in results[:-1])

    async def test_reset_reports_broken_streak(self, db, world):
        student_id = world["student"].id
        start = date(2026, 3, 1)
        for i in range(3):
            await process_streak(db, student_id, start + timedelta(days=i))

        result = await process_streak(db, student_id, start + timedelta(days=7))
        assert result["outcome"] == "reset"
        assert result["broken_streak"] == 3
        progress = await get_or_create_progress(db, student_id)
        assert progress.longest_streak == 3
