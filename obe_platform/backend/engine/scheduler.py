"""
OBE Learning Platform
Periodic alert sweep and the scheduler that drives it
"""

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select

from ..database.models import User, UserRole
from ..utils.helpers import utcnow
from .alerts import STUDENT_CHECKS
from .badges import check_badges
from .dispatch import NotificationDispatcher

# Configure logging
logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager]


async def run_alert_sweep(
    session_factory: SessionFactory,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run every alert check and a badge check for each active student.

    Each check runs in its own transaction; a failing check is logged,
    rolled back and skipped without stopping the sweep.
    """
    now = now or utcnow()
    report = {"students": 0, "alerts_created": 0, "badges_awarded": 0, "failures": []}

    async with session_factory() as db:
        result = await db.execute(
            select(User.id).where(User.role == UserRole.STUDENT, User.is_active.is_(True)).order_by(User.id)
        )
        student_ids = list(result.scalars())

    for student_id in student_ids:
        report["students"] += 1

        for name, check in STUDENT_CHECKS:
            async with session_factory() as db:
                try:
                    student = await db.get(User, student_id)
                    alert = await check(db, student, dispatcher, now)
                    await db.commit()
                    if alert is not None:
                        report["alerts_created"] += 1
                except Exception:
                    logger.exception(f"Alert check {name} failed for student {student_id}")
                    await db.rollback()
                    report["failures"].append({"student_id": str(student_id), "check": name})

        async with session_factory() as db:
            try:
                new_badges = await check_badges(db, student_id, "xp_award", dispatcher=dispatcher)
                await db.commit()
                report["badges_awarded"] += len(new_badges)
            except Exception:
                logger.exception(f"Badge sweep failed for student {student_id}")
                await db.rollback()
                report["failures"].append({"student_id": str(student_id), "check": "badges"})

    logger.info(
        f"Alert sweep finished: {report['students']} students, "
        f"{report['alerts_created']} alerts, {len(report['failures'])} failures"
    )
    return report


class AlertSweepScheduler:
    """Runs a sweep coroutine every interval until stopped"""

    def __init__(self, sweep: Callable[[], Awaitable[Any]], interval_seconds: float):
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        try:
            return await self.sweep()
        except Exception:
            logger.exception("Alert sweep failed")
            return None

    async def _loop(self):
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Alert sweep scheduled every {self.interval_seconds}s")

    async def stop(self):
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("Alert sweep scheduler stopped")


__all__ = ["run_alert_sweep", "AlertSweepScheduler"]
