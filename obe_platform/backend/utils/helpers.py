"""
OBE Learning Platform
Shared helpers: logging setup, UTC time and number formatting
"""

import logging
import sys
from datetime import date, datetime, timezone
from typing import Optional

from ...config import get_settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging from settings"""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format=settings.LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    # SQLAlchemy echoes through its own logger
    if not settings.DB_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_date(value: Optional[datetime] = None) -> date:
    """Calendar date in UTC for a naive-UTC or aware timestamp"""
    if value is None:
        return utcnow().date()
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def round2(value: float) -> float:
    return round(float(value), 2)


__all__ = ["setup_logging", "utcnow", "utc_date", "round2"]
