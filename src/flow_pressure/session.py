"""US equity session calendar.

Sessions in exchange time, Monday to Friday outside exchange holidays:
PRE 04:00-09:30, REG 09:30-16:00, POST 16:01-20:00, otherwise CLOSED.
Only the regular session accepts simulated trades.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, time as clock_time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from .settings import settings


Clock = Callable[[], datetime]

PRE_OPEN = clock_time(4, 0)
POST_OPEN = clock_time(16, 1)
POST_CLOSE = clock_time(20, 0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _nth_weekday_of_month(year: int, month: int, weekday: int, occurrence: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return date(year, month, 1 + offset + (occurrence - 1) * 7)


def _last_weekday_of_month(year: int, month: int, weekday: int) -> date:
    next_month = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    cursor = next_month - timedelta(days=1)
    while cursor.weekday() != weekday:
        cursor -= timedelta(days=1)
    return cursor


def _observed(day: date) -> date:
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


def _easter_sunday(year: int) -> date:
    a = year % 19
    b = year // 100
    c = year % 100
    d = b // 4
    e = b % 4
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i = c // 4
    k = c % 4
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month = (h + l - 7 * m + 114) // 31
    day_num = ((h + l - 7 * m + 114) % 31) + 1
    return date(year, month, day_num)


@lru_cache(maxsize=16)
def us_equity_holidays(year: int) -> frozenset[date]:
    holidays = {
        _observed(date(year, 1, 1)),
        _nth_weekday_of_month(year, 1, 0, 3),
        _nth_weekday_of_month(year, 2, 0, 3),
        _easter_sunday(year) - timedelta(days=2),
        _last_weekday_of_month(year, 5, 0),
        _observed(date(year, 6, 19)),
        _observed(date(year, 7, 4)),
        _nth_weekday_of_month(year, 9, 0, 1),
        _nth_weekday_of_month(year, 11, 3, 4),
        _observed(date(year, 12, 25)),
    }
    # New Year's Day on a Saturday is observed on Dec 31 of the prior year.
    next_new_year = _observed(date(year + 1, 1, 1))
    if next_new_year.year == year:
        holidays.add(next_new_year)
    return frozenset(holidays)


def _exchange_time(now: datetime | None) -> datetime:
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(settings.timezone))


def _regular_window() -> tuple[clock_time, clock_time]:
    return (
        clock_time(settings.session_open_hour, settings.session_open_minute),
        clock_time(settings.session_close_hour, settings.session_close_minute),
    )


def market_status(now: datetime | None = None) -> dict[str, object]:
    local = _exchange_time(now)
    stamp = local.isoformat()
    if local.weekday() >= 5:
        return {"session": "CLOSED", "is_open": False, "reason": "weekend", "timestamp_et": stamp}
    if local.date() in us_equity_holidays(local.year):
        return {"session": "CLOSED", "is_open": False, "reason": "holiday", "timestamp_et": stamp}

    open_time, close_time = _regular_window()
    current = local.time().replace(second=0, microsecond=0)
    if PRE_OPEN <= current < open_time:
        return {"session": "PRE", "is_open": False, "reason": "pre_market", "timestamp_et": stamp}
    if open_time <= current < close_time:
        return {"session": "REG", "is_open": True, "reason": "regular_session", "timestamp_et": stamp}
    if POST_OPEN <= current < POST_CLOSE:
        return {"session": "POST", "is_open": False, "reason": "after_hours", "timestamp_et": stamp}
    return {"session": "CLOSED", "is_open": False, "reason": "overnight", "timestamp_et": stamp}


def get_market_session(now: datetime | None = None) -> str:
    return str(market_status(now)["session"])


def is_trading_session(now: datetime | None = None) -> bool:
    return get_market_session(now) == "REG"


def minutes_to_close(now: datetime | None = None) -> float | None:
    """Minutes left in the regular session, or None outside it."""
    if not is_trading_session(now):
        return None
    local = _exchange_time(now)
    _, close_time = _regular_window()
    close_at = local.replace(hour=close_time.hour, minute=close_time.minute, second=0, microsecond=0)
    return (close_at - local).total_seconds() / 60
