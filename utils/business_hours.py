"""
Business hours — pure helpers over a tenant's weekly sending schedule.

A schedule maps weekday keys to a window or a closed marker:

    {"segunda": "09:00-18:00", ..., "sabado": "08:00-12:00", "domingo": "closed"}

Keys follow the Portuguese weekday names used by tenant configuration;
English names are accepted as aliases. Missing days count as closed.
"""
from __future__ import annotations

import structlog
from datetime import datetime, time, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from core.exceptions import InvalidScheduleError
from models.schemas import CLOSED_MARKERS

logger = structlog.get_logger()

# Indexed by date.weekday() (Monday == 0)
WEEKDAY_KEYS = ("segunda", "terca", "quarta", "quinta", "sexta", "sabado", "domingo")
_WEEKDAY_ALIASES = {
    0: ("segunda", "segunda-feira", "monday", "mon"),
    1: ("terca", "terça", "terca-feira", "terça-feira", "tuesday", "tue"),
    2: ("quarta", "quarta-feira", "wednesday", "wed"),
    3: ("quinta", "quinta-feira", "thursday", "thu"),
    4: ("sexta", "sexta-feira", "friday", "fri"),
    5: ("sabado", "sábado", "saturday", "sat"),
    6: ("domingo", "sunday", "sun"),
}

LOOKAHEAD_DAYS = 7


def _resolve_tz(tz: Optional[tzinfo | str]) -> Optional[tzinfo]:
    if tz is None or isinstance(tz, tzinfo):
        return tz
    return ZoneInfo(tz)


def _localize(instant: datetime, tz: Optional[tzinfo]) -> datetime:
    """Aware instants move into ``tz``; naive ones are already local wall time."""
    if tz is None or instant.tzinfo is None:
        return instant
    return instant.astimezone(tz)


def day_window(schedule: dict[str, str], weekday: int) -> Optional[tuple[time, time]]:
    """Return (start, end) for the weekday, or None when closed."""
    lowered = {k.strip().lower(): v for k, v in schedule.items()}
    raw = None
    for alias in _WEEKDAY_ALIASES[weekday]:
        if alias in lowered:
            raw = lowered[alias]
            break
    if raw is None:
        return None
    return parse_window(raw)


def parse_window(raw: str) -> Optional[tuple[time, time]]:
    text = (raw or "").strip().lower()
    if not text or text in CLOSED_MARKERS:
        return None
    try:
        start_s, end_s = text.split("-")
        sh, sm = (int(p) for p in start_s.split(":"))
        eh, em = (int(p) for p in end_s.split(":"))
        start = time(sh, sm)
        # "24:00" closes at end of day
        end = time.max if (eh, em) == (24, 0) else time(eh, em)
    except ValueError as e:
        raise InvalidScheduleError(f"Invalid business-hours window: {raw!r}") from e
    if start >= end:
        raise InvalidScheduleError(f"Business-hours window must start before it ends: {raw!r}")
    return start, end


def is_within_business_hours(
    schedule: dict[str, str],
    instant: datetime,
    tz: Optional[tzinfo | str] = None,
) -> bool:
    """True when ``instant`` falls inside [start, end) of its local day's window."""
    local = _localize(instant, _resolve_tz(tz))
    window = day_window(schedule, local.weekday())
    if window is None:
        return False
    start, end = window
    now_t = local.time()
    return start <= now_t < end


def get_next_valid_slot(
    schedule: dict[str, str],
    from_instant: datetime,
    tz: Optional[tzinfo | str] = None,
) -> datetime:
    """
    Earliest permissible send instant at or after ``from_instant``.

    Same day: before the window → clamp to its start; inside → unchanged;
    past the end or closed → look at the following days, returning the first
    open day's start. With nothing open in the next seven days the input is
    returned unchanged.
    """
    zone = _resolve_tz(tz)
    local = _localize(from_instant, zone)

    for offset in range(LOOKAHEAD_DAYS + 1):
        day = local + timedelta(days=offset)
        window = day_window(schedule, day.weekday())
        if window is None:
            continue
        start, end = window
        day_start = _at(day, start, zone)

        if offset == 0:
            now_t = local.time()
            if now_t < start:
                return day_start
            if now_t < end:
                return from_instant
            continue

        return day_start

    logger.warning("business_hours_no_open_day",
                   from_instant=from_instant.isoformat(),
                   lookahead_days=LOOKAHEAD_DAYS)
    return from_instant


def _at(day: datetime, t: time, zone: Optional[tzinfo]) -> datetime:
    """``day``'s calendar date at wall-clock ``t``, in the same zone."""
    naive = datetime.combine(day.date(), t.replace(tzinfo=None))
    if day.tzinfo is None:
        return naive
    # Re-attach the zone so DST offsets match the target date
    return naive.replace(tzinfo=zone or day.tzinfo)


def start_of_next_day(instant: datetime, tz: Optional[tzinfo | str] = None) -> datetime:
    """Local midnight of the day after ``instant``."""
    zone = _resolve_tz(tz)
    local = _localize(instant, zone)
    return _at(local + timedelta(days=1), time(0, 0), zone)
