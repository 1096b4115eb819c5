"""
Holiday calendars for campaigns that declare a no-send-on-holidays rule.

Calendars:
- "federal": U.S. federal holidays, weekend holidays moved to the observed day
- "florida": federal holidays plus Good Friday and the day after Thanksgiving

Easter-dependent dates come from dateutil.
"""
from datetime import date, timedelta
from functools import lru_cache
from typing import Callable, FrozenSet

from dateutil.easter import easter

MONDAY, THURSDAY = 0, 3


def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """nth (1-based) occurrence of weekday (0=Monday) in the month."""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset, weeks=n - 1)


def last_weekday(year: int, month: int, weekday: int) -> date:
    """Last occurrence of weekday (0=Monday) in the month."""
    next_month = date(year + month // 12, month % 12 + 1, 1)
    last = next_month - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def observed(day: date) -> date:
    """Saturday holidays are observed Friday, Sunday holidays Monday."""
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


@lru_cache(maxsize=16)
def federal_holidays(year: int) -> FrozenSet[date]:
    return frozenset({
        observed(date(year, 1, 1)),             # New Year's Day
        nth_weekday(year, 1, MONDAY, 3),        # Martin Luther King Jr. Day
        nth_weekday(year, 2, MONDAY, 3),        # Washington's Birthday
        last_weekday(year, 5, MONDAY),          # Memorial Day
        observed(date(year, 6, 19)),            # Juneteenth
        observed(date(year, 7, 4)),             # Independence Day
        nth_weekday(year, 9, MONDAY, 1),        # Labor Day
        nth_weekday(year, 10, MONDAY, 2),       # Columbus Day
        observed(date(year, 11, 11)),           # Veterans Day
        nth_weekday(year, 11, THURSDAY, 4),     # Thanksgiving
        observed(date(year, 12, 25)),           # Christmas Day
    })


@lru_cache(maxsize=16)
def florida_holidays(year: int) -> FrozenSet[date]:
    thanksgiving = nth_weekday(year, 11, THURSDAY, 4)
    return federal_holidays(year) | {
        easter(year) - timedelta(days=2),       # Good Friday
        thanksgiving + timedelta(days=1),
    }


HOLIDAY_CALENDARS: dict[str, Callable[[int], FrozenSet[date]]] = {
    "federal": federal_holidays,
    "florida": florida_holidays,
}


def is_holiday(day: date, calendar: str = "federal") -> bool:
    """True if day is a holiday in the named calendar. Unknown calendars raise KeyError."""
    return day in HOLIDAY_CALENDARS[calendar](day.year)
