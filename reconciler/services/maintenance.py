from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Iterable, Optional

from reconciler.errors import ConfigurationError

_DAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_WINDOW_RE = re.compile(
    r"^(?:(?P<days>[a-z,\-]+)\s+)?(?P<start>\d{1,2}:\d{2})\s*-\s*(?P<end>\d{1,2}:\d{2})$"
)


@dataclass(frozen=True)
class MaintenanceWindow:
    """A daily UTC time range, optionally limited to some weekdays.

    ``start > end`` wraps midnight; the weekday is the one the window opened on.
    """

    days: frozenset[int]
    start: time
    end: time

    def contains(self, moment: datetime) -> bool:
        current = moment.astimezone(timezone.utc)
        clock = current.time().replace(tzinfo=None)
        weekday = current.weekday()
        if self.start <= self.end:
            return weekday in self.days and self.start <= clock < self.end
        if clock >= self.start:
            return weekday in self.days
        return (weekday - 1) % 7 in self.days and clock < self.end


def _parse_clock(raw: str, expression: str) -> time:
    hours, minutes = (int(part) for part in raw.split(":", 1))
    if hours > 23 or minutes > 59:
        raise ConfigurationError("maintenance.parse", f"invalid time in window {expression!r}")
    return time(hour=hours, minute=minutes)


def _parse_days(raw: Optional[str], expression: str) -> frozenset[int]:
    if not raw:
        return frozenset(range(7))
    days: set[int] = set()
    for item in raw.split(","):
        if "-" in item:
            first, last = item.split("-", 1)
            if first not in _DAYS or last not in _DAYS:
                raise ConfigurationError("maintenance.parse", f"invalid day range in window {expression!r}")
            start, end = _DAYS.index(first), _DAYS.index(last)
            span = range(start, end + 1) if start <= end else [*range(start, 7), *range(0, end + 1)]
            days.update(span)
        elif item in _DAYS:
            days.add(_DAYS.index(item))
        else:
            raise ConfigurationError("maintenance.parse", f"invalid day {item!r} in window {expression!r}")
    return frozenset(days)


def parse_window(expression: str) -> MaintenanceWindow:
    match = _WINDOW_RE.match(expression.strip().lower())
    if match is None:
        raise ConfigurationError(
            "maintenance.parse",
            f"window {expression!r} must look like '[mon-fri ]HH:MM-HH:MM'",
        )
    start = _parse_clock(match.group("start"), expression)
    end = _parse_clock(match.group("end"), expression)
    if start == end:
        raise ConfigurationError("maintenance.parse", f"empty window {expression!r}")
    return MaintenanceWindow(
        days=_parse_days(match.group("days"), expression),
        start=start,
        end=end,
    )


def within_maintenance_windows(expressions: Iterable[str], moment: datetime) -> bool:
    """True when ``moment`` falls in any window; no windows means always allowed."""
    windows = [parse_window(item) for item in expressions if item.strip()]
    if not windows:
        return True
    return any(window.contains(moment) for window in windows)
