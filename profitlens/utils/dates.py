"""
Calendar helpers

All dates are ISO ``YYYY-MM-DD`` strings on the wire. A calendar date is a
store-local day: UTC shifted by the store's offset in minutes (0 keeps UTC).
Period keys are ISO-8601 weeks (``2024-W01``) and months (``2024-01``).
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from profitlens.exceptions import InvalidDateRangeError

DAY_MS = 24 * 60 * 60 * 1000

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WEEK_KEY = re.compile(r"^(\d{4})-W(\d{2})$")
_MONTH_KEY = re.compile(r"^(\d{4})-(\d{2})$")

PERIOD_WEEK = "week"
PERIOD_MONTH = "month"


def parse_iso_date(value: Any) -> date:
    """Parse a strict ``YYYY-MM-DD`` string"""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise InvalidDateRangeError(f"Invalid date string: {value!r}")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise InvalidDateRangeError(f"Invalid date string: {value!r}") from e


def date_to_ms(day: date) -> int:
    """Epoch milliseconds at 00:00:00.000 UTC"""
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp() * 1000)


def day_bounds_ms(day: date, offset_minutes: int = 0) -> Tuple[int, int]:
    """Inclusive [start, end] of a store-local calendar day in epoch milliseconds"""
    start = date_to_ms(day) - offset_minutes * 60_000
    return start, start + DAY_MS - 1


def ms_to_date_string(ms: Any, offset_minutes: int = 0) -> Optional[str]:
    """Calendar date of an epoch-ms timestamp, shifted by a store offset"""
    if isinstance(ms, bool) or not isinstance(ms, (int, float)):
        return None
    try:
        moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    if offset_minutes:
        moment = moment + timedelta(minutes=offset_minutes)
    return moment.date().isoformat()


@dataclass(frozen=True)
class DateRange:
    """
    Inclusive calendar date range, validated on construction.

    ``offset_minutes`` is the store offset the dates are local to; it moves
    ``start_ms``/``end_ms`` but never the dates themselves.
    """

    start_date: str
    end_date: str
    offset_minutes: int = 0

    def __post_init__(self) -> None:
        if not self.start_date or not self.end_date:
            raise InvalidDateRangeError("Both startDate and endDate are required")
        start = parse_iso_date(self.start_date)
        end = parse_iso_date(self.end_date)
        if start > end:
            raise InvalidDateRangeError("startDate must be before or equal to endDate")
        object.__setattr__(self, "start_date", start.isoformat())
        object.__setattr__(self, "end_date", end.isoformat())

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "DateRange":
        """Build from ``{"startDate": ..., "endDate": ...}``"""
        if not isinstance(payload, Mapping):
            raise InvalidDateRangeError("Date range must be an object")
        return cls(
            start_date=payload.get("startDate") or payload.get("start_date"),
            end_date=payload.get("endDate") or payload.get("end_date"),
        )

    @classmethod
    def coerce(cls, value: Any) -> "DateRange":
        if isinstance(value, DateRange):
            return value
        return cls.from_wire(value)

    def to_wire(self) -> Dict[str, str]:
        return {"startDate": self.start_date, "endDate": self.end_date}

    @property
    def start(self) -> date:
        return date.fromisoformat(self.start_date)

    @property
    def end(self) -> date:
        return date.fromisoformat(self.end_date)

    @property
    def start_ms(self) -> int:
        return day_bounds_ms(self.start, self.offset_minutes)[0]

    @property
    def end_ms(self) -> int:
        return day_bounds_ms(self.end, self.offset_minutes)[1]

    def with_offset(self, offset_minutes: int) -> "DateRange":
        return DateRange(self.start_date, self.end_date, offset_minutes or 0)

    @property
    def day_count(self) -> int:
        return (self.end - self.start).days + 1

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def date_strings(self) -> List[str]:
        return [day.isoformat() for day in self.days()]

    def shifted(self, days: int) -> "DateRange":
        return DateRange(
            (self.start + timedelta(days=days)).isoformat(),
            (self.end + timedelta(days=days)).isoformat(),
            self.offset_minutes,
        )

    def previous_period(self) -> "DateRange":
        """Range of equal length ending the day before this one starts"""
        return self.shifted(-self.day_count)


def days_in_month(day: date) -> int:
    first = day.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return (next_first - first).days


def days_in_quarter(day: date) -> int:
    first_month = 3 * ((day.month - 1) // 3) + 1
    start = date(day.year, first_month, 1)
    if first_month == 10:
        end = date(day.year + 1, 1, 1)
    else:
        end = date(day.year, first_month + 3, 1)
    return (end - start).days


def days_in_year(day: date) -> int:
    return (date(day.year + 1, 1, 1) - date(day.year, 1, 1)).days


def iso_week_key(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def month_key(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


def period_key(day: date, period_type: str) -> str:
    if period_type == PERIOD_WEEK:
        return iso_week_key(day)
    if period_type == PERIOD_MONTH:
        return month_key(day)
    raise ValueError(f"Unsupported period type: {period_type}")


def period_bounds(period_type: str, key: str) -> Tuple[date, date]:
    """First and last calendar day of a week or month key"""
    if period_type == PERIOD_WEEK:
        match = _WEEK_KEY.match(key)
        if not match:
            raise ValueError(f"Invalid week key: {key}")
        start = date.fromisocalendar(int(match.group(1)), int(match.group(2)), 1)
        return start, start + timedelta(days=6)
    if period_type == PERIOD_MONTH:
        match = _MONTH_KEY.match(key)
        if not match:
            raise ValueError(f"Invalid month key: {key}")
        start = date(int(match.group(1)), int(match.group(2)), 1)
        return start, start + timedelta(days=days_in_month(start) - 1)
    raise ValueError(f"Unsupported period type: {period_type}")


def covering_range(dates: List[date]) -> DateRange:
    """Smallest range containing every given date"""
    if not dates:
        raise InvalidDateRangeError("At least one date is required")
    return DateRange(min(dates).isoformat(), max(dates).isoformat())
