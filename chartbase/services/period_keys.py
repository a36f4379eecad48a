"""
Period Key Codec

Maps calendar dates to chart period keys and back.

Weekly keys follow the "first Monday" convention (the same numbering as
SQLite's ``strftime('%W')``): the first Monday of the calendar year starts
week 01 and any earlier days of that year fall in week 00. The final week of
a year always runs a full seven days, so it ends on the day before the next
year's first Monday and covers the whole of that year's week 00.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, timedelta
from typing import Iterator

from chartbase.services.errors import InvalidPeriodKey, PeriodOutOfRange

WEEKLY = "weekly"
MONTHLY = "monthly"
SEASONAL = "seasonal"
YEARLY = "yearly"

PERIOD_TYPES = (WEEKLY, MONTHLY, SEASONAL, YEARLY)

# Winter spans December of the previous year through February.
SEASONS = ("winter", "spring", "summer", "fall")
_SEASON_BY_MONTH = {
    12: "winter", 1: "winter", 2: "winter",
    3: "spring", 4: "spring", 5: "spring",
    6: "summer", 7: "summer", 8: "summer",
    9: "fall", 10: "fall", 11: "fall",
}

_WEEKLY_RE = re.compile(r"^(\d{4})-W(\d{2})$")
_MONTHLY_RE = re.compile(r"^(\d{4})-(\d{2})$")
_SEASONAL_RE = re.compile(r"^(\d{4})-([A-Za-z]+)$")
_YEARLY_RE = re.compile(r"^(\d{4})$")

DEFAULT_MIN_DATE = date(1970, 1, 1)
# Stops short of December so no period of any type spills past year 9998.
DEFAULT_MAX_DATE = date(9998, 11, 30)

ONE_DAY = timedelta(days=1)


def first_monday(year: int) -> date:
    """Return the first Monday of ``year`` (the start of week 01)."""
    jan1 = date(year, 1, 1)
    return jan1 + timedelta(days=(7 - jan1.weekday()) % 7)


def last_week_number(year: int) -> int:
    """Return the number of the final week that starts within ``year``."""
    return (date(year, 12, 31) - first_monday(year)).days // 7 + 1


def week_number(d: date) -> int:
    """Week number of ``d`` within its calendar year (0 before the first Monday)."""
    monday = first_monday(d.year)
    if d < monday:
        return 0
    return (d - monday).days // 7 + 1


class PeriodKeyCodec:
    """
    Pure calendar logic for chart periods.

    Every method is a function of its arguments and the configured supported
    range; the codec keeps no other state and is safe to share across threads.
    """

    def __init__(
        self,
        min_date: date = DEFAULT_MIN_DATE,
        max_date: date = DEFAULT_MAX_DATE,
    ) -> None:
        if min_date > max_date:
            raise ValueError("min_date must not be after max_date")
        self.min_date = min_date
        self.max_date = max_date

    # ------------------------------------------------------------------
    # date -> key

    def date_to_weekly_key(self, d: date) -> str:
        self._check_date(WEEKLY, d)
        return f"{d.year:04d}-W{week_number(d):02d}"

    def date_to_monthly_key(self, d: date) -> str:
        self._check_date(MONTHLY, d)
        return f"{d.year:04d}-{d.month:02d}"

    def date_to_seasonal_key(self, d: date) -> str:
        self._check_date(SEASONAL, d)
        year = d.year + 1 if d.month == 12 else d.year
        return f"{year:04d}-{_SEASON_BY_MONTH[d.month]}"

    def date_to_yearly_key(self, d: date) -> str:
        self._check_date(YEARLY, d)
        return f"{d.year:04d}"

    def date_to_key(self, period_type: str, d: date) -> str:
        """Dispatch to the date-to-key mapping for ``period_type``."""
        if period_type == WEEKLY:
            return self.date_to_weekly_key(d)
        if period_type == MONTHLY:
            return self.date_to_monthly_key(d)
        if period_type == SEASONAL:
            return self.date_to_seasonal_key(d)
        if period_type == YEARLY:
            return self.date_to_yearly_key(d)
        raise InvalidPeriodKey(period_type, d.isoformat(), "unknown period type")

    def containing_key(self, period_type: str, d: date) -> str:
        """
        Key of the chart period that holds ``d``.

        Identical to :meth:`date_to_key` except that week 00 dates resolve to
        the previous year's final week, which is the chart covering them.
        """
        key = self.date_to_key(period_type, d)
        if period_type == WEEKLY and week_number(d) == 0:
            previous_year = d.year - 1
            key = f"{previous_year:04d}-W{last_week_number(previous_year):02d}"
        return key

    # ------------------------------------------------------------------
    # key -> date range

    def key_to_date_range(self, period_type: str, period_key: str) -> tuple[date, date]:
        """
        Inclusive ``(start, end)`` dates of a period.

        Raises:
            InvalidPeriodKey: malformed key or unknown period type
            PeriodOutOfRange: the period lies outside the supported range
        """
        if period_type == WEEKLY:
            start, end = self._weekly_range(period_key)
        elif period_type == MONTHLY:
            start, end = self._monthly_range(period_key)
        elif period_type == SEASONAL:
            start, end = self._seasonal_range(period_key)
        elif period_type == YEARLY:
            start, end = self._yearly_range(period_key)
        else:
            raise InvalidPeriodKey(period_type, period_key, "unknown period type")

        if end < self.min_date or start > self.max_date:
            raise PeriodOutOfRange(
                period_type,
                period_key,
                f"supported range is {self.min_date} to {self.max_date}",
            )
        return start, end

    def normalize_key(self, period_type: str, period_key: str) -> str:
        """Return the canonical spelling of a key (e.g. ``2024-Winter`` -> ``2024-winter``)."""
        start, _ = self.key_to_date_range(period_type, period_key)
        if period_type == WEEKLY:
            match = _WEEKLY_RE.match(period_key)
            return f"{int(match.group(1)):04d}-W{int(match.group(2)):02d}"
        if period_type == SEASONAL:
            return self.date_to_seasonal_key(start)
        return self.date_to_key(period_type, start)

    def chart_key(self, period_type: str, period_key: str) -> str:
        """
        Canonical key a chart may be stored under.

        Week 00 is rejected: its days belong to the previous year's last
        week, so a W00 chart would count them twice.
        """
        period_key = self.normalize_key(period_type, period_key)
        if period_type == WEEKLY and period_key.endswith("-W00"):
            start, _ = self.key_to_date_range(WEEKLY, period_key)
            raise InvalidPeriodKey(
                WEEKLY,
                period_key,
                f"week 00 is charted as {self.containing_key(WEEKLY, start)}",
            )
        return period_key

    def _weekly_range(self, period_key: str) -> tuple[date, date]:
        match = _WEEKLY_RE.match(period_key or "")
        if not match:
            raise InvalidPeriodKey(WEEKLY, period_key, "expected YYYY-Www")
        year, week = int(match.group(1)), int(match.group(2))
        self._check_year(WEEKLY, period_key, year)

        monday = first_monday(year)
        if week == 0:
            if monday.day == 1:
                raise InvalidPeriodKey(WEEKLY, period_key, f"{year} has no week 00")
            return date(year, 1, 1), monday - ONE_DAY

        if week > last_week_number(year):
            raise InvalidPeriodKey(WEEKLY, period_key, f"{year} has {last_week_number(year)} weeks")
        start = monday + timedelta(weeks=week - 1)
        return start, start + timedelta(days=6)

    def _monthly_range(self, period_key: str) -> tuple[date, date]:
        match = _MONTHLY_RE.match(period_key or "")
        if not match:
            raise InvalidPeriodKey(MONTHLY, period_key, "expected YYYY-MM")
        year, month = int(match.group(1)), int(match.group(2))
        self._check_year(MONTHLY, period_key, year)
        if not 1 <= month <= 12:
            raise InvalidPeriodKey(MONTHLY, period_key, "month must be 01-12")
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])

    def _seasonal_range(self, period_key: str) -> tuple[date, date]:
        match = _SEASONAL_RE.match(period_key or "")
        if not match or match.group(2).lower() not in SEASONS:
            raise InvalidPeriodKey(SEASONAL, period_key, "expected YYYY-winter|spring|summer|fall")
        year, season = int(match.group(1)), match.group(2).lower()
        self._check_year(SEASONAL, period_key, year)

        if season == "winter":
            if year < 2:
                raise PeriodOutOfRange(SEASONAL, period_key, "winter starts in the previous year")
            return date(year - 1, 12, 1), date(year, 2, calendar.monthrange(year, 2)[1])
        if season == "spring":
            return date(year, 3, 1), date(year, 5, 31)
        if season == "summer":
            return date(year, 6, 1), date(year, 8, 31)
        return date(year, 9, 1), date(year, 11, 30)

    def _yearly_range(self, period_key: str) -> tuple[date, date]:
        match = _YEARLY_RE.match(period_key or "")
        if not match:
            raise InvalidPeriodKey(YEARLY, period_key, "expected YYYY")
        year = int(match.group(1))
        self._check_year(YEARLY, period_key, year)
        return date(year, 1, 1), date(year, 12, 31)

    # ------------------------------------------------------------------
    # navigation & enumeration

    def next_key(self, period_type: str, period_key: str) -> str:
        """Calendar successor of a period (never a week 00 key)."""
        _, end = self.key_to_date_range(period_type, period_key)
        return self.containing_key(period_type, end + ONE_DAY)

    def previous_key(self, period_type: str, period_key: str) -> str:
        """Calendar predecessor of a period (never a week 00 key)."""
        start, _ = self.key_to_date_range(period_type, period_key)
        return self.containing_key(period_type, start - ONE_DAY)

    def enumerate_periods(self, period_type: str, from_date: date, to_date: date) -> list[str]:
        """
        Every period key intersecting ``[from_date, to_date]``, oldest first.

        Weekly enumeration skips week 00 keys because the previous year's
        final week already covers those days.
        """
        return list(self.iter_periods(period_type, from_date, to_date))

    def iter_periods(self, period_type: str, from_date: date, to_date: date) -> Iterator[str]:
        if from_date > to_date:
            return
        self._check_date(period_type, from_date)
        self._check_date(period_type, to_date)

        key = self.containing_key(period_type, from_date)
        while True:
            start, end = self.key_to_date_range(period_type, key)
            if start > to_date:
                return
            yield key
            if end >= self.max_date:
                return
            key = self.containing_key(period_type, end + ONE_DAY)

    def current_key(self, period_type: str, today: date | None = None) -> str:
        """Key of the in-progress period containing ``today``."""
        return self.containing_key(period_type, today or date.today())

    def is_complete(self, period_type: str, period_key: str, today: date | None = None) -> bool:
        """True once the whole period lies strictly before ``today``."""
        _, end = self.key_to_date_range(period_type, period_key)
        return end < (today or date.today())

    def format_key(self, period_type: str, period_key: str) -> str:
        """Human readable label, e.g. ``Nov 25 - Dec 1, 2024`` for a week."""
        start, end = self.key_to_date_range(period_type, period_key)
        if period_type == WEEKLY:
            if start.year == end.year:
                return f"{start:%b} {start.day} - {end:%b} {end.day}, {end.year}"
            return f"{start:%b} {start.day}, {start.year} - {end:%b} {end.day}, {end.year}"
        if period_type == MONTHLY:
            return f"{start:%B} {start.year}"
        if period_type == SEASONAL:
            season = self.normalize_key(SEASONAL, period_key).split("-", 1)[1]
            return f"{season.capitalize()} {end.year}"
        return str(start.year)

    # ------------------------------------------------------------------

    def _check_date(self, period_type: str, d: date) -> None:
        if d < self.min_date or d > self.max_date:
            raise PeriodOutOfRange(
                period_type,
                d.isoformat(),
                f"supported range is {self.min_date} to {self.max_date}",
            )

    def _check_year(self, period_type: str, period_key: str, year: int) -> None:
        if year < 1 or year > DEFAULT_MAX_DATE.year:
            raise PeriodOutOfRange(period_type, period_key, "year outside the calendar")


_codec: PeriodKeyCodec | None = None


def get_period_codec() -> PeriodKeyCodec:
    """Get the singleton PeriodKeyCodec with the default supported range."""
    global _codec
    if _codec is None:
        _codec = PeriodKeyCodec()
    return _codec
