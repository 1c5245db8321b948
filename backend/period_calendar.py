"""
School-year calendar: weeks and fortnights numbered from the first Monday of
September, plus the working-day countdown used by the compliance dashboards.

Every function takes the reference moment explicitly (`now` / `today`); nothing
here reads the system clock.
"""
import math
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict

DateLike = Union[date, datetime]

SCHOOL_YEAR_ROLLOVER_MONTH = 7  # July onwards belongs to the next school year
SCHOOL_YEAR_START_MONTH = 9
SCHOOL_YEAR_END_MONTH, SCHOOL_YEAR_END_DAY = 6, 30

# Largest period number accepted from API callers; period dates stay inside
# the range `date` can represent.
MAX_PERIOD_NUMBER = 1000

URGENCY_THRESHOLDS = [
    (20, "critical"),
    (50, "high"),
    (80, "medium"),
]


class PeriodType(str, Enum):
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"


class SchoolYear(BaseModel):
    model_config = ConfigDict(frozen=True)
    start_year: int
    end_year: int

    @property
    def name(self) -> str:
        return f"{self.start_year}-{self.end_year}"


class Period(BaseModel):
    model_config = ConfigDict(frozen=True)
    number: int
    kind: PeriodType
    start: date
    end: date
    label: str
    short_label: str
    display: str
    weeks: List[int]
    is_current: bool = False


class RemainingDaysResult(BaseModel):
    period: Period
    period_label: str
    total_work_days: int
    remaining_count: int
    remaining_dates: List[date]
    is_weekend: bool
    today_is_work_day: bool
    urgency_level: str


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def clamp_period_number(number: int) -> int:
    return max(1, int(number))


def format_date(day: DateLike) -> str:
    return _as_date(day).strftime("%d/%m/%Y")


def resolve_school_year(now: DateLike) -> SchoolYear:
    if now.month >= SCHOOL_YEAR_ROLLOVER_MONTH:
        return SchoolYear(start_year=now.year, end_year=now.year + 1)
    return SchoolYear(start_year=now.year - 1, end_year=now.year)


def week_one_monday(school_year: SchoolYear) -> date:
    """First Monday on or after September 1 of the school year's start year."""
    first = date(school_year.start_year, SCHOOL_YEAR_START_MONTH, 1)
    return first + timedelta(days=(7 - first.weekday()) % 7)


def current_week_number(now: DateLike) -> int:
    """Week containing `now`; anything before the week-1 Monday is week 1."""
    anchor = week_one_monday(resolve_school_year(now))
    elapsed_days = (_as_date(now) - anchor).days
    if elapsed_days < 0:
        return 1
    return elapsed_days // 7 + 1


def current_fortnight_number(now: DateLike) -> int:
    return math.ceil(current_week_number(now) / 2)


def current_period_number(period_type: PeriodType, now: DateLike) -> int:
    if PeriodType(period_type) == PeriodType.WEEKLY:
        return current_week_number(now)
    return current_fortnight_number(now)


def week_range(week_number: int, now: DateLike) -> Period:
    week_number = clamp_period_number(week_number)
    anchor = week_one_monday(resolve_school_year(now))
    start = anchor + timedelta(days=(week_number - 1) * 7)
    end = start + timedelta(days=6)
    return Period(
        number=week_number,
        kind=PeriodType.WEEKLY,
        start=start,
        end=end,
        label=f"Semana {week_number}",
        short_label=f"S{week_number}",
        display=f"{format_date(start)} - {format_date(end)}",
        weeks=[week_number],
    )


def fortnight_range(fortnight_number: int, now: DateLike) -> Period:
    fortnight_number = clamp_period_number(fortnight_number)
    start_week = 2 * fortnight_number - 1
    end_week = start_week + 1
    first = week_range(start_week, now)
    second = week_range(end_week, now)
    return Period(
        number=fortnight_number,
        kind=PeriodType.FORTNIGHTLY,
        start=first.start,
        end=second.end,
        label=f"Quincena {fortnight_number}",
        short_label=f"Q{fortnight_number}",
        display=f"{format_date(first.start)} - {format_date(second.end)}",
        weeks=[start_week, end_week],
    )


def period_range(period_type: PeriodType, number: int, now: DateLike) -> Period:
    if PeriodType(period_type) == PeriodType.WEEKLY:
        return week_range(number, now)
    return fortnight_range(number, now)


def upcoming_periods(period_type: PeriodType, count: int, now: DateLike) -> List[Period]:
    current = current_period_number(period_type, now)
    return [period_range(period_type, current + offset, now) for offset in range(count)]


def recent_period_numbers(period_type: PeriodType, count: int, now: DateLike) -> List[int]:
    """`count` numbers ending at the current period, ascending, floored at 1."""
    current = current_period_number(period_type, now)
    return [clamp_period_number(current - offset) for offset in range(count - 1, -1, -1)]


def recent_periods(period_type: PeriodType, count: int, now: DateLike) -> List[Period]:
    return [period_range(period_type, number, now) for number in recent_period_numbers(period_type, count, now)]


def upcoming_weeks(count: int, now: DateLike) -> List[Period]:
    return upcoming_periods(PeriodType.WEEKLY, count, now)


def upcoming_fortnights(count: int, now: DateLike) -> List[Period]:
    return upcoming_periods(PeriodType.FORTNIGHTLY, count, now)


def recent_weeks(count: int, now: DateLike) -> List[Period]:
    return recent_periods(PeriodType.WEEKLY, count, now)


def recent_fortnights(count: int, now: DateLike) -> List[Period]:
    return recent_periods(PeriodType.FORTNIGHTLY, count, now)


def all_school_weeks(now: DateLike) -> List[Period]:
    """All weeks whose Monday falls on or before June 30 of the closing year."""
    school_year = resolve_school_year(now)
    last_day = date(school_year.end_year, SCHOOL_YEAR_END_MONTH, SCHOOL_YEAR_END_DAY)
    current = current_week_number(now)
    weeks: List[Period] = []
    number = 1
    week = week_range(number, now)
    while week.start <= last_day:
        weeks.append(week.model_copy(update={"is_current": number == current}))
        number += 1
        week = week_range(number, now)
    return weeks


def all_school_fortnights(now: DateLike) -> List[Period]:
    weeks = all_school_weeks(now)
    current = current_fortnight_number(now)
    fortnights: List[Period] = []
    for index in range(0, len(weeks), 2):
        first = weeks[index]
        # A lone trailing week closes the year as a one-week fortnight.
        second = weeks[index + 1] if index + 1 < len(weeks) else first
        number = index // 2 + 1
        fortnights.append(
            Period(
                number=number,
                kind=PeriodType.FORTNIGHTLY,
                start=first.start,
                end=second.end,
                label=f"Quincena {number}",
                short_label=f"Q{number}",
                display=f"{format_date(first.start)} - {format_date(second.end)}",
                weeks=sorted({first.number, second.number}),
                is_current=number == current,
            )
        )
    return fortnights


def is_work_day(day: DateLike) -> bool:
    return _as_date(day).weekday() < 5


def next_work_day(today: DateLike) -> date:
    candidate = _as_date(today) + timedelta(days=1)
    while not is_work_day(candidate):
        candidate += timedelta(days=1)
    return candidate


def work_days_between(start: date, end: date) -> List[date]:
    days: List[date] = []
    current = start
    while current <= end:
        if is_work_day(current):
            days.append(current)
        current += timedelta(days=1)
    return days


def urgency_level(remaining: int, total: int) -> str:
    if total <= 0:
        return "low"
    percentage = remaining / total * 100
    for threshold, level in URGENCY_THRESHOLDS:
        if percentage <= threshold:
            return level
    return "low"


def remaining_work_days(
    period_type: PeriodType,
    period_number: Optional[int],
    today: DateLike,
) -> RemainingDaysResult:
    period_type = PeriodType(period_type)
    if period_number is None:
        period_number = current_period_number(period_type, today)
    period = period_range(period_type, period_number, today)
    day = _as_date(today)

    work_days = work_days_between(period.start, period.end)
    remaining = [d for d in work_days if d >= day]
    return RemainingDaysResult(
        period=period,
        period_label=period.label,
        total_work_days=len(work_days),
        remaining_count=len(remaining),
        remaining_dates=remaining,
        is_weekend=not is_work_day(day),
        today_is_work_day=is_work_day(day),
        urgency_level=urgency_level(len(remaining), len(work_days)),
    )
