"""
Observation compliance: who has been observed inside their tenure-dependent
window, rolled up per coordinator and globally, plus historical trends.

All functions work on a snapshot already fetched from the store (plain row
dicts shaped like the `teachers`, `profiles` and `observations` collections).
"""
import logging
import math
from collections import defaultdict
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from period_calendar import (
    DateLike,
    Period,
    PeriodType,
    fortnight_range,
    period_range,
    recent_period_numbers,
    week_range,
)
from rubric import DOMAIN_IDS, domain_percentages

logger = logging.getLogger(__name__)

TENURE_NEW = "new"
TENURE_TENURED = "tenured"

COMPLIANT_RATE = 100
PARTIAL_RATE = 50

END_OF_DAY = time(23, 59, 59, 999000)

ObservationIndex = Dict[str, List[datetime]]
PeriodMetric = Callable[[Period], Optional[Dict[str, Any]]]


class ViewerScope(BaseModel):
    role: Optional[str] = None
    school_id: Optional[str] = None


class CoordinatorCompliance(BaseModel):
    coordinator_id: str
    coordinator_name: Optional[str] = None
    coordinator_email: Optional[str] = None
    school_id: Optional[str] = None
    total_teachers: int = 0
    observed_count: int = 0
    compliance_rate: float = 0.0
    status: str = "non-compliant"
    pending_teachers: List[str] = []
    pending_names: str = ""


class ComplianceSummary(BaseModel):
    total_coordinators: int = 0
    total_teachers: int = 0
    observed_count: int = 0
    overall_compliance_rate: float = 0.0
    coordinators: List[CoordinatorCompliance] = []
    week: Optional[Period] = None
    fortnight: Optional[Period] = None


class TrendPoint(BaseModel):
    model_config = ConfigDict(frozen=True)
    period: int
    kind: PeriodType
    label: str
    full_label: str
    date_range: str
    start: date
    end: date
    has_data: bool
    values: Optional[Dict[str, Any]] = None


def parse_timestamp(value: Any, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Observation timestamp as naive local wall-clock time.

    Aware values are converted to `tz`, or to the host's local zone when `tz`
    is None, before the offset is dropped. Naive values are taken as already
    local. Callers that know the school zone should always pass it.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Skipping observation with unparseable created_at %r", value)
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz).replace(tzinfo=None)
    return parsed


def day_bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    """[start 00:00:00.000, end 23:59:59.999]; every window check goes through here."""
    return datetime.combine(start, time.min), datetime.combine(end, END_OF_DAY)


def in_window(timestamp: datetime, period: Period) -> bool:
    window_start, window_end = day_bounds(period.start, period.end)
    return window_start <= timestamp <= window_end


def index_observations(observations: Iterable[Dict[str, Any]], tz: Optional[tzinfo] = None) -> ObservationIndex:
    index: ObservationIndex = defaultdict(list)
    for observation in observations:
        teacher_id = observation.get("teacher_id")
        timestamp = parse_timestamp(observation.get("created_at"), tz)
        if teacher_id is None or timestamp is None:
            continue
        index[teacher_id].append(timestamp)
    return index


def is_active(teacher: Dict[str, Any]) -> bool:
    return teacher.get("is_active", True) is not False


def applicable_window(teacher: Dict[str, Any], week: Period, fortnight: Period) -> Period:
    """New teachers are due every week, tenured teachers every fortnight."""
    if teacher.get("tenure_status") == TENURE_NEW:
        return week
    return fortnight


def is_teacher_compliant(
    teacher: Dict[str, Any],
    observation_index: ObservationIndex,
    week: Period,
    fortnight: Period,
) -> bool:
    window = applicable_window(teacher, week, fortnight)
    return any(in_window(timestamp, window) for timestamp in observation_index.get(teacher.get("id"), []))


def compliance_rate(observed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(observed / total * 100, 1)


def compliance_status(rate: float) -> str:
    if rate >= COMPLIANT_RATE:
        return "compliant"
    if rate >= PARTIAL_RATE:
        return "partial"
    return "non-compliant"


def scoped_teachers(
    coordinator: Dict[str, Any],
    teachers: Iterable[Dict[str, Any]],
    viewer: Optional[ViewerScope],
) -> List[Dict[str, Any]]:
    result = [
        teacher
        for teacher in teachers
        if teacher.get("coordinator_id") == coordinator.get("id") and is_active(teacher)
    ]
    if viewer is not None and viewer.role == "director" and viewer.school_id:
        result = [teacher for teacher in result if teacher.get("school_id") == viewer.school_id]
    return result


def compute_compliance(
    coordinators: List[Dict[str, Any]],
    teachers: List[Dict[str, Any]],
    observations: Any,
    viewer: Optional[ViewerScope],
    week: Period,
    fortnight: Period,
    tz: Optional[tzinfo] = None,
) -> ComplianceSummary:
    """Per-coordinator and global compliance for the given week/fortnight windows.

    `observations` may be raw rows or an index built by `index_observations`.
    Teachers without a coordinator or marked inactive never enter a rollup.
    """
    if not coordinators:
        return ComplianceSummary(week=week, fortnight=fortnight)

    observation_index = observations if isinstance(observations, dict) else index_observations(observations, tz)

    rows: List[CoordinatorCompliance] = []
    for coordinator in coordinators:
        coordinator_teachers = scoped_teachers(coordinator, teachers, viewer)
        observed = 0
        pending: List[str] = []
        for teacher in coordinator_teachers:
            if is_teacher_compliant(teacher, observation_index, week, fortnight):
                observed += 1
            else:
                pending.append(teacher.get("full_name") or "")
        rate = compliance_rate(observed, len(coordinator_teachers))
        rows.append(
            CoordinatorCompliance(
                coordinator_id=coordinator.get("id"),
                coordinator_name=coordinator.get("full_name"),
                coordinator_email=coordinator.get("email"),
                school_id=coordinator.get("school_id"),
                total_teachers=len(coordinator_teachers),
                observed_count=observed,
                compliance_rate=rate,
                status=compliance_status(rate),
                pending_teachers=pending,
                pending_names=", ".join(pending),
            )
        )

    total_teachers = sum(row.total_teachers for row in rows)
    total_observed = sum(row.observed_count for row in rows)
    return ComplianceSummary(
        total_coordinators=len(rows),
        total_teachers=total_teachers,
        observed_count=total_observed,
        overall_compliance_rate=compliance_rate(total_observed, total_teachers),
        coordinators=rows,
        week=week,
        fortnight=fortnight,
    )


def unassigned_teachers(teachers: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [teacher for teacher in teachers if not teacher.get("coordinator_id") and is_active(teacher)]


def windows_at_period_end(period: Period, now: DateLike) -> Tuple[Period, Period]:
    """Week and fortnight that were current on the period's last day."""
    last_week = period.weeks[-1]
    return week_range(last_week, now), fortnight_range(math.ceil(last_week / 2), now)


def build_trend(
    period_type: PeriodType,
    period_count: int,
    compute_fn: PeriodMetric,
    now: DateLike,
) -> List[TrendPoint]:
    """Label `period_count` periods ending at the current one and evaluate `compute_fn` on each.

    `compute_fn` returning None marks the period as having no data; the builder
    never fills in values of its own.
    """
    period_type = PeriodType(period_type)
    points: List[TrendPoint] = []
    for number in recent_period_numbers(period_type, period_count, now):
        period = period_range(period_type, number, now)
        values = compute_fn(period)
        points.append(
            TrendPoint(
                period=number,
                kind=period_type,
                label=period.short_label,
                full_label=period.label,
                date_range=period.display,
                start=period.start,
                end=period.end,
                has_data=values is not None,
                values=values,
            )
        )
    return points


def compliance_metric(
    coordinators: List[Dict[str, Any]],
    teachers: List[Dict[str, Any]],
    observations: List[Dict[str, Any]],
    viewer: Optional[ViewerScope],
    now: DateLike,
    tz: Optional[tzinfo] = None,
) -> PeriodMetric:
    observation_index = index_observations(observations, tz)

    def metric(period: Period) -> Optional[Dict[str, Any]]:
        week, fortnight = windows_at_period_end(period, now)
        summary = compute_compliance(coordinators, teachers, observation_index, viewer, week, fortnight)
        if summary.total_teachers == 0:
            return None
        return {
            "compliance_rate": summary.overall_compliance_rate,
            "total_teachers": summary.total_teachers,
            "observed_count": summary.observed_count,
            "status": compliance_status(summary.overall_compliance_rate),
        }

    return metric


def domain_metric(observations: List[Dict[str, Any]], tz: Optional[tzinfo] = None) -> PeriodMetric:
    """Mean rubric-domain percentage of the observations recorded in each period."""
    parsed = [
        (parse_timestamp(observation.get("created_at"), tz), observation.get("template_data") or {})
        for observation in observations
    ]

    def metric(period: Period) -> Optional[Dict[str, Any]]:
        totals: Dict[str, List[float]] = {domain_id: [] for domain_id in DOMAIN_IDS}
        for timestamp, template_data in parsed:
            if timestamp is None or not in_window(timestamp, period):
                continue
            for domain_id, percentage in domain_percentages(template_data).items():
                if percentage is not None:
                    totals[domain_id].append(percentage)
        if not any(totals.values()):
            return None
        return {
            domain_id: round(sum(values) / len(values), 1) if values else None
            for domain_id, values in totals.items()
        }

    return metric


def coordinator_history(
    coordinator_id: str,
    coordinators: List[Dict[str, Any]],
    teachers: List[Dict[str, Any]],
    observations: List[Dict[str, Any]],
    week_count: int,
    now: DateLike,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    coordinator = next((c for c in coordinators if c.get("id") == coordinator_id), None)
    if coordinator is None:
        return []
    observation_index = index_observations(observations, tz)
    history: List[Dict[str, Any]] = []
    for number in recent_period_numbers(PeriodType.WEEKLY, week_count, now):
        week = week_range(number, now)
        week, fortnight = windows_at_period_end(week, now)
        summary = compute_compliance([coordinator], teachers, observation_index, None, week, fortnight)
        history.append(
            {
                "week_number": number,
                "date_range": week.display,
                "start": week.start,
                "end": week.end,
                "total_teachers": summary.total_teachers,
                "observed_count": summary.observed_count,
                "compliance_rate": summary.overall_compliance_rate,
                "status": compliance_status(summary.overall_compliance_rate),
            }
        )
    return history


def earliest_window_start(periods: Iterable[Period]) -> Optional[date]:
    starts = [period.start for period in periods]
    return min(starts) if starts else None


def fetch_floor(periods: Iterable[Period], buffer_days: int = 30) -> Optional[datetime]:
    """Lower bound for the observation query covering every window in `periods`."""
    start = earliest_window_start(periods)
    if start is None:
        return None
    return datetime.combine(start - timedelta(days=buffer_days), time.min)
