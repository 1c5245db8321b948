"""Follow-up visits scheduled into upcoming school weeks or fortnights."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from period_calendar import DateLike, PeriodType, clamp_period_number, period_range

STATUS_SCHEDULED = "scheduled"


def schedule_follow_ups(
    teacher_id: str,
    coordinator_id: Optional[str],
    period_type: PeriodType,
    period_numbers: Iterable[int],
    now: DateLike,
    notes: str = "",
    action_plan: Optional[Any] = None,
) -> List[Dict[str, Any]]:
    """One `follow_ups` row per selected period, dated from that period's range.

    Numbers below 1 are clamped and duplicates collapse into a single row.
    """
    period_type = PeriodType(period_type)
    number_key = "week_number" if period_type == PeriodType.WEEKLY else "fortnight_number"
    created_at = datetime.now(timezone.utc).isoformat()
    records: List[Dict[str, Any]] = []
    for number in sorted({clamp_period_number(n) for n in period_numbers}):
        period = period_range(period_type, number, now)
        records.append(
            {
                "id": str(uuid.uuid4()),
                "teacher_id": teacher_id,
                "coordinator_id": coordinator_id,
                "type": period_type.value,
                number_key: number,
                "scheduled_date": period.start.isoformat(),
                "end_date": period.end.isoformat(),
                "period_label": period.label,
                "notes": notes,
                "action_plan": action_plan,
                "status": STATUS_SCHEDULED,
                "created_at": created_at,
            }
        )
    return records
