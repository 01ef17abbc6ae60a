# queue_api/statistics.py
from collections import Counter
from datetime import date
from typing import Iterable, Optional

from .models import CheckInStatus
from .schemas import CheckInRecord, QueueStatistics


def summarize(records: Iterable[CheckInRecord], day: date, department: Optional[str] = None) -> QueueStatistics:
    """Daily counts per status; average wait covers completed consults only."""
    records = list(records)
    by_status = Counter(r.status for r in records)
    waits = [r.actual_wait for r in records if r.status == CheckInStatus.COMPLETED and r.actual_wait is not None]
    average_wait = round(sum(waits) / len(waits)) if waits else 0

    return QueueStatistics(
        day=day,
        department=department,
        total_patients=len(records),
        waiting=by_status[CheckInStatus.WAITING],
        in_progress=by_status[CheckInStatus.IN_PROGRESS],
        completed=by_status[CheckInStatus.COMPLETED],
        cancelled=by_status[CheckInStatus.CANCELLED],
        average_wait=average_wait,
        departments=dict(Counter(r.department for r in records)),
    )
