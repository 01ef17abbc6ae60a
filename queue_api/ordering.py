"""
Queue ordering: turns a department's waiting set into a total order and
derives each record's position and estimated wait.

Order: priority tier (Emergency, ScheduledAppointment, FollowUp, WalkIn,
unknown), then check-in time, then id. Estimated waits never decrease
with position.
"""
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, NamedTuple, Optional

from . import config
from .models import CheckInStatus
from .priority import effective_rank
from .schemas import CheckInRecord


class Placement(NamedTuple):
    position: int
    estimated_wait: int


def sort_key(record: CheckInRecord):
    return (
        effective_rank(record.appointment_type, record.priority_override),
        record.checked_in_at,
        record.id,
    )


def order_waiting(records: Iterable[CheckInRecord]) -> List[CheckInRecord]:
    waiting = [r for r in records if r.status == CheckInStatus.WAITING]
    return sorted(waiting, key=sort_key)


# --- WAIT ESTIMATORS ---

class FlatWaitEstimator:
    """Average consult length times the number of patients ahead."""

    def __init__(self, service_minutes: Optional[Dict[str, int]] = None,
                 default_minutes: int = config.DEFAULT_SERVICE_MINUTES):
        self.service_minutes = service_minutes if service_minutes is not None else config.load_service_minutes()
        self.default_minutes = default_minutes

    def minutes_for(self, department: str) -> int:
        return self.service_minutes.get(department, self.default_minutes)

    def base_offset(self, department: str, serving: Optional[CheckInRecord], now: datetime) -> int:
        return 0

    def estimate(self, department: str, position: int, offset: int = 0) -> int:
        return self.minutes_for(department) * (position - 1) + offset


class ConsultAwareWaitEstimator(FlatWaitEstimator):
    """
    Adds what is left of the current consult to everyone's wait.

    The same offset is added to every position, so the estimate stays
    monotonic in position.
    """

    def base_offset(self, department: str, serving: Optional[CheckInRecord], now: datetime) -> int:
        if serving is None:
            return 0
        average = self.minutes_for(department)
        if serving.started_at is None:
            return average
        elapsed = (now - serving.started_at).total_seconds() / 60
        return max(0, math.ceil(average - elapsed))


def build_estimator(name: str = config.WAIT_ESTIMATOR) -> FlatWaitEstimator:
    estimators = {"flat": FlatWaitEstimator, "consult_aware": ConsultAwareWaitEstimator}
    if name not in estimators:
        raise ValueError(f"Unknown wait estimator: {name!r}")
    return estimators[name]()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_placements(
    department: str,
    waiting: Iterable[CheckInRecord],
    estimator: FlatWaitEstimator,
    serving: Optional[CheckInRecord] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Placement]:
    """Position and wait for every waiting record, keyed by check-in id."""
    offset = estimator.base_offset(department, serving, now or utcnow())
    placements = {}
    for position, record in enumerate(order_waiting(waiting), start=1):
        placements[record.id] = Placement(position, estimator.estimate(department, position, offset))
    return placements


def placement_updates(
    records: Iterable[CheckInRecord],
    placements: Dict[str, Placement],
) -> Dict[str, dict]:
    """
    Field updates needed to bring stored records in line with `placements`.

    Records in `placements` get their position and wait; any other record
    still carrying derived fields has them cleared. Unchanged records are
    left out.
    """
    updates = {}
    for record in records:
        placement = placements.get(record.id)
        if placement is not None:
            wanted = {"queue_position": placement.position, "estimated_wait": placement.estimated_wait}
        else:
            wanted = {"queue_position": None, "estimated_wait": None}
        if record.queue_position != wanted["queue_position"] or record.estimated_wait != wanted["estimated_wait"]:
            updates[record.id] = wanted
    return updates