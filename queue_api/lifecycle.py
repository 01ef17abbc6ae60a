# queue_api/lifecycle.py
import math
from datetime import datetime
from typing import Iterable, Optional

from .errors import ConflictError, InvalidTransitionError
from .models import CheckInStatus
from .schemas import CheckInRecord

WAITING = CheckInStatus.WAITING
IN_PROGRESS = CheckInStatus.IN_PROGRESS
COMPLETED = CheckInStatus.COMPLETED
CANCELLED = CheckInStatus.CANCELLED

# waiting -> in-progress -> completed, and cancel from either active state
ALLOWED_TRANSITIONS = {
    WAITING: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}


def validate_transition(record: CheckInRecord, new_status: CheckInStatus,
                        in_progress: Iterable[CheckInRecord] = ()) -> None:
    """
    Raise if `record` may not move to `new_status`.

    `in_progress` holds the department's records currently in consult; a
    second one is refused with ConflictError. Nothing is changed here.
    """
    new_status = CheckInStatus(new_status)
    if new_status not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidTransitionError(
            f"Cannot move check-in {record.id} from '{record.status.value}' to '{new_status.value}'."
        )
    if new_status == IN_PROGRESS:
        busy = [r for r in in_progress if r.id != record.id and r.status == IN_PROGRESS]
        if busy:
            raise ConflictError(
                f"Department '{record.department}' is already serving check-in {busy[0].id}."
            )


def transition_fields(record: CheckInRecord, new_status: CheckInStatus, now: datetime,
                      notes: Optional[str] = None, reason: Optional[str] = None) -> dict:
    """Field changes for an allowed transition; derived queue fields are cleared on leaving `waiting`."""
    new_status = CheckInStatus(new_status)
    fields = {"status": new_status}
    if record.status == WAITING:
        fields["queue_position"] = None
        fields["estimated_wait"] = None

    if new_status == IN_PROGRESS:
        fields["started_at"] = now
        waited = (now - record.checked_in_at).total_seconds() / 60
        fields["actual_wait"] = max(0, math.floor(waited))
    elif new_status == COMPLETED:
        fields["completed_at"] = now
        if notes:
            fields["notes"] = notes
    elif new_status == CANCELLED:
        fields["cancelled_at"] = now
        if reason:
            fields["cancellation_reason"] = reason
    return fields
