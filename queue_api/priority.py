# queue_api/priority.py
import re
from typing import Optional

from .models import AppointmentType

# Lower rank is served first
TIER_RANKS = {
    AppointmentType.EMERGENCY.value: 0,
    AppointmentType.SCHEDULED.value: 1,
    AppointmentType.FOLLOW_UP.value: 2,
    AppointmentType.WALK_IN.value: 3,
}
UNKNOWN_RANK = len(TIER_RANKS)

# Spellings found in older portal records
_ALIASES = {
    "emergency": AppointmentType.EMERGENCY.value,
    "urgent": AppointmentType.EMERGENCY.value,
    "scheduledappointment": AppointmentType.SCHEDULED.value,
    "scheduled": AppointmentType.SCHEDULED.value,
    "appointment": AppointmentType.SCHEDULED.value,
    "consultation": AppointmentType.SCHEDULED.value,
    "followup": AppointmentType.FOLLOW_UP.value,
    "walkin": AppointmentType.WALK_IN.value,
}


def normalize_appointment_type(value: Optional[str]) -> Optional[str]:
    """Map "follow-up", "Walk_In", "EMERGENCY" ... onto the canonical enum values."""
    if not value:
        return None
    if isinstance(value, AppointmentType):
        return value.value
    key = re.sub(r"[\s_\-]", "", str(value)).lower()
    return _ALIASES.get(key)


def tier_rank(appointment_type: Optional[str]) -> int:
    canonical = normalize_appointment_type(appointment_type)
    if canonical is None:
        return UNKNOWN_RANK
    return TIER_RANKS[canonical]


def effective_rank(appointment_type: Optional[str], priority_override: Optional[str] = None) -> int:
    if priority_override:
        return tier_rank(priority_override)
    return tier_rank(appointment_type)
