# queue_api/schemas.py
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import AppointmentType, CheckInStatus

# --- HELPER FUNCTIONS ---

def validate_not_empty(v: str, field_name: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{field_name} must not be empty.")
    return v.strip()


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# --- RECORD ---

class CheckInRecord(BaseModel):
    """A check-in as stored; the unit every store adapter reads and writes."""
    id: str
    patient_id: str
    patient_name: str
    department: str
    appointment_type: str
    priority_override: Optional[str] = None
    status: CheckInStatus = CheckInStatus.WAITING
    checked_in_at: datetime
    queue_position: Optional[int] = None
    estimated_wait: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    actual_wait: Optional[int] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("checked_in_at", "started_at", "completed_at", "cancelled_at")
    def ensure_utc(cls, v):
        return as_utc(v)


# --- INGRESS ---

class CheckInCreate(BaseModel):
    department: str = Field(..., min_length=1, max_length=100)
    patient_id: str = Field(..., min_length=1, max_length=64)
    patient_name: str = Field(..., min_length=1, max_length=100)
    appointment_type: AppointmentType

    @field_validator("department")
    def check_department(cls, v):
        return validate_not_empty(v, "Department")

    @field_validator("patient_id")
    def check_patient_id(cls, v):
        return validate_not_empty(v, "Patient ID")

    @field_validator("patient_name")
    def check_patient_name(cls, v):
        return validate_not_empty(v, "Patient name")

    model_config = ConfigDict(json_schema_extra={"example": {
        "department": "Cardiology", "patient_id": "P-1001",
        "patient_name": "Sarah Smith", "appointment_type": "WalkIn"}})


class StatusUpdate(BaseModel):
    status: CheckInStatus
    notes: Optional[str] = Field(default=None, description="Consult notes, kept on completion")
    reason: Optional[str] = Field(default=None, description="Cancellation reason")

    model_config = ConfigDict(json_schema_extra={"example": {"status": "in-progress"}})


class PriorityCorrection(BaseModel):
    appointment_type: AppointmentType

    model_config = ConfigDict(json_schema_extra={"example": {"appointment_type": "Emergency"}})


# --- VIEWS ---

class QueueEntryView(BaseModel):
    id: str
    patient_id: str
    patient_name: str
    appointment_type: str
    position: Optional[int] = None
    estimated_wait: Optional[int] = None
    status: CheckInStatus

    model_config = ConfigDict(from_attributes=True)


class QueueView(BaseModel):
    """Materialized view of one department's queue, as pushed to staff screens."""
    department: str
    version: int = 0
    entries: List[QueueEntryView] = []
    serving: Optional[QueueEntryView] = None

    def same_content(self, other: Optional["QueueView"]) -> bool:
        return other is not None and self.entries == other.entries and self.serving == other.serving

    def for_patient(self, patient_id: str) -> "PatientQueueView":
        entry = next((e for e in self.entries if e.patient_id == patient_id), None)
        now_serving = self.serving is not None and self.serving.patient_id == patient_id
        return PatientQueueView(
            department=self.department,
            patient_id=patient_id,
            version=self.version,
            in_queue=entry is not None,
            now_serving=now_serving,
            entry=entry,
        )


class PatientQueueView(BaseModel):
    """What one patient sees; `entry` is None when they are not in the queue."""
    department: str
    patient_id: str
    version: int
    in_queue: bool
    now_serving: bool = False
    entry: Optional[QueueEntryView] = None


# --- STATISTICS ---

class QueueStatistics(BaseModel):
    day: date
    department: Optional[str] = None
    total_patients: int
    waiting: int
    in_progress: int
    completed: int
    cancelled: int
    average_wait: int
    departments: Dict[str, int]
