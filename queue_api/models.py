# queue_api/models.py
import enum

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from .database import Base


class AppointmentType(str, enum.Enum):
    EMERGENCY = "Emergency"
    SCHEDULED = "ScheduledAppointment"
    FOLLOW_UP = "FollowUp"
    WALK_IN = "WalkIn"


class CheckInStatus(str, enum.Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CheckIn(Base):
    __tablename__ = "checkins"

    id = Column(String(32), primary_key=True, index=True)
    patient_id = Column(String(64), index=True, nullable=False)
    patient_name = Column(String(100), nullable=False)
    department = Column(String(100), nullable=False)

    # Stored as plain text so records written by other clients with
    # unknown types still load; they sort last
    appointment_type = Column(String(50), nullable=False)
    priority_override = Column(String(50), nullable=True)

    status = Column(String(20), nullable=False, default=CheckInStatus.WAITING.value)
    checked_in_at = Column(DateTime(timezone=True), nullable=False)

    # Derived by the ordering engine, only set while waiting
    queue_position = Column(Integer, nullable=True)
    estimated_wait = Column(Integer, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    actual_wait = Column(Integer, nullable=True)

    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_checkins_department_status", "department", "status"),
    )
