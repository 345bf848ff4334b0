"""Appointment model definitions."""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from backend.database import Base


class AppointmentStatus(str, enum.Enum):
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


BLOCKING_STATUSES = (AppointmentStatus.CONFIRMED.value, AppointmentStatus.COMPLETED.value)


class Appointment(Base):
    """Represents a scheduled consultation. scheduled_at is stored as naive UTC."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctor_profiles.id"), index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), index=True)
    scheduled_at = Column(DateTime, index=True)
    duration_minutes = Column(Integer, default=30)
    status = Column(String, default=AppointmentStatus.CONFIRMED.value)
    patient_timezone = Column(String, default="UTC")
    doctor_timezone = Column(String)
    consultation_fee = Column(Numeric(10, 2), default=0)
    cancel_reason = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class AppointmentSlotLock(Base):
    """Short-lived claim on a doctor's slot while a booking is written."""
    __tablename__ = "appointment_slot_locks"
    __table_args__ = (UniqueConstraint("doctor_id", "slot_start", name="uq_slot_lock_doctor_start"),)

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctor_profiles.id"), index=True)
    slot_start = Column(DateTime)
    slot_end = Column(DateTime)
    locked_by = Column(Integer)
    expires_at = Column(DateTime, index=True)
