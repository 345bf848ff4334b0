"""Availability model definitions."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Time, UniqueConstraint
from backend.database import Base


class RecurrenceType(str, enum.Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class DoctorAvailabilityTemplate(Base):
    """Weekly recurring working hours; day_of_week runs 0=Sunday to 6=Saturday."""
    __tablename__ = "doctor_availability_templates"
    __table_args__ = (UniqueConstraint("doctor_id", "day_of_week", name="uq_template_doctor_day"),)

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctor_profiles.id"), index=True)
    day_of_week = Column(Integer)
    start_time = Column(Time)
    end_time = Column(Time)
    is_active = Column(Boolean, default=True)


class DoctorAvailability(Base):
    """Date-scoped availability, optionally recurring from its anchor date."""
    __tablename__ = "doctor_availability"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctor_profiles.id"), index=True)
    date = Column(Date, index=True)
    start_time = Column(Time)
    end_time = Column(Time)
    recurrence_type = Column(String, default=RecurrenceType.NONE.value)
    recurrence_end = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class DoctorUnavailableDate(Base):
    """A whole day the doctor does not take appointments."""
    __tablename__ = "doctor_unavailable_dates"
    __table_args__ = (UniqueConstraint("doctor_id", "date", name="uq_unavailable_doctor_date"),)

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctor_profiles.id"), index=True)
    date = Column(Date)
    reason = Column(String, nullable=True)
