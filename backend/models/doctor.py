"""Doctor profile model definitions."""

import enum

from sqlalchemy import Column, Integer, ForeignKey, Numeric, String
from backend.database import Base


class DoctorStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class DoctorProfile(Base):
    """A doctor's practice profile; owns availability rules and appointments."""
    __tablename__ = "doctor_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, index=True)
    timezone = Column(String, default="UTC")
    status = Column(String, default=DoctorStatus.PENDING.value)
    consultation_fee = Column(Numeric(10, 2), default=0)
