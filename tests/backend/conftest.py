import os
from datetime import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.database import Base  # noqa: E402
from backend.models.appointment import Appointment, AppointmentSlotLock  # noqa: E402
from backend.models.availability import (  # noqa: E402
    DoctorAvailability,
    DoctorAvailabilityTemplate,
    DoctorUnavailableDate,
)
from backend.models.doctor import DoctorProfile, DoctorStatus  # noqa: E402
from backend.models.user import User, UserRole  # noqa: E402

TABLES = [
    User.__table__,
    DoctorProfile.__table__,
    DoctorAvailabilityTemplate.__table__,
    DoctorAvailability.__table__,
    DoctorUnavailableDate.__table__,
    Appointment.__table__,
    AppointmentSlotLock.__table__,
]


@pytest.fixture
def db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=TABLES)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))


def add_user(db, email: str, role: UserRole) -> User:
    user = User(email=email, hashed_password='not-used', full_name=email.split('@')[0], role=role.value)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def add_doctor(
    db,
    email: str = 'doctor@example.com',
    timezone: str = 'UTC',
    status: DoctorStatus = DoctorStatus.APPROVED,
) -> DoctorProfile:
    user = add_user(db, email, UserRole.DOCTOR)
    profile = DoctorProfile(user_id=user.id, timezone=timezone, status=status.value, consultation_fee=50)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def add_template(db, doctor: DoctorProfile, day_of_week: int, start: time, end: time, is_active: bool = True):
    template = DoctorAvailabilityTemplate(
        doctor_id=doctor.id,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        is_active=is_active,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


@pytest.fixture
def doctor(db) -> DoctorProfile:
    return add_doctor(db)


@pytest.fixture
def patient(db) -> User:
    return add_user(db, 'patient@example.com', UserRole.PATIENT)


@pytest.fixture
def make_user(db):
    return lambda email, role: add_user(db, email, role)


@pytest.fixture
def make_doctor(db):
    def _make_doctor(**kwargs) -> DoctorProfile:
        return add_doctor(db, **kwargs)
    return _make_doctor


@pytest.fixture
def make_template(db):
    def _make_template(doctor, day_of_week, start, end, is_active=True):
        return add_template(db, doctor, day_of_week, start, end, is_active)
    return _make_template
