"""Database-backed locks that serialise bookings for the same slot.

A lock row is committed before the slot is re-checked, so a second request for
the same doctor and start hits the unique constraint instead of racing the
availability check. Rows expire after ``SLOT_LOCK_TTL_SECONDS`` in case a
request dies before releasing its lock.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import SlotConflictError
from backend.models.appointment import AppointmentSlotLock
from backend.scheduling.time_types import as_utc

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def acquire_slot_lock(
    db: Session,
    doctor_id: int,
    slot_start: datetime,
    slot_end: datetime,
    locked_by: int,
) -> bool:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    db.query(AppointmentSlotLock).filter(AppointmentSlotLock.expires_at < now).delete(synchronize_session=False)
    db.add(
        AppointmentSlotLock(
            doctor_id=doctor_id,
            slot_start=_naive_utc(slot_start),
            slot_end=_naive_utc(slot_end),
            locked_by=locked_by,
            expires_at=now + timedelta(seconds=config.SLOT_LOCK_TTL_SECONDS),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning('Slot lock already held for doctor %s at %s', doctor_id, slot_start.isoformat())
        return False
    return True


def release_slot_lock(db: Session, doctor_id: int, slot_start: datetime, locked_by: int) -> None:
    try:
        db.query(AppointmentSlotLock).filter(
            AppointmentSlotLock.doctor_id == doctor_id,
            AppointmentSlotLock.slot_start == _naive_utc(slot_start),
            AppointmentSlotLock.locked_by == locked_by,
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        # Expired rows are swept on the next acquire.
        db.rollback()
        logger.exception('Failed to release slot lock for doctor %s at %s', doctor_id, slot_start.isoformat())


@contextmanager
def slot_lock(db: Session, doctor_id: int, slot_start: datetime, slot_end: datetime, locked_by: int):
    if not acquire_slot_lock(db, doctor_id, slot_start, slot_end, locked_by):
        raise SlotConflictError('This slot is currently being booked by another patient. Please try again.')
    try:
        yield
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        release_slot_lock(db, doctor_id, slot_start, locked_by)
