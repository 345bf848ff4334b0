import logging
from datetime import date, datetime, timedelta

import pytz
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.errors import PersistenceError
from backend.models.appointment import Appointment, BLOCKING_STATUSES
from backend.models.availability import (
    DoctorAvailability,
    DoctorAvailabilityTemplate,
    DoctorUnavailableDate,
    RecurrenceType,
)
from backend.models.doctor import DoctorProfile
from backend.scheduling.recurrence import AvailabilityRule, RuleSource
from backend.scheduling.time_types import Interval, as_utc

logger = logging.getLogger(__name__)


def _to_naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


class AvailabilityRepository:
    """Reads rules, unavailable days and booked intervals for one session.

    ``ignore_appointment_id`` leaves one appointment out of the booked
    intervals, so an appointment being moved does not block its own new time.
    """

    def __init__(self, db: Session, ignore_appointment_id: int | None = None):
        self.db = db
        self.ignore_appointment_id = ignore_appointment_id

    def get_doctor(self, doctor_id: int) -> DoctorProfile | None:
        try:
            return self.db.query(DoctorProfile).filter(DoctorProfile.id == doctor_id).first()
        except SQLAlchemyError as exc:
            logger.error('Failed to load doctor profile %s', doctor_id)
            raise PersistenceError('Database unavailable.') from exc

    def list_active_rules(self, doctor_id: int) -> list[AvailabilityRule]:
        try:
            templates = self.db.query(DoctorAvailabilityTemplate).filter(
                DoctorAvailabilityTemplate.doctor_id == doctor_id,
                DoctorAvailabilityTemplate.is_active.is_(True),
            ).all()
            date_rules = self.db.query(DoctorAvailability).filter(
                DoctorAvailability.doctor_id == doctor_id,
                DoctorAvailability.is_active.is_(True),
            ).all()
        except SQLAlchemyError as exc:
            logger.error('Failed to load availability rules for doctor %s', doctor_id)
            raise PersistenceError('Database unavailable.') from exc

        rules = [
            AvailabilityRule(
                source=RuleSource.TEMPLATE,
                day_of_week=template.day_of_week,
                start_time=template.start_time,
                end_time=template.end_time,
            )
            for template in templates
        ]
        rules.extend(
            AvailabilityRule(
                source=RuleSource.DATE,
                anchor_date=rule.date,
                start_time=rule.start_time,
                end_time=rule.end_time,
                recurrence=RecurrenceType(rule.recurrence_type or RecurrenceType.NONE.value),
                recurrence_end=rule.recurrence_end,
            )
            for rule in date_rules
        )
        return rules

    def list_unavailable_dates(self, doctor_id: int, first_day: date, last_day: date) -> set[date]:
        try:
            rows = self.db.query(DoctorUnavailableDate.date).filter(
                DoctorUnavailableDate.doctor_id == doctor_id,
                DoctorUnavailableDate.date >= first_day,
                DoctorUnavailableDate.date <= last_day,
            ).all()
        except SQLAlchemyError as exc:
            logger.error('Failed to load unavailable dates for doctor %s', doctor_id)
            raise PersistenceError('Database unavailable.') from exc
        return {unavailable_date for (unavailable_date,) in rows}

    def list_booked_intervals(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
    ) -> list[Interval]:
        # Appointments have no stored end, so look back far enough to catch the longest one.
        earliest_start = start - timedelta(minutes=config.MAX_APPOINTMENT_DURATION_MINUTES)
        try:
            query = self.db.query(Appointment.scheduled_at, Appointment.duration_minutes).filter(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(BLOCKING_STATUSES),
                Appointment.scheduled_at < _to_naive_utc(end),
                Appointment.scheduled_at > _to_naive_utc(earliest_start),
            )
            if self.ignore_appointment_id is not None:
                query = query.filter(Appointment.id != self.ignore_appointment_id)
            rows = query.order_by(Appointment.scheduled_at.asc()).all()
        except SQLAlchemyError as exc:
            logger.error('Failed to load appointments for doctor %s', doctor_id)
            raise PersistenceError('Database unavailable.') from exc

        intervals: list[Interval] = []
        for scheduled_at, duration_minutes in rows:
            if not scheduled_at or not duration_minutes or duration_minutes <= 0:
                continue
            booked = Interval(as_utc(scheduled_at), as_utc(scheduled_at) + timedelta(minutes=duration_minutes))
            if booked.end > start.astimezone(pytz.utc):
                intervals.append(booked)
        return intervals
