import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_doctor, get_current_user, require_patient
from backend.core import config
from backend.core.errors import InvalidTimezoneError, SchedulingError
from backend.database import get_db
from backend.models.appointment import Appointment, AppointmentStatus
from backend.models.doctor import DoctorProfile
from backend.models.user import User, UserRole
from backend.routes.availability_routes import database_unavailable, scheduling_error_to_http
from backend.scheduling.repository import AvailabilityRepository
from backend.scheduling.slot_locks import slot_lock
from backend.scheduling.slots import get_available_slots
from backend.scheduling.time_types import as_utc, local_date, resolve_timezone

router = APIRouter(tags=['appointments'])

logger = logging.getLogger(__name__)


def _normalize_start(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError('Scheduled time must include a UTC offset.')
    return as_utc(value).replace(second=0, microsecond=0)


class CreateAppointmentRequest(BaseModel):
    doctor_id: int
    scheduled_at: datetime
    duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES
    patient_timezone: str = config.DEFAULT_TIMEZONE

    @field_validator('scheduled_at')
    @classmethod
    def validate_scheduled_at(cls, value: datetime) -> datetime:
        return _normalize_start(value)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if not 0 < value <= config.MAX_APPOINTMENT_DURATION_MINUTES:
            raise ValueError(
                f'Duration must be between 1 and {config.MAX_APPOINTMENT_DURATION_MINUTES} minutes.'
            )
        return value

    @field_validator('patient_timezone')
    @classmethod
    def validate_patient_timezone(cls, value: str) -> str:
        try:
            return resolve_timezone(value).zone
        except InvalidTimezoneError as exc:
            raise ValueError(exc.message) from exc


class RescheduleAppointmentRequest(BaseModel):
    new_scheduled_at: datetime

    @field_validator('new_scheduled_at')
    @classmethod
    def validate_new_scheduled_at(cls, value: datetime) -> datetime:
        return _normalize_start(value)


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > config.MAX_CANCEL_REASON_LENGTH:
            raise ValueError(f'Reason must be {config.MAX_CANCEL_REASON_LENGTH} characters or fewer.')

        return normalized


class AppointmentResponse(BaseModel):
    id: int
    doctor_id: int
    patient_id: int
    scheduled_at: datetime
    duration_minutes: int
    status: AppointmentStatus
    patient_timezone: str | None = None
    doctor_timezone: str | None = None
    cancel_reason: str | None = None
    cancelled_at: datetime | None = None


def to_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        doctor_id=appointment.doctor_id,
        patient_id=appointment.patient_id,
        scheduled_at=as_utc(appointment.scheduled_at),
        duration_minutes=appointment.duration_minutes,
        status=appointment.status,
        patient_timezone=appointment.patient_timezone,
        doctor_timezone=appointment.doctor_timezone,
        cancel_reason=appointment.cancel_reason,
        cancelled_at=as_utc(appointment.cancelled_at) if appointment.cancelled_at else None,
    )


def ensure_within_booking_window(scheduled_at: datetime) -> None:
    now = datetime.now(timezone.utc)
    if scheduled_at <= now:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Appointment time must be in the future.',
        )
    if scheduled_at > now + timedelta(days=config.BOOKING_HORIZON_DAYS):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Cannot book appointments more than {config.BOOKING_HORIZON_DAYS} days in advance.',
        )


def ensure_slot_is_open(
    repository: AvailabilityRepository,
    doctor: DoctorProfile,
    scheduled_at: datetime,
    duration_minutes: int,
) -> None:
    doctor_tz = resolve_timezone(doctor.timezone or config.DEFAULT_TIMEZONE)
    slot_day = local_date(scheduled_at, doctor_tz)
    slots = get_available_slots(
        repository,
        doctor_id=doctor.id,
        from_date=slot_day,
        to_date=slot_day,
        timezone_name=doctor_tz.zone,
        slot_duration_minutes=duration_minutes,
    )

    matching_slot = next((slot for slot in slots if slot.start == scheduled_at), None)
    if matching_slot is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='The doctor is not available at this time.',
        )
    if not matching_slot.available:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='This time is already booked.',
        )


def get_appointment_or_404(db: Session, appointment_id: int) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Appointment not found.',
        )
    return appointment


def is_participant(db: Session, appointment: Appointment, user: User) -> bool:
    if appointment.patient_id == user.id:
        return True
    if user.role != UserRole.DOCTOR.value:
        return False
    doctor = db.query(DoctorProfile).filter(DoctorProfile.user_id == user.id).first()
    return doctor is not None and doctor.id == appointment.doctor_id


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: CreateAppointmentRequest,
    patient: User = Depends(require_patient),
    db: Session = Depends(get_db),
):
    ensure_within_booking_window(data.scheduled_at)

    repository = AvailabilityRepository(db)
    slot_end = data.scheduled_at + timedelta(minutes=data.duration_minutes)
    try:
        doctor = repository.get_doctor(data.doctor_id)
        if doctor is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Doctor profile not found.',
            )

        with slot_lock(db, doctor.id, data.scheduled_at, slot_end, patient.id):
            ensure_slot_is_open(repository, doctor, data.scheduled_at, data.duration_minutes)

            appointment = Appointment(
                doctor_id=doctor.id,
                patient_id=patient.id,
                scheduled_at=data.scheduled_at.replace(tzinfo=None),
                duration_minutes=data.duration_minutes,
                status=AppointmentStatus.CONFIRMED.value,
                patient_timezone=data.patient_timezone,
                doctor_timezone=doctor.timezone,
                consultation_fee=doctor.consultation_fee,
            )
            db.add(appointment)
            db.commit()
            db.refresh(appointment)
    except SchedulingError as exc:
        raise scheduling_error_to_http(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info(
        'Booked appointment %s with doctor %s at %s',
        appointment.id,
        appointment.doctor_id,
        data.scheduled_at.isoformat(),
    )
    return to_response(appointment)


@router.get('/me', response_model=list[AppointmentResponse])
def list_my_appointments(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        query = db.query(Appointment)
        if current_user.role == UserRole.DOCTOR.value:
            doctor = db.query(DoctorProfile).filter(DoctorProfile.user_id == current_user.id).first()
            if doctor is None:
                return []
            query = query.filter(Appointment.doctor_id == doctor.id)
        else:
            query = query.filter(Appointment.patient_id == current_user.id)

        appointments = query.order_by(Appointment.scheduled_at.asc()).all()
        return [to_response(appointment) for appointment in appointments]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        appointment = get_appointment_or_404(db, appointment_id)
        if not (current_user.role == UserRole.ADMIN.value or is_participant(db, appointment, current_user)):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='You do not have access to this appointment.',
            )
        return to_response(appointment)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        appointment = get_appointment_or_404(db, appointment_id)

        if not is_participant(db, appointment, current_user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the patient or doctor on this appointment can cancel it.',
            )

        if appointment.status != AppointmentStatus.CONFIRMED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Only confirmed appointments can be cancelled.',
            )

        appointment.status = AppointmentStatus.CANCELLED.value
        appointment.cancel_reason = data.reason
        appointment.cancelled_at = datetime.now(timezone.utc).replace(tzinfo=None)
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Cancelled appointment %s', appointment.id)
    return to_response(appointment)


@router.patch('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleAppointmentRequest,
    patient: User = Depends(require_patient),
    db: Session = Depends(get_db),
):
    try:
        appointment = get_appointment_or_404(db, appointment_id)

        if appointment.patient_id != patient.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the patient on this appointment can reschedule it.',
            )
        if appointment.status == AppointmentStatus.CANCELLED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Cannot reschedule a cancelled appointment.',
            )
        if appointment.status == AppointmentStatus.COMPLETED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Cannot reschedule a completed appointment.',
            )
        if appointment.status != AppointmentStatus.CONFIRMED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Only confirmed appointments can be rescheduled.',
            )

        ensure_within_booking_window(data.new_scheduled_at)

        repository = AvailabilityRepository(db, ignore_appointment_id=appointment.id)
        doctor = repository.get_doctor(appointment.doctor_id)
        if doctor is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Doctor profile not found.',
            )

        previous_start = as_utc(appointment.scheduled_at)
        slot_end = data.new_scheduled_at + timedelta(minutes=appointment.duration_minutes)
        with slot_lock(db, doctor.id, data.new_scheduled_at, slot_end, patient.id):
            ensure_slot_is_open(repository, doctor, data.new_scheduled_at, appointment.duration_minutes)

            appointment.scheduled_at = data.new_scheduled_at.replace(tzinfo=None)
            db.commit()
            db.refresh(appointment)
    except SchedulingError as exc:
        raise scheduling_error_to_http(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info(
        'Rescheduled appointment %s from %s to %s',
        appointment.id,
        previous_start.isoformat(),
        data.new_scheduled_at.isoformat(),
    )
    return to_response(appointment)


def _close_appointment(
    db: Session,
    appointment_id: int,
    doctor: DoctorProfile,
    new_status: AppointmentStatus,
) -> Appointment:
    try:
        appointment = get_appointment_or_404(db, appointment_id)

        if appointment.doctor_id != doctor.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the assigned doctor can update this appointment.',
            )
        if appointment.status != AppointmentStatus.CONFIRMED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'Only confirmed appointments can be marked as {new_status.value}.',
            )

        appointment.status = new_status.value
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Marked appointment %s as %s', appointment.id, new_status.value)
    return appointment


@router.patch('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    return to_response(_close_appointment(db, appointment_id, doctor, AppointmentStatus.COMPLETED))


@router.patch('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_no_show(
    appointment_id: int,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    return to_response(_close_appointment(db, appointment_id, doctor, AppointmentStatus.NO_SHOW))
