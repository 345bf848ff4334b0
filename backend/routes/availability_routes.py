from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_doctor
from backend.core import config
from backend.core.errors import SchedulingError
from backend.database import get_db
from backend.models.availability import (
    DoctorAvailability,
    DoctorAvailabilityTemplate,
    DoctorUnavailableDate,
    RecurrenceType,
)
from backend.models.doctor import DoctorProfile
from backend.scheduling.repository import AvailabilityRepository
from backend.scheduling.slots import get_available_slots

router = APIRouter(tags=['availability'])

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'
MAX_UNAVAILABLE_REASON_LENGTH = 200


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def scheduling_error_to_http(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _validate_window(start_time: time, end_time: time) -> None:
    if start_time >= end_time:
        raise ValueError('Start time must be before end time.')


class SetAvailabilityRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if not 0 <= value <= 6:
            raise ValueError('Day of week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @field_validator('start_time', 'end_time')
    @classmethod
    def strip_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0, tzinfo=None)

    @model_validator(mode='after')
    def validate_times(self) -> 'SetAvailabilityRequest':
        _validate_window(self.start_time, self.end_time)
        return self


class CreateDateAvailabilityRequest(BaseModel):
    date: date
    start_time: time
    end_time: time
    recurrence_type: RecurrenceType = RecurrenceType.NONE
    recurrence_end: date | None = None

    @field_validator('start_time', 'end_time')
    @classmethod
    def strip_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0, tzinfo=None)

    @model_validator(mode='after')
    def validate_rule(self) -> 'CreateDateAvailabilityRequest':
        _validate_window(self.start_time, self.end_time)
        if self.recurrence_end is not None:
            if self.recurrence_type == RecurrenceType.NONE:
                raise ValueError('A one-time availability cannot have a recurrence end.')
            if self.recurrence_end < self.date:
                raise ValueError('Recurrence end must be on or after the availability date.')
        return self


class AddUnavailableDateRequest(BaseModel):
    date: date
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_UNAVAILABLE_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_UNAVAILABLE_REASON_LENGTH} characters or fewer.')

        return normalized


class AvailabilityTemplateResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool

    class Config:
        from_attributes = True


class DateAvailabilityResponse(BaseModel):
    id: int
    date: date
    start_time: time
    end_time: time
    recurrence_type: RecurrenceType
    recurrence_end: date | None = None
    is_active: bool

    class Config:
        from_attributes = True


class UnavailableDateResponse(BaseModel):
    id: int
    date: date
    reason: str | None = None

    class Config:
        from_attributes = True


class AvailableSlotResponse(BaseModel):
    start: datetime
    end: datetime
    available: bool

    class Config:
        from_attributes = True


@router.get('/{doctor_id}/slots', response_model=list[AvailableSlotResponse])
def list_available_slots(
    doctor_id: int,
    from_date: date = Query(...),
    to_date: date = Query(...),
    timezone: str = Query(default=config.DEFAULT_TIMEZONE),
    slot_duration_minutes: int = Query(default=config.DEFAULT_SLOT_DURATION_MINUTES),
    db: Session = Depends(get_db),
):
    try:
        return get_available_slots(
            AvailabilityRepository(db),
            doctor_id=doctor_id,
            from_date=from_date,
            to_date=to_date,
            timezone_name=timezone,
            slot_duration_minutes=slot_duration_minutes,
        )
    except SchedulingError as exc:
        raise scheduling_error_to_http(exc) from exc


@router.post(
    '/me/availability',
    response_model=AvailabilityTemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
def set_availability(
    data: SetAvailabilityRequest,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        db.query(DoctorAvailabilityTemplate).filter(
            DoctorAvailabilityTemplate.doctor_id == doctor.id,
            DoctorAvailabilityTemplate.day_of_week == data.day_of_week,
        ).delete(synchronize_session=False)

        template = DoctorAvailabilityTemplate(
            doctor_id=doctor.id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            is_active=True,
        )
        db.add(template)
        db.commit()
        db.refresh(template)

        return template
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/me/availability', response_model=list[AvailabilityTemplateResponse])
def list_availability(
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        return db.query(DoctorAvailabilityTemplate).filter(
            DoctorAvailabilityTemplate.doctor_id == doctor.id,
        ).order_by(DoctorAvailabilityTemplate.day_of_week.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/me/availability/{availability_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_availability(
    availability_id: int,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        template = db.query(DoctorAvailabilityTemplate).filter(
            DoctorAvailabilityTemplate.id == availability_id,
            DoctorAvailabilityTemplate.doctor_id == doctor.id,
        ).first()

        if not template:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Availability not found.',
            )

        db.delete(template)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post(
    '/me/date-availability',
    response_model=DateAvailabilityResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_date_availability(
    data: CreateDateAvailabilityRequest,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        rule = DoctorAvailability(
            doctor_id=doctor.id,
            date=data.date,
            start_time=data.start_time,
            end_time=data.end_time,
            recurrence_type=data.recurrence_type.value,
            recurrence_end=data.recurrence_end,
            is_active=True,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)

        return rule
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/me/date-availability', response_model=list[DateAvailabilityResponse])
def list_date_availability(
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        return db.query(DoctorAvailability).filter(
            DoctorAvailability.doctor_id == doctor.id,
        ).order_by(DoctorAvailability.date.asc(), DoctorAvailability.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/me/date-availability/{availability_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_date_availability(
    availability_id: int,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        rule = db.query(DoctorAvailability).filter(
            DoctorAvailability.id == availability_id,
            DoctorAvailability.doctor_id == doctor.id,
        ).first()

        if not rule:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Date availability not found.',
            )

        db.delete(rule)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post(
    '/me/unavailable-dates',
    response_model=UnavailableDateResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_unavailable_date(
    data: AddUnavailableDateRequest,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    if data.date < date.today():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Cannot block dates in the past.',
        )

    try:
        existing = db.query(DoctorUnavailableDate).filter(
            DoctorUnavailableDate.doctor_id == doctor.id,
            DoctorUnavailableDate.date == data.date,
        ).first()

        if existing:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='This date is already marked as unavailable.',
            )

        unavailable_date = DoctorUnavailableDate(
            doctor_id=doctor.id,
            date=data.date,
            reason=data.reason,
        )
        db.add(unavailable_date)
        db.commit()
        db.refresh(unavailable_date)

        return unavailable_date
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/me/unavailable-dates', response_model=list[UnavailableDateResponse])
def list_unavailable_dates(
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        return db.query(DoctorUnavailableDate).filter(
            DoctorUnavailableDate.doctor_id == doctor.id,
            DoctorUnavailableDate.date >= date.today(),
        ).order_by(DoctorUnavailableDate.date.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/me/unavailable-dates/{unavailable_date_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_unavailable_date(
    unavailable_date_id: int,
    doctor: DoctorProfile = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    try:
        unavailable_date = db.query(DoctorUnavailableDate).filter(
            DoctorUnavailableDate.id == unavailable_date_id,
            DoctorUnavailableDate.doctor_id == doctor.id,
        ).first()

        if not unavailable_date:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Unavailable date not found.',
            )

        db.delete(unavailable_date)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
