from datetime import date, datetime, time, timedelta, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.models.appointment import Appointment, AppointmentSlotLock, AppointmentStatus
from backend.models.doctor import DoctorStatus
from backend.models.user import User, UserRole
from backend.routes.appointment_routes import (
    CancelAppointmentRequest,
    CreateAppointmentRequest,
    RescheduleAppointmentRequest,
    book_appointment,
    cancel_appointment,
    complete_appointment,
    get_appointment,
    list_my_appointments,
    mark_no_show,
    reschedule_appointment,
)


def upcoming_at(hour: int, minute: int = 0, days_ahead: int = 2) -> datetime:
    day = date.today() + timedelta(days=days_ahead)
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


@pytest.fixture
def open_doctor(doctor, make_template):
    for day_of_week in range(7):
        make_template(doctor, day_of_week, time(8, 0), time(18, 0))
    return doctor


def book(db, patient, doctor, scheduled_at, duration_minutes=30):
    return book_appointment(
        data=CreateAppointmentRequest(
            doctor_id=doctor.id,
            scheduled_at=scheduled_at,
            duration_minutes=duration_minutes,
            patient_timezone='Europe/London',
        ),
        patient=patient,
        db=db,
    )


def test_create_appointment_request_requires_offset() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(doctor_id=1, scheduled_at=datetime(2026, 1, 5, 10, 0))


def test_create_appointment_request_normalizes_to_utc() -> None:
    request = CreateAppointmentRequest(doctor_id=1, scheduled_at='2026-01-05T11:00:30+01:00')

    assert request.scheduled_at == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert request.scheduled_at.utcoffset() == timedelta(0)


def test_create_appointment_request_rejects_unknown_timezone() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(
            doctor_id=1,
            scheduled_at=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc),
            patient_timezone='Nowhere/Place',
        )


def test_cancel_appointment_request_trims_reason() -> None:
    assert CancelAppointmentRequest(reason='  Feeling better  ').reason == 'Feeling better'
    assert CancelAppointmentRequest(reason='   ').reason is None


def test_book_appointment_stores_confirmed_booking(db, patient, open_doctor) -> None:
    scheduled_at = upcoming_at(10)

    response = book(db, patient, open_doctor, scheduled_at)

    assert response.status == AppointmentStatus.CONFIRMED
    assert response.scheduled_at == scheduled_at
    assert response.patient_timezone == 'Europe/London'
    assert response.doctor_timezone == 'UTC'
    stored = db.query(Appointment).filter(Appointment.id == response.id).first()
    assert stored.scheduled_at == scheduled_at.replace(tzinfo=None)


def test_book_appointment_rejects_double_booking(db, patient, open_doctor, make_user) -> None:
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    scheduled_at = upcoming_at(11)
    book(db, patient, open_doctor, scheduled_at)

    with pytest.raises(HTTPException) as exception_info:
        book(db, other_patient, open_doctor, scheduled_at)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'This time is already booked.'


def test_book_appointment_rejects_time_off_the_slot_grid(db, patient, open_doctor) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book(db, patient, open_doctor, upcoming_at(10, 15))

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'The doctor is not available at this time.'


def test_book_appointment_rejects_time_outside_working_hours(db, patient, open_doctor) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book(db, patient, open_doctor, upcoming_at(19))

    assert exception_info.value.status_code == 409


@pytest.mark.parametrize(
    ('scheduled_at', 'detail'),
    [
        (datetime(2020, 1, 6, 10, 0, tzinfo=timezone.utc), 'Appointment time must be in the future.'),
        (upcoming_at(10, days_ahead=120), 'Cannot book appointments more than 90 days in advance.'),
    ],
)
def test_book_appointment_enforces_booking_window(db, patient, open_doctor, scheduled_at, detail) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book(db, patient, open_doctor, scheduled_at)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == detail


def test_book_appointment_returns_not_found_for_unknown_doctor(db, patient, open_doctor) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book_appointment(
            data=CreateAppointmentRequest(doctor_id=999, scheduled_at=upcoming_at(10)),
            patient=patient,
            db=db,
        )

    assert exception_info.value.status_code == 404


def test_book_appointment_rejects_unapproved_doctor(db, patient, make_doctor, make_template) -> None:
    pending = make_doctor(email='pending@example.com', status=DoctorStatus.PENDING)
    make_template(pending, (upcoming_at(10).weekday() + 1) % 7, time(8, 0), time(18, 0))

    with pytest.raises(HTTPException) as exception_info:
        book(db, patient, pending, upcoming_at(10))

    assert exception_info.value.status_code == 403


def test_cancelling_reopens_the_slot(db, patient, open_doctor, make_user) -> None:
    scheduled_at = upcoming_at(9)
    booking = book(db, patient, open_doctor, scheduled_at)

    cancelled = cancel_appointment(
        appointment_id=booking.id,
        data=CancelAppointmentRequest(reason='Schedule conflict'),
        current_user=patient,
        db=db,
    )

    assert cancelled.status == AppointmentStatus.CANCELLED
    assert cancelled.cancel_reason == 'Schedule conflict'
    assert cancelled.cancelled_at is not None

    other_patient = make_user('second@example.com', UserRole.PATIENT)
    rebooked = book(db, other_patient, open_doctor, scheduled_at)
    assert rebooked.status == AppointmentStatus.CONFIRMED


def test_cancel_appointment_allows_the_doctor(db, patient, open_doctor) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(12))
    doctor_user = db.query(User).filter(User.id == open_doctor.user_id).first()

    cancelled = cancel_appointment(
        appointment_id=booking.id,
        data=CancelAppointmentRequest(),
        current_user=doctor_user,
        db=db,
    )

    assert cancelled.status == AppointmentStatus.CANCELLED


def test_cancel_appointment_rejects_unrelated_user(db, patient, open_doctor, make_user) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(13))
    stranger = make_user('stranger@example.com', UserRole.PATIENT)

    with pytest.raises(HTTPException) as exception_info:
        cancel_appointment(appointment_id=booking.id, data=CancelAppointmentRequest(), current_user=stranger, db=db)

    assert exception_info.value.status_code == 403


def test_cancel_appointment_only_cancels_confirmed(db, patient, open_doctor) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(14))
    cancel_appointment(appointment_id=booking.id, data=CancelAppointmentRequest(), current_user=patient, db=db)

    with pytest.raises(HTTPException) as exception_info:
        cancel_appointment(appointment_id=booking.id, data=CancelAppointmentRequest(), current_user=patient, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Only confirmed appointments can be cancelled.'


def test_cancel_appointment_returns_not_found_when_missing(db, patient) -> None:
    with pytest.raises(HTTPException) as exception_info:
        cancel_appointment(appointment_id=999, data=CancelAppointmentRequest(), current_user=patient, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Appointment not found.'


def test_list_my_appointments_scopes_by_role(db, patient, open_doctor, make_user) -> None:
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    first = book(db, patient, open_doctor, upcoming_at(15))
    second = book(db, other_patient, open_doctor, upcoming_at(9))
    doctor_user = db.query(User).filter(User.id == open_doctor.user_id).first()

    assert [appointment.id for appointment in list_my_appointments(current_user=patient, db=db)] == [first.id]
    assert [appointment.id for appointment in list_my_appointments(current_user=doctor_user, db=db)] == [
        second.id,
        first.id,
    ]


def hold_lock(db, doctor, scheduled_at, locked_by, expires_in=timedelta(seconds=30)):
    naive_start = scheduled_at.astimezone(timezone.utc).replace(tzinfo=None)
    db.add(
        AppointmentSlotLock(
            doctor_id=doctor.id,
            slot_start=naive_start,
            slot_end=naive_start + timedelta(minutes=30),
            locked_by=locked_by,
            expires_at=datetime.now(timezone.utc).replace(tzinfo=None) + expires_in,
        )
    )
    db.commit()


def test_book_appointment_rejects_slot_locked_by_another_booking(db, patient, open_doctor, make_user) -> None:
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    scheduled_at = upcoming_at(10)
    hold_lock(db, open_doctor, scheduled_at, locked_by=other_patient.id)

    with pytest.raises(HTTPException) as exception_info:
        book(db, patient, open_doctor, scheduled_at)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == (
        'This slot is currently being booked by another patient. Please try again.'
    )
    assert db.query(Appointment).count() == 0


def test_book_appointment_sweeps_expired_locks(db, patient, open_doctor, make_user) -> None:
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    scheduled_at = upcoming_at(10)
    hold_lock(db, open_doctor, scheduled_at, locked_by=other_patient.id, expires_in=timedelta(seconds=-1))

    response = book(db, patient, open_doctor, scheduled_at)

    assert response.status == AppointmentStatus.CONFIRMED
    assert db.query(AppointmentSlotLock).count() == 0


def test_book_appointment_releases_lock_when_slot_is_refused(db, patient, open_doctor) -> None:
    with pytest.raises(HTTPException):
        book(db, patient, open_doctor, upcoming_at(10, 15))

    assert db.query(AppointmentSlotLock).count() == 0


def test_get_appointment_is_limited_to_participants(db, patient, open_doctor, make_user) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(10))
    doctor_user = db.query(User).filter(User.id == open_doctor.user_id).first()
    admin = make_user('admin@example.com', UserRole.ADMIN)
    stranger = make_user('stranger@example.com', UserRole.PATIENT)

    assert get_appointment(appointment_id=booking.id, current_user=patient, db=db).id == booking.id
    assert get_appointment(appointment_id=booking.id, current_user=doctor_user, db=db).id == booking.id
    assert get_appointment(appointment_id=booking.id, current_user=admin, db=db).id == booking.id

    with pytest.raises(HTTPException) as exception_info:
        get_appointment(appointment_id=booking.id, current_user=stranger, db=db)
    assert exception_info.value.status_code == 403

    with pytest.raises(HTTPException) as exception_info:
        get_appointment(appointment_id=999, current_user=patient, db=db)
    assert exception_info.value.status_code == 404


def test_complete_appointment_keeps_the_slot_blocked(db, patient, open_doctor, make_user) -> None:
    scheduled_at = upcoming_at(10)
    booking = book(db, patient, open_doctor, scheduled_at)

    completed = complete_appointment(appointment_id=booking.id, doctor=open_doctor, db=db)

    assert completed.status == AppointmentStatus.COMPLETED
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    with pytest.raises(HTTPException) as exception_info:
        book(db, other_patient, open_doctor, scheduled_at)
    assert exception_info.value.detail == 'This time is already booked.'


def test_complete_appointment_rejects_other_doctor(db, patient, open_doctor, make_doctor) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(10))
    other_doctor = make_doctor(email='other@example.com')

    with pytest.raises(HTTPException) as exception_info:
        complete_appointment(appointment_id=booking.id, doctor=other_doctor, db=db)

    assert exception_info.value.status_code == 403


def test_mark_no_show_only_applies_to_confirmed(db, patient, open_doctor) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(10))

    assert mark_no_show(appointment_id=booking.id, doctor=open_doctor, db=db).status == AppointmentStatus.NO_SHOW

    with pytest.raises(HTTPException) as exception_info:
        complete_appointment(appointment_id=booking.id, doctor=open_doctor, db=db)
    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Only confirmed appointments can be marked as COMPLETED.'


def test_reschedule_moves_booking_and_frees_old_slot(db, patient, open_doctor, make_user) -> None:
    original = upcoming_at(10)
    booking = book(db, patient, open_doctor, original)

    moved = reschedule_appointment(
        appointment_id=booking.id,
        data=RescheduleAppointmentRequest(new_scheduled_at=upcoming_at(14)),
        patient=patient,
        db=db,
    )

    assert moved.id == booking.id
    assert moved.scheduled_at == upcoming_at(14)
    assert moved.status == AppointmentStatus.CONFIRMED
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    assert book(db, other_patient, open_doctor, original).status == AppointmentStatus.CONFIRMED


def test_reschedule_does_not_conflict_with_itself(db, patient, open_doctor) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(10), duration_minutes=60)

    moved = reschedule_appointment(
        appointment_id=booking.id,
        data=RescheduleAppointmentRequest(new_scheduled_at=upcoming_at(10)),
        patient=patient,
        db=db,
    )

    assert moved.scheduled_at == upcoming_at(10)
    assert moved.duration_minutes == 60


def test_reschedule_rejects_taken_slot(db, patient, open_doctor, make_user) -> None:
    other_patient = make_user('second@example.com', UserRole.PATIENT)
    book(db, other_patient, open_doctor, upcoming_at(14))
    booking = book(db, patient, open_doctor, upcoming_at(10))

    with pytest.raises(HTTPException) as exception_info:
        reschedule_appointment(
            appointment_id=booking.id,
            data=RescheduleAppointmentRequest(new_scheduled_at=upcoming_at(14)),
            patient=patient,
            db=db,
        )

    assert exception_info.value.status_code == 409
    stored = db.query(Appointment).filter(Appointment.id == booking.id).first()
    assert stored.scheduled_at == upcoming_at(10).replace(tzinfo=None)


@pytest.mark.parametrize(
    ('closing_status', 'detail'),
    [
        (AppointmentStatus.CANCELLED, 'Cannot reschedule a cancelled appointment.'),
        (AppointmentStatus.COMPLETED, 'Cannot reschedule a completed appointment.'),
    ],
)
def test_reschedule_rejects_closed_appointments(db, patient, open_doctor, closing_status, detail) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(10))
    stored = db.query(Appointment).filter(Appointment.id == booking.id).first()
    stored.status = closing_status.value
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        reschedule_appointment(
            appointment_id=booking.id,
            data=RescheduleAppointmentRequest(new_scheduled_at=upcoming_at(14)),
            patient=patient,
            db=db,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == detail


def test_reschedule_rejects_other_patient(db, patient, open_doctor, make_user) -> None:
    booking = book(db, patient, open_doctor, upcoming_at(10))
    stranger = make_user('stranger@example.com', UserRole.PATIENT)

    with pytest.raises(HTTPException) as exception_info:
        reschedule_appointment(
            appointment_id=booking.id,
            data=RescheduleAppointmentRequest(new_scheduled_at=upcoming_at(14)),
            patient=stranger,
            db=db,
        )

    assert exception_info.value.status_code == 403
