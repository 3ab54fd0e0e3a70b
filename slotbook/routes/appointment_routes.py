import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slotbook.auth.dependencies import get_current_user
from slotbook.database import get_db
from slotbook.models.appointment import (
    APPOINTMENT_SOURCES,
    APPOINTMENT_STATUSES,
    CANCELLED_STATUS,
    Appointment,
)
from slotbook.models.user import User
from slotbook.routes.common import (
    database_unavailable,
    ensure_database_ready,
    scheduling_http_error,
    to_naive_utc,
)
from slotbook.scheduling.errors import SchedulingError
from slotbook.scheduling.ledger import AvailabilityLedger
from slotbook.scheduling.repository import ScheduleRepository

logger = logging.getLogger(__name__)

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 600


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    local_part, _, domain = normalized.partition('@')
    if not local_part or '.' not in domain:
        raise ValueError('Valid client email is required.')
    return normalized


def normalize_notes(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


def normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class ClientRequest(BaseModel):
    name: str
    email: str
    phone: str | None = None

    check_email = field_validator('email')(normalize_email)
    normalize_phone = field_validator('phone')(normalize_optional_text)

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Client name is required.')
        return normalized


class ClientUpdateRequest(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    normalize_name = field_validator('name')(normalize_optional_text)
    check_email = field_validator('email')(normalize_email)
    normalize_phone = field_validator('phone')(normalize_optional_text)


class CreateAppointmentRequest(BaseModel):
    schedule_id: int
    start_time: datetime
    end_time: datetime
    client: ClientRequest
    notes: str | None = None
    source: str = 'manual'

    check_notes = field_validator('notes')(normalize_notes)

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @field_validator('source')
    @classmethod
    def validate_source(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_SOURCES:
            raise ValueError('Source must be valid.')
        return normalized

    @model_validator(mode='after')
    def validate_bounds(self) -> 'CreateAppointmentRequest':
        if self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


class UpdateAppointmentRequest(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    client: ClientUpdateRequest | None = None
    notes: str | None = None
    status: str | None = None

    check_notes = field_validator('notes')(normalize_notes)

    @field_validator('start_time', 'end_time')
    @classmethod
    def normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return to_naive_utc(value)

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValueError('Status must be valid.')
        return normalized

    @model_validator(mode='after')
    def validate_bounds(self) -> 'UpdateAppointmentRequest':
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError('Start time and end time must be changed together.')
        if self.start_time is not None and self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


class CancelAppointmentRequest(BaseModel):
    cancellation_reason: str | None = None

    normalize_reason = field_validator('cancellation_reason')(normalize_optional_text)


class AppointmentResponse(BaseModel):
    id: int
    schedule_id: int
    client_name: str
    client_email: str
    client_phone: str | None = None
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    source: str | None = None

    class Config:
        from_attributes = True


def get_owned_appointment(appointment_id: int, user_id: int, db: Session) -> Appointment:
    appointment = db.query(Appointment).filter(
        Appointment.id == appointment_id,
        Appointment.user_id == user_id,
    ).first()
    if not appointment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Appointment not found.',
        )
    return appointment


def append_cancellation_reason(notes: str | None, reason: str | None) -> str | None:
    if not reason:
        return notes
    if notes:
        return f'{notes}\n\nCancellation reason: {reason}'
    return f'Cancellation reason: {reason}'


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        repository = ScheduleRepository(db)
        schedule = repository.load_schedule(data.schedule_id, current_user.id)
        if not schedule.active:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='This schedule is not accepting bookings.',
            )

        AvailabilityLedger(db, repository).claim(schedule.id, data.start_time, data.end_time)

        appointment = Appointment(
            schedule_id=schedule.id,
            user_id=current_user.id,
            client_name=data.client.name,
            client_email=data.client.email,
            client_phone=data.client.phone,
            start_time=data.start_time,
            end_time=data.end_time,
            status='scheduled',
            notes=data.notes,
            source=data.source,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        logger.info('Booked appointment %s on schedule %s at %s', appointment.id, schedule.id, appointment.start_time)

        return appointment
    except SchedulingError as exc:
        db.rollback()
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias='status'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if status_filter is not None and status_filter not in APPOINTMENT_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Status must be valid.',
        )

    try:
        query = db.query(Appointment).filter(Appointment.user_id == current_user.id)
        if start_date is not None:
            query = query.filter(Appointment.start_time >= to_naive_utc(start_date))
        if end_date is not None:
            query = query.filter(Appointment.start_time <= to_naive_utc(end_date))
        if status_filter is not None:
            query = query.filter(Appointment.status == status_filter)

        return query.order_by(Appointment.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return get_owned_appointment(appointment_id, current_user.id, db)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{appointment_id}', response_model=AppointmentResponse)
def update_appointment(
    appointment_id: int,
    data: UpdateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_owned_appointment(appointment_id, current_user.id, db)
        ledger = AvailabilityLedger(db)

        old_range = (appointment.start_time, appointment.end_time)
        new_range = (data.start_time, data.end_time) if data.start_time is not None else old_range
        new_status = data.status or appointment.status
        was_active = appointment.status != CANCELLED_STATUS
        stays_active = new_status != CANCELLED_STATUS

        if was_active and stays_active:
            ledger.reschedule(appointment.schedule_id, old_range, new_range, missing_ok=True)
        elif was_active:
            ledger.release(appointment.schedule_id, *old_range, missing_ok=True)
        elif stays_active:
            ledger.claim(appointment.schedule_id, *new_range)

        appointment.start_time, appointment.end_time = new_range
        appointment.status = new_status
        if data.client is not None:
            appointment.client_name = data.client.name or appointment.client_name
            appointment.client_email = data.client.email or appointment.client_email
            appointment.client_phone = data.client.phone or appointment.client_phone
        if 'notes' in data.model_fields_set:
            appointment.notes = data.notes

        db.commit()
        db.refresh(appointment)

        return appointment
    except SchedulingError as exc:
        db.rollback()
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = get_owned_appointment(appointment_id, current_user.id, db)
        if appointment.status == CANCELLED_STATUS:
            return appointment

        AvailabilityLedger(db).release(
            appointment.schedule_id,
            appointment.start_time,
            appointment.end_time,
            missing_ok=True,
        )
        appointment.status = CANCELLED_STATUS
        appointment.notes = append_cancellation_reason(
            appointment.notes,
            data.cancellation_reason if data else None,
        )

        db.commit()
        db.refresh(appointment)
        logger.info('Cancelled appointment %s on schedule %s', appointment.id, appointment.schedule_id)

        return appointment
    except SchedulingError as exc:
        db.rollback()
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
