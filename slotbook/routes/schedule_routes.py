import logging
import re
from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slotbook.auth.dependencies import get_current_user
from slotbook.core import config
from slotbook.database import get_db
from slotbook.models.appointment import Appointment
from slotbook.models.schedule import AvailabilityRule, Schedule
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
from slotbook.scheduling.slot_generator import (
    find_overlapping_rules,
    format_time_of_day,
    generate_time_slots,
    parse_time_of_day,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=['schedules'])

LOCATION_TYPES = ('physical', 'virtual', 'phone')
DEFAULT_COLOR = '#3498db'
HEX_COLOR_PATTERN = re.compile(r'^#[0-9A-Fa-f]{6}$')

# PUT may clear these with an explicit null; every other field keeps its value.
NULLABLE_SCHEDULE_FIELDS = {'description', 'location_details'}
SLOT_SHAPE_FIELDS = {'duration', 'buffer_before', 'buffer_after'}


class AvailabilityRuleRequest(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if value not in range(7):
            raise ValueError('Day of week must be between 0 and 6.')
        return value

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_time_of_day(cls, value: str) -> str:
        return format_time_of_day(parse_time_of_day(value))

    @model_validator(mode='after')
    def validate_window(self) -> 'AvailabilityRuleRequest':
        if parse_time_of_day(self.start_time) >= parse_time_of_day(self.end_time):
            raise ValueError('Start time must be before end time.')
        return self


def validate_rule_set(rules: list[AvailabilityRuleRequest]) -> list[AvailabilityRuleRequest]:
    overlapping = find_overlapping_rules(rules)
    if overlapping:
        first, second = overlapping[0]
        raise ValueError(
            f'Availability windows {first.start_time}-{first.end_time} and '
            f'{second.start_time}-{second.end_time} overlap on day {first.day_of_week}.'
        )
    return rules


def validate_location_type(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in LOCATION_TYPES:
        raise ValueError('Location type must be physical, virtual, or phone.')
    return normalized


def validate_color(value: str | None) -> str | None:
    if value is None:
        return None
    if not HEX_COLOR_PATTERN.match(value):
        raise ValueError('Color must be a valid hex color.')
    return value.lower()


def validate_title(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        raise ValueError('Title is required.')
    return normalized


class CreateScheduleRequest(BaseModel):
    title: str
    description: str | None = None
    duration: int
    buffer_before: int = 0
    buffer_after: int = 0
    availability: list[AvailabilityRuleRequest]
    location_type: str = 'virtual'
    location_details: str | None = None
    color: str = DEFAULT_COLOR

    normalize_title = field_validator('title')(validate_title)
    normalize_location_type = field_validator('location_type')(validate_location_type)
    normalize_color = field_validator('color')(validate_color)
    check_availability = field_validator('availability')(validate_rule_set)

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value < config.MIN_SLOT_DURATION_MINUTES:
            raise ValueError(f'Duration must be at least {config.MIN_SLOT_DURATION_MINUTES} minutes.')
        return value

    @field_validator('buffer_before', 'buffer_after')
    @classmethod
    def validate_buffer(cls, value: int) -> int:
        if value < 0:
            raise ValueError('Buffers must not be negative.')
        return value


class UpdateScheduleRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    duration: int | None = None
    buffer_before: int | None = None
    buffer_after: int | None = None
    availability: list[AvailabilityRuleRequest] | None = None
    location_type: str | None = None
    location_details: str | None = None
    color: str | None = None
    active: bool | None = None

    normalize_title = field_validator('title')(validate_title)
    normalize_location_type = field_validator('location_type')(validate_location_type)
    normalize_color = field_validator('color')(validate_color)

    @field_validator('availability')
    @classmethod
    def validate_availability(cls, value: list[AvailabilityRuleRequest] | None) -> list[AvailabilityRuleRequest] | None:
        if value is None:
            return None
        return validate_rule_set(value)

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, value: int | None) -> int | None:
        if value is not None and value < config.MIN_SLOT_DURATION_MINUTES:
            raise ValueError(f'Duration must be at least {config.MIN_SLOT_DURATION_MINUTES} minutes.')
        return value

    @field_validator('buffer_before', 'buffer_after')
    @classmethod
    def validate_buffer(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError('Buffers must not be negative.')
        return value


def normalize_range_bound(value: datetime | date) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    return to_naive_utc(value)


class GenerateTimeSlotsRequest(BaseModel):
    start_date: datetime | date
    end_date: datetime | date

    @field_validator('start_date', 'end_date')
    @classmethod
    def normalize_bounds(cls, value: datetime | date) -> datetime:
        return normalize_range_bound(value)


class AvailabilityRuleResponse(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str

    class Config:
        from_attributes = True


class ScheduleResponse(BaseModel):
    id: int
    title: str
    description: str | None = None
    duration: int
    buffer_before: int
    buffer_after: int
    availability: list[AvailabilityRuleResponse]
    location_type: str | None = None
    location_details: str | None = None
    active: bool
    color: str | None = None


class TimeSlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    available: bool

    class Config:
        from_attributes = True


class TimeRangeResponse(BaseModel):
    start_time: datetime
    end_time: datetime


class UpdateScheduleResponse(ScheduleResponse):
    unmatched_appointments: list[TimeRangeResponse] = []


class GenerateTimeSlotsResponse(BaseModel):
    schedule: ScheduleResponse
    time_slots: list[TimeSlotResponse]
    unmatched_appointments: list[TimeRangeResponse]


def build_schedule_response(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=schedule.id,
        title=schedule.title,
        description=schedule.description,
        duration=schedule.duration,
        buffer_before=schedule.buffer_before or 0,
        buffer_after=schedule.buffer_after or 0,
        availability=[AvailabilityRuleResponse.model_validate(rule) for rule in schedule.availability_rules],
        location_type=schedule.location_type,
        location_details=schedule.location_details,
        active=bool(schedule.active),
        color=schedule.color,
    )


def build_rules(availability: list[AvailabilityRuleRequest]) -> list[AvailabilityRule]:
    return [
        AvailabilityRule(day_of_week=rule.day_of_week, start_time=rule.start_time, end_time=rule.end_time)
        for rule in availability
    ]


@router.post('', response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
def create_schedule(
    data: CreateScheduleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        schedule = Schedule(
            user_id=current_user.id,
            title=data.title,
            description=data.description,
            duration=data.duration,
            buffer_before=data.buffer_before,
            buffer_after=data.buffer_after,
            location_type=data.location_type,
            location_details=data.location_details,
            color=data.color,
            active=True,
        )
        schedule.availability_rules = build_rules(data.availability)

        ScheduleRepository(db).save_schedule(schedule)
        db.commit()
        db.refresh(schedule)
        logger.info('Created schedule %s for user %s', schedule.id, current_user.id)

        return build_schedule_response(schedule)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('', response_model=list[ScheduleResponse])
def list_schedules(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        schedules = ScheduleRepository(db).list_schedules(current_user.id)
        return [build_schedule_response(schedule) for schedule in schedules]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{schedule_id}', response_model=ScheduleResponse)
def get_schedule(
    schedule_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        schedule = ScheduleRepository(db).load_schedule(schedule_id, current_user.id)
        return build_schedule_response(schedule)
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def rule_bounds(rules) -> list[tuple[int, str, str]]:
    return sorted((rule.day_of_week, rule.start_time, rule.end_time) for rule in rules)


@router.put('/{schedule_id}', response_model=UpdateScheduleResponse)
def update_schedule(
    schedule_id: int,
    data: UpdateScheduleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        repository = ScheduleRepository(db)
        schedule = repository.load_schedule(schedule_id, current_user.id)
        reshaped = False

        changes = data.model_dump(exclude_unset=True, exclude={'availability'})
        for field_name, value in changes.items():
            if value is None and field_name not in NULLABLE_SCHEDULE_FIELDS:
                continue
            if field_name in SLOT_SHAPE_FIELDS and value != getattr(schedule, field_name):
                reshaped = True
            setattr(schedule, field_name, value)

        if data.availability is not None:
            if rule_bounds(data.availability) != rule_bounds(schedule.availability_rules):
                reshaped = True
            schedule.availability_rules = build_rules(data.availability)

        repository.save_schedule(schedule)

        unmatched = []
        span = repository.time_slot_span(schedule.id) if reshaped else None
        if span is not None:
            # Stored slots follow the old shape; rebuild them over the days they cover.
            first_start, last_end = span
            generated_slots = generate_time_slots(schedule, first_start.date(), last_end.date())
            unmatched = AvailabilityLedger(db, repository).replace_all(schedule.id, generated_slots)

        db.commit()
        db.refresh(schedule)

        return UpdateScheduleResponse(
            **build_schedule_response(schedule).model_dump(),
            unmatched_appointments=[
                TimeRangeResponse(start_time=start_time, end_time=end_time)
                for start_time, end_time in unmatched
            ],
        )
    except SchedulingError as exc:
        db.rollback()
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{schedule_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule(
    schedule_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        repository = ScheduleRepository(db)
        schedule = repository.load_schedule(schedule_id, current_user.id)

        if repository.find_active_appointments(schedule.id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='Schedule still has active appointments. Cancel them first.',
            )

        db.query(Appointment).filter(Appointment.schedule_id == schedule.id).delete(synchronize_session=False)
        repository.delete_schedule(schedule)
        db.commit()
        logger.info('Deleted schedule %s for user %s', schedule_id, current_user.id)
    except SchedulingError as exc:
        db.rollback()
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{schedule_id}/time-slots', response_model=GenerateTimeSlotsResponse)
def generate_schedule_time_slots(
    schedule_id: int,
    data: GenerateTimeSlotsRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if (data.end_date - data.start_date).days > config.MAX_GENERATION_RANGE_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Time slots can be generated for at most {config.MAX_GENERATION_RANGE_DAYS} days at once.',
        )

    try:
        repository = ScheduleRepository(db)
        schedule = repository.load_schedule(schedule_id, current_user.id)

        generated_slots = generate_time_slots(schedule, data.start_date, data.end_date)
        # Regeneration and re-claiming of active bookings share one transaction.
        unmatched = AvailabilityLedger(db, repository).replace_all(schedule.id, generated_slots)
        db.commit()

        time_slots = repository.list_time_slots(schedule.id)
        return GenerateTimeSlotsResponse(
            schedule=build_schedule_response(schedule),
            time_slots=[TimeSlotResponse.model_validate(slot) for slot in time_slots],
            unmatched_appointments=[
                TimeRangeResponse(start_time=start_time, end_time=end_time)
                for start_time, end_time in unmatched
            ],
        )
    except SchedulingError as exc:
        db.rollback()
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{schedule_id}/time-slots', response_model=list[TimeSlotResponse])
def list_schedule_time_slots(
    schedule_id: int,
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    available_only: bool = Query(default=False),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        repository = ScheduleRepository(db)
        schedule = repository.load_schedule(schedule_id, current_user.id)

        return [
            TimeSlotResponse.model_validate(slot)
            for slot in repository.list_time_slots(
                schedule.id,
                range_start=to_naive_utc(start_date) if start_date else None,
                range_end=to_naive_utc(end_date) if end_date else None,
                only_available=available_only,
            )
        ]
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
