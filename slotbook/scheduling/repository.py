"""Data access for schedules, their slots and the appointments booked on them."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from slotbook.models.appointment import CANCELLED_STATUS, Appointment
from slotbook.models.schedule import Schedule, TimeSlot
from slotbook.scheduling.errors import ScheduleNotFoundError


class ScheduleRepository:
    """Reads and writes schedules through one SQLAlchemy session. Never commits."""

    def __init__(self, db: Session):
        self.db = db

    def load_schedule(self, schedule_id: int, user_id: int | None = None) -> Schedule:
        query = select(Schedule).options(selectinload(Schedule.availability_rules)).where(
            Schedule.id == schedule_id,
        )
        if user_id is not None:
            query = query.where(Schedule.user_id == user_id)

        schedule = self.db.execute(query).scalar_one_or_none()
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    def list_schedules(self, user_id: int) -> list[Schedule]:
        return list(
            self.db.execute(
                select(Schedule)
                .options(selectinload(Schedule.availability_rules))
                .where(Schedule.user_id == user_id)
                .order_by(Schedule.id.asc())
            ).scalars()
        )

    def save_schedule(self, schedule: Schedule) -> Schedule:
        self.db.add(schedule)
        self.db.flush()
        return schedule

    def delete_schedule(self, schedule: Schedule) -> None:
        self.db.delete(schedule)
        self.db.flush()

    def find_active_appointments(self, schedule_id: int) -> list[tuple[datetime, datetime]]:
        """Bounds of every non-cancelled appointment on the schedule, by start time."""
        rows = self.db.execute(
            select(Appointment.start_time, Appointment.end_time)
            .where(
                Appointment.schedule_id == schedule_id,
                Appointment.status != CANCELLED_STATUS,
            )
            .order_by(Appointment.start_time.asc())
        ).all()
        return [(start_time, end_time) for start_time, end_time in rows]

    def list_time_slots(
        self,
        schedule_id: int,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
        only_available: bool = False,
    ) -> list[TimeSlot]:
        query = select(TimeSlot).where(TimeSlot.schedule_id == schedule_id)
        if range_start is not None:
            query = query.where(TimeSlot.start_time >= range_start)
        if range_end is not None:
            query = query.where(TimeSlot.start_time <= range_end)
        if only_available:
            query = query.where(TimeSlot.available.is_(True))

        query = query.order_by(TimeSlot.start_time.asc(), TimeSlot.end_time.asc())
        return list(self.db.execute(query.execution_options(populate_existing=True)).scalars())

    def time_slot_span(self, schedule_id: int) -> tuple[datetime, datetime] | None:
        """Earliest slot start and latest slot end on the schedule, or None without slots."""
        first_start, last_end = self.db.execute(
            select(func.min(TimeSlot.start_time), func.max(TimeSlot.end_time)).where(
                TimeSlot.schedule_id == schedule_id,
            )
        ).one()
        if first_start is None:
            return None
        return first_start, last_end
