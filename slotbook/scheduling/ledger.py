"""
Claim/release bookkeeping over a schedule's time slots.

Every mutation is a single conditional UPDATE scoped to one schedule and one
exact ``(start_time, end_time)`` pair, so two concurrent claims on the same
slot cannot both succeed: the database lets exactly one of them flip
``available`` from true to false. No in-process locking is involved.

The ledger never commits. The caller owns the transaction and must roll back
when any ledger call raises.
"""

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, exists, select, update
from sqlalchemy.orm import Session

from slotbook.models.schedule import TimeSlot
from slotbook.scheduling.errors import SlotAlreadyClaimedError, SlotNotFoundError
from slotbook.scheduling.repository import ScheduleRepository
from slotbook.scheduling.slot_generator import GeneratedSlot

logger = logging.getLogger(__name__)

TimeRange = tuple[datetime, datetime]


class AvailabilityLedger:
    def __init__(self, db: Session, repository: ScheduleRepository | None = None):
        self.db = db
        self.repository = repository or ScheduleRepository(db)

    def _slot_filter(self, schedule_id: int, start: datetime, end: datetime) -> tuple:
        return (
            TimeSlot.schedule_id == schedule_id,
            TimeSlot.start_time == start,
            TimeSlot.end_time == end,
        )

    def _overlap_filter(self, schedule_id: int, start: datetime, end: datetime) -> tuple:
        return (
            TimeSlot.schedule_id == schedule_id,
            TimeSlot.start_time < end,
            TimeSlot.end_time > start,
        )

    def slot_exists(self, schedule_id: int, start: datetime, end: datetime) -> bool:
        return bool(self.db.execute(select(exists().where(*self._slot_filter(schedule_id, start, end)))).scalar())

    def is_available(self, schedule_id: int, start: datetime, end: datetime) -> bool:
        available = self.db.execute(
            select(TimeSlot.available).where(*self._slot_filter(schedule_id, start, end))
        ).scalar_one_or_none()
        if available is None:
            raise SlotNotFoundError(schedule_id, start, end)
        return bool(available)

    def claim(self, schedule_id: int, start: datetime, end: datetime) -> None:
        """
        Mark the slot with exactly these bounds as booked.

        Raises:
            SlotNotFoundError: no slot has these bounds on the schedule.
            SlotAlreadyClaimedError: the slot is already booked.
        """
        result = self.db.execute(
            update(TimeSlot)
            .where(*self._slot_filter(schedule_id, start, end), TimeSlot.available.is_(True))
            .values(available=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug("Claimed slot %s - %s on schedule %s", start, end, schedule_id)
            return

        if self.slot_exists(schedule_id, start, end):
            raise SlotAlreadyClaimedError(schedule_id, start, end)
        raise SlotNotFoundError(schedule_id, start, end)

    def release(self, schedule_id: int, start: datetime, end: datetime, missing_ok: bool = False) -> None:
        """
        Mark the slot as available again. Releasing a free slot is a no-op.

        A missing slot raises SlotNotFoundError unless ``missing_ok`` is set,
        which callers use for bookings whose slot was dropped by regeneration.
        In that case the slots blocked on the booking's behalf are freed.
        """
        result = self.db.execute(
            update(TimeSlot)
            .where(*self._slot_filter(schedule_id, start, end))
            .values(available=True)
            .execution_options(synchronize_session=False)
        )
        # Some drivers report only changed rows, so zero does not prove absence.
        if result.rowcount == 0 and not self.slot_exists(schedule_id, start, end):
            if not missing_ok:
                raise SlotNotFoundError(schedule_id, start, end)
            freed = self.unblock_overlapping(schedule_id, start, end)
            logger.warning(
                "No slot %s - %s on schedule %s to release, freed %d overlapping slots",
                start,
                end,
                schedule_id,
                freed,
            )
            return
        logger.debug("Released slot %s - %s on schedule %s", start, end, schedule_id)

    def block_overlapping(self, schedule_id: int, start: datetime, end: datetime) -> int:
        """Claim every free slot intersecting ``[start, end)``. Returns the number claimed."""
        result = self.db.execute(
            update(TimeSlot)
            .where(*self._overlap_filter(schedule_id, start, end), TimeSlot.available.is_(True))
            .values(available=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def unblock_overlapping(self, schedule_id: int, start: datetime, end: datetime) -> int:
        """
        Free the claimed slots intersecting ``[start, end)`` that no other
        active appointment still overlaps. Returns the number freed.

        The booking being released is expected to still be active, so one
        occurrence of its own bounds is left out of the check.
        """
        others = self.repository.find_active_appointments(schedule_id)
        if (start, end) in others:
            others.remove((start, end))

        rows = self.db.execute(
            select(TimeSlot.id, TimeSlot.start_time, TimeSlot.end_time).where(
                *self._overlap_filter(schedule_id, start, end),
                TimeSlot.available.is_(False),
            )
        ).all()
        freed = [
            row.id
            for row in rows
            if not any(row.start_time < other_end and row.end_time > other_start for other_start, other_end in others)
        ]
        if not freed:
            return 0

        self.db.execute(
            update(TimeSlot)
            .where(TimeSlot.id.in_(freed))
            .values(available=True)
            .execution_options(synchronize_session=False)
        )
        return len(freed)

    def reschedule(
        self,
        schedule_id: int,
        old_range: TimeRange,
        new_range: TimeRange,
        missing_ok: bool = False,
    ) -> None:
        """Release ``old_range`` and claim ``new_range`` in the caller's transaction."""
        if old_range == new_range:
            return
        self.release(schedule_id, *old_range, missing_ok=missing_ok)
        self.claim(schedule_id, *new_range)

    def replace_all(self, schedule_id: int, new_slots: Iterable[GeneratedSlot]) -> list[TimeRange]:
        """
        Install a freshly generated slot sequence and re-apply active bookings.

        Existing slots are discarded. Every non-cancelled appointment is then
        claimed again against the new sequence in the same transaction, and
        any new slot overlapping an active appointment is blocked as well.
        Returns the appointment bounds that no longer match any slot.
        """
        self.db.execute(
            delete(TimeSlot)
            .where(TimeSlot.schedule_id == schedule_id)
            .execution_options(synchronize_session="fetch")
        )

        seen: set[TimeRange] = set()
        for slot in new_slots:
            bounds = (slot.start_time, slot.end_time)
            if bounds in seen:
                continue
            seen.add(bounds)
            self.db.add(
                TimeSlot(
                    schedule_id=schedule_id,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    available=slot.available,
                )
            )
        self.db.flush()

        active = self.repository.find_active_appointments(schedule_id)
        unmatched: list[TimeRange] = []
        for start, end in active:
            try:
                self.claim(schedule_id, start, end)
            except SlotNotFoundError:
                logger.warning(
                    "Active appointment %s - %s on schedule %s has no matching slot after regeneration",
                    start,
                    end,
                    schedule_id,
                )
                unmatched.append((start, end))
            except SlotAlreadyClaimedError:
                logger.warning(
                    "More than one active appointment occupies slot %s - %s on schedule %s",
                    start,
                    end,
                    schedule_id,
                )

        # Exact matches are claimed first so blocking cannot steal their slots.
        for start, end in active:
            blocked = self.block_overlapping(schedule_id, start, end)
            if blocked:
                logger.warning(
                    "Blocked %d slots overlapping appointment %s - %s on schedule %s",
                    blocked,
                    start,
                    end,
                    schedule_id,
                )

        logger.info(
            "Replaced slots on schedule %s: %d installed, %d unmatched appointments",
            schedule_id,
            len(seen),
            len(unmatched),
        )
        return unmatched
