"""
Error hierarchy for slot generation and slot bookkeeping.

Every error is recoverable by the caller; ``status_code`` is the HTTP status
the REST layer answers with.
"""

from datetime import datetime


class SchedulingError(Exception):
    """Base class for all scheduling errors."""

    status_code = 400


class InvalidRangeError(SchedulingError):
    """Raised when a generation range starts after it ends."""

    def __init__(self, range_start: datetime, range_end: datetime):
        self.range_start = range_start
        self.range_end = range_end
        super().__init__(f"Start date {range_start} must not be after end date {range_end}.")


class InvalidScheduleConfigError(SchedulingError):
    """Raised when a schedule cannot produce slots (bad duration, buffers or no usable rules)."""


class ScheduleNotFoundError(SchedulingError):
    status_code = 404

    def __init__(self, schedule_id: int):
        self.schedule_id = schedule_id
        super().__init__("Schedule not found.")


class SlotNotFoundError(SchedulingError):
    """Raised when no time slot matches the exact requested bounds."""

    status_code = 404

    def __init__(self, schedule_id: int, start: datetime, end: datetime):
        self.schedule_id = schedule_id
        self.start = start
        self.end = end
        super().__init__(f"No time slot {start:%Y-%m-%d %H:%M} - {end:%H:%M} exists on this schedule.")


class SlotAlreadyClaimedError(SchedulingError):
    """Raised when the matching time slot is already booked."""

    status_code = 409

    def __init__(self, schedule_id: int, start: datetime, end: datetime):
        self.schedule_id = schedule_id
        self.start = start
        self.end = end
        super().__init__(f"Time slot {start:%Y-%m-%d %H:%M} - {end:%H:%M} is already booked.")
