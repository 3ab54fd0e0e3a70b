"""Schedule, availability rule and time slot model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from slotbook.database import Base


class Schedule(Base):
    """A bookable service definition owned by one user."""
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String)
    duration = Column(Integer, nullable=False)  # minutes
    buffer_before = Column(Integer, nullable=False, default=0)
    buffer_after = Column(Integer, nullable=False, default=0)
    location_type = Column(String, default="virtual")
    location_details = Column(String)
    active = Column(Boolean, nullable=False, default=True)
    color = Column(String, default="#3498db")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    availability_rules = relationship(
        "AvailabilityRule",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="AvailabilityRule.id",
    )
    time_slots = relationship(
        "TimeSlot",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="TimeSlot.start_time",
    )


class AvailabilityRule(Base):
    """One weekday's open window, times stored as HH:MM."""
    __tablename__ = "availability_rules"

    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)

    schedule = relationship("Schedule", back_populates="availability_rules")


class TimeSlot(Base):
    """A concrete bookable interval generated from a schedule."""
    __tablename__ = "time_slots"
    __table_args__ = (
        UniqueConstraint("schedule_id", "start_time", "end_time", name="uq_time_slots_schedule_range"),
    )

    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    available = Column(Boolean, nullable=False, default=True)

    schedule = relationship("Schedule", back_populates="time_slots")
