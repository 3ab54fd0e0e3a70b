"""Appointment model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from slotbook.database import Base

APPOINTMENT_STATUSES = ("scheduled", "confirmed", "cancelled", "completed", "no-show")
APPOINTMENT_SOURCES = ("whatsapp", "facebook", "instagram", "website", "manual")
CANCELLED_STATUS = "cancelled"


class Appointment(Base):
    """Represents a client's booking against one time slot of a schedule."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    client_name = Column(String, nullable=False)
    client_email = Column(String, nullable=False)
    client_phone = Column(String)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default="scheduled")
    notes = Column(String)
    source = Column(String, default="manual")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status != CANCELLED_STATUS
