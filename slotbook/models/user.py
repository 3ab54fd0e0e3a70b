"""User model definitions."""

from sqlalchemy import Column, Integer, String
from slotbook.database import Base


class User(Base):
    """Represents a business account that owns schedules."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    business_name = Column(String)
    role = Column(String, default="business")  # admin/business/user
    timezone = Column(String, default="UTC")
