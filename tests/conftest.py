import os
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from slotbook.database import Base  # noqa: E402
from slotbook.models.appointment import Appointment  # noqa: E402
from slotbook.models.schedule import AvailabilityRule, Schedule  # noqa: E402
from slotbook.models.user import User  # noqa: E402


def build_schedule_template(duration=30, buffer_before=0, buffer_after=0, rules=()):
    """Plain stand-in for a Schedule row, enough for the slot generator."""
    return SimpleNamespace(
        duration=duration,
        buffer_before=buffer_before,
        buffer_after=buffer_after,
        availability_rules=[
            SimpleNamespace(day_of_week=day_of_week, start_time=start_time, end_time=end_time)
            for day_of_week, start_time, end_time in rules
        ],
    )


@pytest.fixture
def schedule_template():
    return build_schedule_template


@pytest.fixture
def db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def skip_schema_bootstrap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('slotbook.routes.schedule_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('slotbook.routes.appointment_routes.ensure_database_ready', lambda: None)


@pytest.fixture
def owner(db) -> User:
    user = User(email='owner@example.com', name='Owner', business_name='Owner Studio')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def make_schedule(db, owner):
    def _make_schedule(duration=30, buffer_before=0, buffer_after=0, rules=((1, '09:00', '10:00'),), user=None):
        schedule = Schedule(
            user_id=(user or owner).id,
            title='Consultation',
            duration=duration,
            buffer_before=buffer_before,
            buffer_after=buffer_after,
            active=True,
        )
        schedule.availability_rules = [
            AvailabilityRule(day_of_week=day_of_week, start_time=start_time, end_time=end_time)
            for day_of_week, start_time, end_time in rules
        ]
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        return schedule

    return _make_schedule


@pytest.fixture
def make_appointment(db, owner):
    def _make_appointment(schedule, start_time: datetime, end_time: datetime, status='scheduled'):
        appointment = Appointment(
            schedule_id=schedule.id,
            user_id=owner.id,
            client_name='Client',
            client_email='client@example.com',
            start_time=start_time,
            end_time=end_time,
            status=status,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make_appointment
