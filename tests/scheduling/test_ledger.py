import threading
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from slotbook.database import Base
from slotbook.models.schedule import AvailabilityRule, Schedule, TimeSlot
from slotbook.models.user import User
from slotbook.scheduling.errors import SlotAlreadyClaimedError, SlotNotFoundError
from slotbook.scheduling.ledger import AvailabilityLedger
from slotbook.scheduling.slot_generator import GeneratedSlot, generate_time_slots

MONDAY = date(2026, 1, 5)
NINE = datetime(2026, 1, 5, 9, 0)
NINE_THIRTY = datetime(2026, 1, 5, 9, 30)
TEN = datetime(2026, 1, 5, 10, 0)
ELEVEN = datetime(2026, 1, 5, 11, 0)


@pytest.fixture
def schedule(db, make_schedule):
    schedule = make_schedule(duration=30, rules=[(1, '09:00', '11:00')])
    AvailabilityLedger(db).replace_all(schedule.id, generate_time_slots(schedule, MONDAY, MONDAY))
    db.commit()
    return schedule


def test_claim_marks_slot_unavailable(db, schedule) -> None:
    ledger = AvailabilityLedger(db)

    ledger.claim(schedule.id, NINE, NINE_THIRTY)

    assert ledger.is_available(schedule.id, NINE, NINE_THIRTY) is False
    assert ledger.is_available(schedule.id, NINE_THIRTY, TEN) is True


def test_second_claim_on_same_slot_is_rejected(db, schedule) -> None:
    ledger = AvailabilityLedger(db)
    ledger.claim(schedule.id, NINE, NINE_THIRTY)

    with pytest.raises(SlotAlreadyClaimedError):
        ledger.claim(schedule.id, NINE, NINE_THIRTY)


def test_claim_requires_exact_slot_bounds(db, schedule) -> None:
    ledger = AvailabilityLedger(db)

    with pytest.raises(SlotNotFoundError):
        ledger.claim(schedule.id, NINE, TEN)
    with pytest.raises(SlotNotFoundError):
        ledger.claim(schedule.id + 1, NINE, NINE_THIRTY)


def test_release_is_idempotent(db, schedule) -> None:
    ledger = AvailabilityLedger(db)
    ledger.claim(schedule.id, NINE, NINE_THIRTY)

    ledger.release(schedule.id, NINE, NINE_THIRTY)
    assert ledger.is_available(schedule.id, NINE, NINE_THIRTY) is True

    ledger.release(schedule.id, NINE, NINE_THIRTY)
    assert ledger.is_available(schedule.id, NINE, NINE_THIRTY) is True


def test_release_of_unknown_slot_raises_unless_missing_ok(db, schedule) -> None:
    ledger = AvailabilityLedger(db)

    with pytest.raises(SlotNotFoundError):
        ledger.release(schedule.id, NINE, TEN)

    ledger.release(schedule.id, NINE, TEN, missing_ok=True)


def test_reschedule_moves_the_claim(db, schedule) -> None:
    ledger = AvailabilityLedger(db)
    ledger.claim(schedule.id, NINE, NINE_THIRTY)

    ledger.reschedule(schedule.id, (NINE, NINE_THIRTY), (NINE_THIRTY, TEN))

    assert ledger.is_available(schedule.id, NINE, NINE_THIRTY) is True
    assert ledger.is_available(schedule.id, NINE_THIRTY, TEN) is False


def test_failed_reschedule_keeps_original_claim_after_rollback(db, schedule) -> None:
    ledger = AvailabilityLedger(db)
    ledger.claim(schedule.id, NINE, NINE_THIRTY)
    ledger.claim(schedule.id, NINE_THIRTY, TEN)
    db.commit()

    with pytest.raises(SlotAlreadyClaimedError):
        ledger.reschedule(schedule.id, (NINE, NINE_THIRTY), (NINE_THIRTY, TEN))
    db.rollback()

    assert ledger.is_available(schedule.id, NINE, NINE_THIRTY) is False
    assert ledger.is_available(schedule.id, NINE_THIRTY, TEN) is False


def test_replace_all_reclaims_slots_of_active_appointments(db, schedule, make_appointment) -> None:
    make_appointment(schedule, NINE, NINE_THIRTY)
    make_appointment(schedule, NINE_THIRTY, TEN, status='cancelled')
    ledger = AvailabilityLedger(db)

    unmatched = ledger.replace_all(schedule.id, generate_time_slots(schedule, MONDAY, MONDAY))
    db.commit()

    assert unmatched == []
    assert ledger.is_available(schedule.id, NINE, NINE_THIRTY) is False
    assert ledger.is_available(schedule.id, NINE_THIRTY, TEN) is True


def test_replace_all_blocks_slots_overlapping_unmatched_appointments(db, schedule, make_appointment) -> None:
    make_appointment(schedule, NINE, NINE_THIRTY)
    schedule.duration = 60
    db.commit()
    ledger = AvailabilityLedger(db)

    unmatched = ledger.replace_all(schedule.id, generate_time_slots(schedule, MONDAY, MONDAY))

    assert unmatched == [(NINE, NINE_THIRTY)]
    assert ledger.is_available(schedule.id, NINE, TEN) is False
    assert ledger.is_available(schedule.id, TEN, ELEVEN) is True


def test_release_with_missing_ok_frees_slots_blocked_for_the_appointment(db, schedule, make_appointment) -> None:
    make_appointment(schedule, NINE, NINE_THIRTY)
    make_appointment(schedule, TEN, datetime(2026, 1, 5, 10, 30))
    schedule.duration = 60
    db.commit()
    ledger = AvailabilityLedger(db)
    ledger.replace_all(schedule.id, generate_time_slots(schedule, MONDAY, MONDAY))

    ledger.release(schedule.id, NINE, NINE_THIRTY, missing_ok=True)

    assert ledger.is_available(schedule.id, NINE, TEN) is True
    assert ledger.is_available(schedule.id, TEN, ELEVEN) is False


def test_release_keeps_slots_another_active_appointment_overlaps(db, schedule, make_appointment) -> None:
    make_appointment(schedule, NINE, NINE_THIRTY)
    make_appointment(schedule, NINE_THIRTY, TEN)
    schedule.duration = 60
    db.commit()
    ledger = AvailabilityLedger(db)
    unmatched = ledger.replace_all(schedule.id, generate_time_slots(schedule, MONDAY, MONDAY))

    ledger.release(schedule.id, NINE, NINE_THIRTY, missing_ok=True)

    assert unmatched == [(NINE, NINE_THIRTY), (NINE_THIRTY, TEN)]
    assert ledger.is_available(schedule.id, NINE, TEN) is False


def test_replace_all_discards_previous_slots_and_duplicates(db, schedule) -> None:
    ledger = AvailabilityLedger(db)
    duplicate = GeneratedSlot(datetime(2026, 1, 12, 9, 0), datetime(2026, 1, 12, 9, 30))

    ledger.replace_all(schedule.id, [duplicate, duplicate])
    db.commit()

    slots = db.query(TimeSlot).filter(TimeSlot.schedule_id == schedule.id).all()
    assert [(slot.start_time, slot.end_time) for slot in slots] == [(duplicate.start_time, duplicate.end_time)]


def test_concurrent_claims_on_same_slot_let_exactly_one_succeed(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup = session_factory()
    user = User(email='owner@example.com')
    setup.add(user)
    setup.flush()
    schedule = Schedule(user_id=user.id, title='Consultation', duration=30, buffer_before=0, buffer_after=0)
    schedule.availability_rules = [AvailabilityRule(day_of_week=1, start_time='09:00', end_time='10:00')]
    setup.add(schedule)
    setup.flush()
    AvailabilityLedger(setup).replace_all(schedule.id, generate_time_slots(schedule, MONDAY, MONDAY))
    setup.commit()
    schedule_id = schedule.id
    setup.close()

    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def attempt_claim() -> None:
        session = session_factory()
        try:
            barrier.wait()
            AvailabilityLedger(session).claim(schedule_id, NINE, NINE_THIRTY)
            session.commit()
            outcomes.append('claimed')
        except SlotAlreadyClaimedError:
            session.rollback()
            outcomes.append('conflict')
        finally:
            session.close()

    threads = [threading.Thread(target=attempt_claim) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(outcomes) == ['claimed', 'conflict']

    check = session_factory()
    try:
        assert AvailabilityLedger(check).is_available(schedule_id, NINE, NINE_THIRTY) is False
    finally:
        check.close()
    engine.dispose()
