import threading

import pytest

from slot_service.app import services
from slot_service.app.dependencies import SessionLocal
from slot_service.app.errors import CapacityProtectionError, NotFoundError, OverlapConflictError, SlotValidationError
from slot_service.app.models import Slot, TimeWindow, User
from slot_service.app.schemas import SlotCreate, SlotUpdate, WindowRef


def _legacy(day, capacity=2):
    return SlotCreate.model_validate(
        {"entityType": "OPD", "date": day, "startTime": "09:00", "endTime": "10:00", "capacity": capacity})


def test_book_until_full_then_release(db, make_user, future_day):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _legacy(future_day(), capacity=2))

    services.book_window(db, slot.id)
    slot = services.book_window(db, slot.id)
    assert slot.booked == 2
    assert slot.available_capacity == 0
    assert slot.is_full

    with pytest.raises(CapacityProtectionError) as exc_info:
        services.book_window(db, slot.id)
    assert exc_info.value.message == "Slot is full"

    slot = services.release_window(db, slot.id)
    assert slot.booked == 1
    assert slot.available_capacity == 1


def test_release_never_goes_below_zero(db, make_user, future_day):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _legacy(future_day()))

    with pytest.raises(CapacityProtectionError) as exc_info:
        services.release_window(db, slot.id)
    assert exc_info.value.message == "Cannot decrement booked count below 0"
    db.refresh(slot)
    assert slot.booked == 0


def test_inactive_slot_cannot_be_booked(db, make_user, future_day):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _legacy(future_day()))
    services.book_window(db, slot.id)
    services.delete_slot(db, doctor, slot.id)

    with pytest.raises(CapacityProtectionError):
        services.book_window(db, slot.id)
    # Releasing an existing booking on a deactivated slot is still allowed
    assert services.release_window(db, slot.id).booked == 0


def test_multi_window_booking_targets_one_window(db, make_user, future_day):
    doctor = make_user("doctor")
    payload = SlotCreate.model_validate({"entityType": "OPD", "date": future_day(), "timeSlots": [
        {"startTime": "09:00", "endTime": "10:00", "capacity": 1},
        {"startTime": "10:00", "endTime": "11:00", "capacity": 1},
    ]})
    slot = services.create_slot(db, doctor, payload)

    with pytest.raises(SlotValidationError):
        services.book_window(db, slot.id)
    with pytest.raises(NotFoundError):
        services.book_window(db, slot.id, WindowRef(startTime="12:00", endTime="13:00"))

    slot = services.book_window(db, slot.id, WindowRef(startTime="10:00", endTime="11:00"))
    assert [w.booked for w in slot.time_slots] == [0, 1]
    assert slot.available_capacity == 1
    assert not slot.is_full

    with pytest.raises(CapacityProtectionError):
        services.book_window(db, slot.id, WindowRef(startTime="10:00", endTime="11:00"))


def test_concurrent_bookers_never_oversell(make_user, future_day, db):
    doctor = make_user("doctor")
    slot_id = services.create_slot(db, doctor, _legacy(future_day(), capacity=3)).id
    outcomes = []
    lock = threading.Lock()

    def book():
        session = SessionLocal()
        try:
            services.book_window(session, slot_id)
            result = "booked"
        except CapacityProtectionError:
            result = "full"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=book) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["booked"] * 3 + ["full"] * 3
    db.expire_all()
    assert db.query(Slot).filter(Slot.id == slot_id).one().booked == 3


def test_concurrent_identical_creates_keep_one_slot(make_user, future_day, db):
    doctor = make_user("doctor")
    doctor_id = doctor.id
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def create():
        session = SessionLocal()
        try:
            provider = session.get(User, doctor_id)
            payload = _legacy(future_day())
            barrier.wait()
            services.create_slot(session, provider, payload)
            result = "created"
        except OverlapConflictError:
            result = "conflict"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=create) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["conflict", "created"]
    db.expire_all()
    assert db.query(Slot).filter(Slot.provider_id == doctor_id, Slot.is_active.is_(True)).count() == 1


def _multi(day, windows):
    return SlotCreate.model_validate({"entityType": "OPD", "date": day, "timeSlots": [
        {"startTime": start, "endTime": end, "capacity": capacity} for start, end, capacity in windows]})


def _book_elsewhere_after(monkeypatch, name, slot_id, time_slot=None):
    """Commit one booking from a second session right after the first call to services.<name>."""
    real = getattr(services, name)
    calls = []

    def wrapper(*args, **kwargs):
        result = real(*args, **kwargs)
        if not calls:
            session = SessionLocal()
            try:
                services.book_window(session, slot_id, time_slot)
            finally:
                session.close()
        calls.append(name)
        return result

    monkeypatch.setattr(services, name, wrapper)
    return calls


def test_window_shrink_rechecks_a_booking_made_mid_update(db, make_user, future_day, monkeypatch):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _multi(future_day(), [("09:00", "10:00", 2)]))
    morning = WindowRef(startTime="09:00", endTime="10:00")
    services.book_window(db, slot.id, morning)
    calls = _book_elsewhere_after(monkeypatch, "merge_time_windows", slot.id, morning)

    shrink = SlotUpdate.model_validate({"timeSlots": [{"startTime": "09:00", "endTime": "10:00", "capacity": 1}]})
    with pytest.raises(CapacityProtectionError) as exc_info:
        services.update_slot(db, doctor, slot.id, shrink)
    assert "booked count (2)" in exc_info.value.message
    assert len(calls) == 2

    db.expire_all()
    window = db.query(TimeWindow).one()
    assert (window.capacity, window.booked) == (2, 2)


def test_window_removal_rechecks_a_booking_made_mid_update(db, make_user, future_day, monkeypatch):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _multi(future_day(), [("09:00", "10:00", 2), ("10:00", "11:00", 1)]))
    calls = _book_elsewhere_after(monkeypatch, "merge_time_windows", slot.id,
                                  WindowRef(startTime="10:00", endTime="11:00"))

    keep_morning = SlotUpdate.model_validate({"timeSlots": [{"startTime": "09:00", "endTime": "10:00", "capacity": 2}]})
    with pytest.raises(CapacityProtectionError) as exc_info:
        services.update_slot(db, doctor, slot.id, keep_morning)
    assert "Cannot remove time slot 10:00-11:00" in exc_info.value.message
    assert len(calls) == 2

    db.expire_all()
    windows = db.query(TimeWindow).order_by(TimeWindow.start_time).all()
    assert [(w.start_time, w.booked) for w in windows] == [("09:00", 0), ("10:00", 1)]
    assert db.query(Slot).one().available_capacity == 2


def test_legacy_capacity_change_rechecks_a_booking_made_mid_update(db, make_user, future_day, monkeypatch):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _legacy(future_day(), capacity=2))
    services.book_window(db, slot.id)
    _book_elsewhere_after(monkeypatch, "_ensure_ordered", slot.id)

    with pytest.raises(CapacityProtectionError):
        services.update_slot(db, doctor, slot.id, SlotUpdate.model_validate({"capacity": 1}))

    db.expire_all()
    stored = db.query(Slot).one()
    assert (stored.capacity, stored.booked, stored.available_capacity) == (2, 2, 0)


def test_delete_soft_deletes_when_a_booking_lands_mid_delete(db, make_user, future_day, monkeypatch):
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _legacy(future_day()))
    slot_id = slot.id
    _book_elsewhere_after(monkeypatch, "_owned_slot", slot_id)

    assert services.delete_slot(db, doctor, slot_id) is True

    db.expire_all()
    stored = db.query(Slot).filter(Slot.id == slot_id).one()
    assert stored.is_active is False
    assert stored.booked == 1


def test_update_with_row_locking_enabled(db, make_user, future_day, monkeypatch):
    monkeypatch.setenv("ENABLE_TRANSACTIONS", "true")
    doctor = make_user("doctor")
    slot = services.create_slot(db, doctor, _multi(future_day(), [("09:00", "10:00", 2)]))
    morning = WindowRef(startTime="09:00", endTime="10:00")
    services.book_window(db, slot.id, morning)

    grow = SlotUpdate.model_validate({"timeSlots": [{"startTime": "09:00", "endTime": "10:00", "capacity": 4}]})
    updated = services.update_slot(db, doctor, slot.id, grow)
    assert [(w.capacity, w.booked) for w in updated.time_slots] == [(4, 1)]
    assert services.delete_slot(db, doctor, slot.id) is True
