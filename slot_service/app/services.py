# services.py
"""Slot service: validation, location resolution and transactional writes.

Every mutating operation follows the same pattern. Cheap checks run first
without locks, so obviously bad requests are rejected early. The
authoritative checks (daily limit, cross-slot overlap) then run again inside
``run_in_transaction`` right before the write.
"""
import logging
from collections import defaultdict
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.attributes import flag_modified

from .dependencies import (EntityType, UserRole, get_default_advance_booking_days, get_max_slots_per_day)
from .errors import (CapacityProtectionError, LimitExceededError, NotFoundError, OverlapConflictError,
                     OwnershipError, PermissionDeniedError, SlotValidationError)
from .models import Slot, SlotShape, TimeWindow, User
from .overlap import (SlotScope, Window, check_slot_overlap, find_cross_overlap, find_self_overlap,
                      slot_windows)
from .schemas import SlotCreate, SlotUpdate
from .transaction import lock_provider, lock_slot, run_in_transaction
from .utils import normalize_date, time_to_minutes, utc_today

ROLE_ENTITY_TYPES = {
    UserRole.HOSPITAL.value: {EntityType.OPD.value, EntityType.IPD.value},
    UserRole.DOCTOR.value: {EntityType.OPD.value},
    UserRole.LAB.value: {EntityType.LAB.value},
}


def can_create_entity_type(role, entity_type):
    return _value(entity_type) in ROLE_ENTITY_TYPES.get(role, set())


def validate_slot_ownership(slot, user):
    return slot.provider_id == user.id


def _value(enum_or_str):
    return getattr(enum_or_str, 'value', enum_or_str)


def ensure_can_create(user: User, entity_type):
    if not can_create_entity_type(user.role, entity_type):
        raise PermissionDeniedError("Provider role cannot create this entity type")
    if not user.is_verified:
        raise PermissionDeniedError("Provider must be verified to create slots")


def resolve_location_id(db: Session, user: User, requested_location_id=None):
    """Branch accounts always use themselves, chain parents must name one of their
    locations, and standalone providers have no location."""
    if user.role != UserRole.HOSPITAL.value:
        return None
    if user.is_chain_branch:
        return user.id
    if user.is_chain:
        if requested_location_id is None:
            raise SlotValidationError("Chain hospitals must specify locationId for slot creation")
        if requested_location_id == user.id:
            return user.id
        branch = db.query(User).filter(User.id == requested_location_id).first()
        if branch is None or branch.parent_hospital_id != user.id:
            raise PermissionDeniedError("locationId is not one of your hospital locations")
        return branch.id
    return None


def _ensure_not_past(day):
    if day < utc_today():
        raise SlotValidationError("Slot date cannot be in the past")


def _ensure_ordered(windows):
    for window in windows:
        try:
            ordered = window.end > window.start
        except ValueError as e:
            raise SlotValidationError(str(e))
        if not ordered:
            raise SlotValidationError(f"End time must be after start time for {window.label()}")


def _reject_overlap(overlap, message):
    logging.warning(f"{message}: {overlap.candidate.label()} collides with {overlap.existing.label()}")
    raise OverlapConflictError(message, errors=[
        f"{overlap.candidate.label()} overlaps {overlap.existing.label()}"
        + (f" of slot {overlap.slot_id}" if overlap.slot_id else "")
    ])


def _ensure_no_self_overlap(windows):
    overlap = find_self_overlap(windows)
    if overlap:
        _reject_overlap(overlap, "Provided timeSlots contain overlapping windows")


def _ensure_no_cross_overlap(db, scope, windows, exclude_slot_id=None, message="Slot overlaps with existing slot"):
    overlap = check_slot_overlap(db, scope, windows, exclude_slot_id)
    if overlap:
        _reject_overlap(overlap, message)


def _count_active_slots(db, provider_id, day, exclude_slot_id=None):
    query = db.query(Slot).filter(Slot.provider_id == provider_id, Slot.date == day, Slot.is_active.is_(True))
    if exclude_slot_id is not None:
        query = query.filter(Slot.id != exclude_slot_id)
    return query.count()


def _ensure_daily_limit(db, provider_id, day, adding=1, exclude_slot_id=None):
    max_slots = get_max_slots_per_day()
    existing_count = _count_active_slots(db, provider_id, day, exclude_slot_id)
    if existing_count + adding > max_slots:
        raise LimitExceededError(
            f"Provider already has {existing_count} active slots on {day.isoformat()}; "
            f"max allowed is {max_slots}")


def _requested_windows(payload: SlotCreate) -> List[Window]:
    if payload.is_multi_window:
        return [Window(ts.start_time, ts.end_time, ts.capacity, 0) for ts in payload.time_slots]
    return [Window(payload.start_time, payload.end_time, payload.capacity, 0)]


class PreparedSlot:
    """A validated create request with its location and windows resolved."""

    def __init__(self, payload: SlotCreate, scope: SlotScope, windows: List[Window]):
        self.payload = payload
        self.scope = scope
        self.windows = windows

    def build(self, user: User) -> Slot:
        payload = self.payload
        advance_booking_days = payload.advance_booking_days
        if advance_booking_days is None:
            advance_booking_days = get_default_advance_booking_days()
        slot = Slot(
            provider_id=user.id,
            location_id=self.scope.location_id,
            provider_role=user.role,
            entity_type=self.scope.entity_type,
            date=self.scope.date,
            advance_booking_days=advance_booking_days,
            slot_metadata=payload.metadata or {},
            is_active=True,
            created_by=user.id,
        )
        if payload.is_multi_window:
            slot.use_time_windows([
                TimeWindow(start_time=w.start_time, end_time=w.end_time, capacity=w.capacity, booked=0)
                for w in self.windows
            ])
        else:
            window = self.windows[0]
            slot.use_legacy_range(window.start_time, window.end_time, window.capacity, booked=0)
        slot.recompute_available_capacity()
        return slot


def prepare_slot(db: Session, user: User, payload: SlotCreate) -> PreparedSlot:
    ensure_can_create(user, payload.entity_type)
    location_id = resolve_location_id(db, user, payload.location_id)
    day = normalize_date(payload.slot_date)
    _ensure_not_past(day)
    windows = _requested_windows(payload)
    _ensure_ordered(windows)
    _ensure_no_self_overlap(windows)
    scope = SlotScope(user.id, location_id, day, _value(payload.entity_type))
    return PreparedSlot(payload, scope, windows)


def create_slot(db: Session, user: User, payload: SlotCreate) -> Slot:
    prepared = prepare_slot(db, user, payload)
    _ensure_daily_limit(db, user.id, prepared.scope.date)
    # Early reject without locks; repeated below inside the transaction
    _ensure_no_cross_overlap(db, prepared.scope, prepared.windows)

    def work(db, locking):
        if locking:
            lock_provider(db, user.id)
        _ensure_daily_limit(db, user.id, prepared.scope.date)
        _ensure_no_cross_overlap(db, prepared.scope, prepared.windows)
        slot = prepared.build(user)
        db.add(slot)
        db.flush()
        return slot

    slot = run_in_transaction(db, work, "slot creation")
    logging.info(f"Slot {slot.id} created for provider {user.id} on {slot.date.isoformat()}")
    return slot


def get_slot(db: Session, slot_id, for_update=False) -> Slot:
    if for_update:
        slot = lock_slot(db, slot_id)
    else:
        slot = db.query(Slot).options(selectinload(Slot.time_slots)).filter(Slot.id == slot_id).first()
    if not slot:
        raise NotFoundError("Slot not found")
    return slot


def _owned_slot(db, user, slot_id, for_update=False):
    slot = get_slot(db, slot_id, for_update)
    if not validate_slot_ownership(slot, user):
        raise OwnershipError("Access denied: You do not own this slot")
    return slot


def merge_time_windows(slot: Slot, incoming) -> List[TimeWindow]:
    """Merge a replacement window list into the slot's current windows.

    Windows are matched on (startTime, endTime). Matched windows carry their
    booked count forward unless the caller sends one. Dropping a window that
    still has bookings is refused.
    """
    if slot.is_multi_window:
        current = {(w.start_time, w.end_time): w for w in slot.time_slots}
    else:
        current = {window.key: window for window in slot_windows(slot)}

    merged = []
    kept = set()
    for ts in incoming:
        key = (ts.start_time, ts.end_time)
        existing = current.get(key)
        if existing is None:
            merged.append(TimeWindow(start_time=ts.start_time, end_time=ts.end_time, capacity=ts.capacity, booked=0))
            continue
        kept.add(key)
        booked = ts.booked if ts.booked is not None else (existing.booked or 0)
        if ts.capacity < booked:
            raise CapacityProtectionError(
                f"New capacity ({ts.capacity}) cannot be less than booked count ({booked}) "
                f"for time slot {ts.start_time}-{ts.end_time}")
        if isinstance(existing, TimeWindow):
            existing.capacity = ts.capacity
            existing.booked = booked
            merged.append(existing)
        else:
            merged.append(TimeWindow(start_time=ts.start_time, end_time=ts.end_time, capacity=ts.capacity,
                                     booked=booked))

    for key, existing in current.items():
        if key not in kept and (existing.booked or 0) > 0:
            raise CapacityProtectionError(
                f"Cannot remove time slot {key[0]}-{key[1]} that has {existing.booked} bookings")
    return merged


def _as_windows(time_windows) -> List[Window]:
    return [Window(w.start_time, w.end_time, w.capacity, w.booked or 0) for w in time_windows]


def update_slot(db: Session, user: User, slot_id, payload: SlotUpdate) -> Slot:
    changes = payload.changes()

    def work(db, locking):
        slot = _owned_slot(db, user, slot_id, for_update=locking)
        if locking:
            lock_provider(db, slot.provider_id)

        new_day = normalize_date(changes['slot_date']) if 'slot_date' in changes else slot.date
        date_changed = new_day != slot.date
        if date_changed:
            _ensure_not_past(new_day)
        reactivating = changes.get('is_active') is True and not slot.is_active
        will_be_active = changes.get('is_active', slot.is_active)
        scope = SlotScope(slot.provider_id, slot.location_id, new_day, slot.entity_type)
        legacy_fields = {'start_time', 'end_time', 'capacity'} & set(changes)

        if will_be_active and (date_changed or reactivating):
            _ensure_daily_limit(db, slot.provider_id, new_day, exclude_slot_id=slot.id)

        if payload.time_slots:
            merged = merge_time_windows(slot, payload.time_slots)
            candidates = _as_windows(merged)
            _ensure_no_self_overlap(candidates)
            if will_be_active:
                _ensure_no_cross_overlap(db, scope, candidates, slot.id, "Updated timeSlots overlap with existing slots")
            slot.use_time_windows(merged)
        elif slot.is_multi_window:
            if legacy_fields:
                raise SlotValidationError(
                    "Multi-window slots cannot be converted back to a single time range; update timeSlots instead")
            if will_be_active and (date_changed or reactivating):
                _ensure_no_cross_overlap(db, scope, slot_windows(slot), slot.id, "Updated slot overlaps with existing slot")
        else:
            window = Window(
                changes.get('start_time', slot.start_time),
                changes.get('end_time', slot.end_time),
                changes.get('capacity', slot.capacity),
                slot.booked or 0,
            )
            _ensure_ordered([window])
            if window.capacity < window.booked:
                raise CapacityProtectionError("Cannot reduce capacity below current bookings")
            if will_be_active and (legacy_fields or date_changed or reactivating):
                _ensure_no_cross_overlap(db, scope, [window], slot.id, "Updated slot overlaps with existing slot")
            slot.use_legacy_range(window.start_time, window.end_time, window.capacity, window.booked)

        slot.date = new_day
        if 'is_active' in changes:
            slot.is_active = changes['is_active']
        if 'advance_booking_days' in changes:
            slot.advance_booking_days = changes['advance_booking_days']
        if 'metadata' in changes:
            slot.slot_metadata = changes['metadata']
        slot.updated_by = user.id
        # Always write the slot row so its version is checked against concurrent bookings
        flag_modified(slot, "updated_by")
        slot.recompute_available_capacity()
        db.flush()
        return slot

    slot = run_in_transaction(db, work, "slot update")
    logging.info(f"Slot {slot.id} updated by provider {user.id}")
    return slot


def _ensure_no_batch_overlap(prepared_slots):
    by_scope = defaultdict(list)
    for index, prepared in enumerate(prepared_slots):
        by_scope[prepared.scope].append((index, prepared))
    for members in by_scope.values():
        for position, (index, prepared) in enumerate(members):
            for other_index, other in members[position + 1:]:
                overlap = find_cross_overlap(prepared.windows, other.windows)
                if overlap:
                    _reject_overlap(overlap, f"Slots {index} and {other_index} in the batch overlap each other")


def bulk_create_slots(db: Session, user: User, payloads: List[SlotCreate]) -> List[Slot]:
    """Create every slot in the batch or none of them."""
    prepared_slots = []
    for index, payload in enumerate(payloads):
        try:
            prepared_slots.append(prepare_slot(db, user, payload))
        except (SlotValidationError, OverlapConflictError, PermissionDeniedError) as e:
            e.message = f"slots[{index}]: {e.message}"
            raise
    _ensure_no_batch_overlap(prepared_slots)

    new_per_day = defaultdict(int)
    for prepared in prepared_slots:
        new_per_day[prepared.scope.date] += 1

    for index, prepared in enumerate(prepared_slots):
        _ensure_no_cross_overlap(db, prepared.scope, prepared.windows,
                                 message=f"slots[{index}]: Slot overlaps with existing slot")

    def work(db, locking):
        if locking:
            lock_provider(db, user.id)
        for day, count in new_per_day.items():
            _ensure_daily_limit(db, user.id, day, adding=count)
        for index, prepared in enumerate(prepared_slots):
            _ensure_no_cross_overlap(db, prepared.scope, prepared.windows,
                                     message=f"slots[{index}]: Slot overlaps with existing slot")
        slots = [prepared.build(user) for prepared in prepared_slots]
        db.add_all(slots)
        db.flush()
        return slots

    slots = run_in_transaction(db, work, "bulk slot creation")
    logging.info(f"{len(slots)} slots created in bulk for provider {user.id}")
    return slots


def delete_slot(db: Session, user: User, slot_id) -> bool:
    """Soft delete slots that carry bookings, hard delete the rest.

    Returns True when the slot was only deactivated.
    """
    def work(db, locking):
        slot = _owned_slot(db, user, slot_id, for_update=locking)
        if slot.total_booked > 0:
            slot.is_active = False
            slot.updated_by = user.id
            return True
        db.delete(slot)
        return False

    soft_deleted = run_in_transaction(db, work, "slot deletion")
    logging.info(f"Slot {slot_id} {'deactivated' if soft_deleted else 'deleted'} by provider {user.id}")
    return soft_deleted


def list_slots(db: Session, user: Optional[User], provider_id=None, location_id=None, entity_type=None,
               start_date=None, end_date=None, active_only=False, available_only=False) -> List[Slot]:
    query = db.query(Slot).options(selectinload(Slot.time_slots))
    if provider_id is not None:
        query = query.filter(Slot.provider_id == provider_id)
    elif user is not None and user.role in ROLE_ENTITY_TYPES:
        query = query.filter(Slot.provider_id == user.id)

    if location_id is not None:
        query = query.filter(Slot.location_id == location_id)
    elif user is not None and user.is_chain_branch:
        query = query.filter(Slot.location_id == user.id)

    if entity_type:
        query = query.filter(Slot.entity_type == _value(entity_type))
    if start_date:
        query = query.filter(Slot.date >= normalize_date(start_date))
    if end_date:
        query = query.filter(Slot.date <= normalize_date(end_date))
    if active_only or available_only:
        query = query.filter(Slot.is_active.is_(True))
    if available_only:
        query = query.filter(Slot.available_capacity > 0)

    slots = query.order_by(Slot.date, Slot.start_time, Slot.id).all()
    if available_only:
        today = utc_today()
        slots = [slot for slot in slots if slot.is_bookable(today)]
    return slots


def _in_requested_range(window: Window, start_time=None, end_time=None):
    if start_time and window.end <= time_to_minutes(start_time):
        return False
    if end_time and window.start >= time_to_minutes(end_time):
        return False
    return True


def check_availability(db: Session, provider_id=None, entity_type=None, day=None, start_time=None,
                       end_time=None) -> List[dict]:
    """Point in time snapshot of windows that still have room.

    Bookings are only authoritative when made; results may be stale.
    """
    query = db.query(Slot).options(selectinload(Slot.time_slots)).filter(Slot.is_active.is_(True))
    if provider_id is not None:
        query = query.filter(Slot.provider_id == provider_id)
    if entity_type:
        query = query.filter(Slot.entity_type == _value(entity_type))
    if day is not None:
        query = query.filter(Slot.date == normalize_date(day))

    results = []
    for slot in query.order_by(Slot.date, Slot.start_time, Slot.id).all():
        base = {
            "slotId": slot.id,
            "providerId": slot.provider_id,
            "locationId": slot.location_id,
            "date": slot.date.isoformat(),
            "entityType": slot.entity_type,
        }
        matching = [
            window for window in slot_windows(slot)
            if window.remaining_capacity > 0 and _in_requested_range(window, start_time, end_time)
        ]
        if not matching:
            continue
        if slot.is_multi_window:
            base["timeSlots"] = [{
                "startTime": w.start_time,
                "endTime": w.end_time,
                "capacity": w.capacity,
                "booked": w.booked,
                "remainingCapacity": w.remaining_capacity,
            } for w in matching]
        else:
            window = matching[0]
            base.update({
                "startTime": window.start_time,
                "endTime": window.end_time,
                "capacity": window.capacity,
                "booked": window.booked,
                "remainingCapacity": window.remaining_capacity,
            })
        results.append(base)
    return results


def _adjust_booked(db: Session, slot_id, delta, time_slot=None) -> Slot:
    """Atomically move one window's booked counter by delta within [0, capacity]."""
    def work(db, locking):
        slot = get_slot(db, slot_id, for_update=locking)
        if delta > 0 and not slot.is_active:
            raise CapacityProtectionError("Slot is not active")

        if slot.is_multi_window:
            if time_slot is None:
                raise SlotValidationError("A timeSlot is required for slots with multiple time windows")
            target = next((w for w in slot.time_slots
                           if w.start_time == time_slot.start_time and w.end_time == time_slot.end_time), None)
            if target is None:
                raise NotFoundError(f"Time slot {time_slot.start_time}-{time_slot.end_time} not found on this slot")
            statement = update(TimeWindow).where(
                TimeWindow.id == target.id,
                TimeWindow.booked + delta <= TimeWindow.capacity,
                TimeWindow.booked + delta >= 0,
            ).values(booked=TimeWindow.booked + delta, version=TimeWindow.version + 1)
        else:
            statement = update(Slot).where(
                Slot.id == slot.id,
                Slot.shape == SlotShape.LEGACY.value,
                Slot.booked + delta <= Slot.capacity,
                Slot.booked + delta >= 0,
            ).values(booked=Slot.booked + delta)

        result = db.execute(statement.execution_options(synchronize_session=False))
        if result.rowcount == 0:
            if delta > 0:
                raise CapacityProtectionError("Slot is full")
            raise CapacityProtectionError("Cannot decrement booked count below 0")
        db.execute(
            update(Slot).where(Slot.id == slot.id)
            .values(available_capacity=Slot.available_capacity - delta, version=Slot.version + 1)
            .execution_options(synchronize_session=False)
        )
        return slot

    slot = run_in_transaction(db, work, "slot booking update")
    db.refresh(slot)
    return slot


def book_window(db: Session, slot_id, time_slot=None) -> Slot:
    return _adjust_booked(db, slot_id, 1, time_slot)


def release_window(db: Session, slot_id, time_slot=None) -> Slot:
    return _adjust_booked(db, slot_id, -1, time_slot)
