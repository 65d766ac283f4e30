# overlap.py
"""Overlap detection for slot windows.

Windows are half-open intervals ``[start, end)`` measured in minutes since
midnight, so a window ending at 10:00 and one starting at 10:00 touch but do
not overlap. Two checks exist:

* self-overlap, among the candidate windows of one request;
* cross-document overlap, between the candidates and every window of the
  other active slots sharing (provider, location, date, entity type).
"""
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

from sqlalchemy.orm import Session, selectinload

from .models import Slot
from .utils import time_to_minutes


@dataclass(frozen=True)
class Window:
    start_time: str
    end_time: str
    capacity: int = 1
    booked: int = 0

    @property
    def start(self) -> int:
        return time_to_minutes(self.start_time)

    @property
    def end(self) -> int:
        return time_to_minutes(self.end_time)

    @property
    def key(self):
        return self.start_time, self.end_time

    @property
    def remaining_capacity(self) -> int:
        return self.capacity - self.booked

    def overlaps(self, other: "Window") -> bool:
        return self.start < other.end and self.end > other.start

    def label(self) -> str:
        return f"{self.start_time}-{self.end_time}"


class SlotScope(NamedTuple):
    provider_id: int
    location_id: Optional[int]
    date: object
    entity_type: str


class Overlap(NamedTuple):
    candidate: Window
    existing: Window
    slot_id: Optional[int] = None


def slot_windows(slot) -> List[Window]:
    """Normalize either slot shape into its list of windows."""
    if slot.is_multi_window:
        return [Window(w.start_time, w.end_time, w.capacity, w.booked or 0) for w in slot.time_slots]
    if slot.start_time and slot.end_time:
        return [Window(slot.start_time, slot.end_time, slot.capacity or 0, slot.booked or 0)]
    return []


def find_self_overlap(windows) -> Optional[Overlap]:
    ordered = sorted(windows, key=lambda window: window.start)
    for previous, current in zip(ordered, ordered[1:]):
        if current.start < previous.end:
            return Overlap(candidate=current, existing=previous)
    return None


def find_cross_overlap(candidates, existing) -> Optional[Overlap]:
    for candidate in candidates:
        for window in existing:
            if candidate.overlaps(window):
                return Overlap(candidate=candidate, existing=window)
    return None


def scope_query(db: Session, scope: SlotScope, exclude_slot_id=None):
    query = db.query(Slot).filter(
        Slot.provider_id == scope.provider_id,
        Slot.date == scope.date,
        Slot.entity_type == scope.entity_type,
        Slot.is_active.is_(True),
    )
    if scope.location_id is None:
        query = query.filter(Slot.location_id.is_(None))
    else:
        query = query.filter(Slot.location_id == scope.location_id)
    if exclude_slot_id is not None:
        query = query.filter(Slot.id != exclude_slot_id)
    return query


def check_slot_overlap(db: Session, scope: SlotScope, candidates, exclude_slot_id=None) -> Optional[Overlap]:
    """Return the first collision between candidates and committed windows in scope."""
    existing_slots = scope_query(db, scope, exclude_slot_id).options(selectinload(Slot.time_slots)).all()
    for existing_slot in existing_slots:
        overlap = find_cross_overlap(candidates, slot_windows(existing_slot))
        if overlap:
            return overlap._replace(slot_id=existing_slot.id)
    return None
