# models.py
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import (Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, JSON, String,
                        UniqueConstraint, func, text)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class SlotShape(str, Enum):
    LEGACY = "legacy"
    MULTI_WINDOW = "multi_window"


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False)  # 'hospital', 'doctor', 'lab', 'patient' or 'admin'
    is_verified = Column(Boolean, nullable=False, default=False)
    # Chain hospitals: the parent has is_chain set, each branch points at its parent
    is_chain = Column(Boolean, nullable=False, default=False)
    parent_hospital_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    parent_hospital = relationship("User", remote_side=[id], back_populates="branches")
    branches = relationship("User", back_populates="parent_hospital")
    slots = relationship("Slot", back_populates="provider", foreign_keys="Slot.provider_id")

    @property
    def is_chain_branch(self):
        return self.parent_hospital_id is not None


class Slot(Base):
    __tablename__ = 'slots'
    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    provider_role = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    date = Column(Date, nullable=False, index=True)  # UTC calendar day
    shape = Column(String, nullable=False, default=SlotShape.LEGACY.value)

    # Legacy single-range shape; all NULL for multi-window slots
    start_time = Column(String(5), nullable=True)
    end_time = Column(String(5), nullable=True)
    capacity = Column(Integer, nullable=True)
    booked = Column(Integer, nullable=True)

    # Sum of remaining capacity over every window, kept for fast availability listing
    available_capacity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    advance_booking_days = Column(Integer, nullable=False, default=30)
    slot_metadata = Column('metadata', JSON, nullable=False, default=dict)
    created_by = Column(Integer, ForeignKey('users.id'), nullable=False)
    updated_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    # Bumped on every write, including booking counter updates; a stale read fails its flush
    version = Column(Integer, nullable=False)

    provider = relationship("User", back_populates="slots", foreign_keys=[provider_id])
    time_slots = relationship("TimeWindow", back_populates="slot", cascade="all, delete-orphan",
                              order_by="TimeWindow.position")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_slot_provider_date_entity', 'provider_id', 'date', 'entity_type'),
        Index('idx_slot_location_date_active', 'location_id', 'date', 'is_active'),
        Index('idx_slot_date_entity_active', 'date', 'entity_type', 'is_active', 'available_capacity'),
    )

    @property
    def is_multi_window(self):
        return self.shape == SlotShape.MULTI_WINDOW.value

    @property
    def total_booked(self):
        if self.is_multi_window:
            return sum(window.booked or 0 for window in self.time_slots)
        return self.booked or 0

    @property
    def is_full(self):
        if self.is_multi_window:
            return all((window.booked or 0) >= window.capacity for window in self.time_slots)
        return (self.booked or 0) >= (self.capacity or 0)

    def is_bookable(self, today):
        if not self.is_active:
            return False
        if self.date < today or self.date > today + timedelta(days=self.advance_booking_days or 0):
            return False
        return not self.is_full

    def recompute_available_capacity(self):
        if self.is_multi_window:
            self.available_capacity = sum(w.capacity - (w.booked or 0) for w in self.time_slots)
        else:
            self.available_capacity = (self.capacity or 0) - (self.booked or 0)
        return self.available_capacity

    def use_legacy_range(self, start_time, end_time, capacity, booked=0):
        self.shape = SlotShape.LEGACY.value
        self.start_time = start_time
        self.end_time = end_time
        self.capacity = capacity
        self.booked = booked

    def use_time_windows(self, windows):
        """Switch to (or stay in) the multi-window shape, dropping the legacy scalars."""
        self.shape = SlotShape.MULTI_WINDOW.value
        self.start_time = None
        self.end_time = None
        self.capacity = None
        self.booked = None
        for position, window in enumerate(windows):
            window.position = position
        self.time_slots = list(windows)


class TimeWindow(Base):
    __tablename__ = 'slot_windows'
    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey('slots.id', ondelete='CASCADE'), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    capacity = Column(Integer, nullable=False, default=1)
    booked = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    slot = relationship("Slot", back_populates="time_slots")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint('slot_id', 'start_time', 'end_time', name='_slot_window_uc'),
    )

    @property
    def remaining_capacity(self):
        return self.capacity - (self.booked or 0)


# Backstop against concurrent creators of identical legacy slots. NULL locations
# are folded to 0 so standalone providers are covered too. Multi-window slots
# have no index level equivalent.
Index(
    'uq_slots_legacy_window',
    Slot.provider_id,
    func.coalesce(Slot.location_id, 0),
    Slot.date,
    Slot.entity_type,
    Slot.start_time,
    Slot.end_time,
    unique=True,
    postgresql_where=text("is_active AND shape = 'legacy'"),
    sqlite_where=text("is_active AND shape = 'legacy'"),
)
