# schemas.py
"""Request bodies for the slot endpoints.

Field names follow the public JSON API (camelCase aliases); the Python side
uses snake_case.
"""
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .dependencies import EntityType
from .utils import TIME_FORMAT, normalize_date, time_to_minutes, utc_today


def _parse_slot_date(value):
    if value is None:
        return value
    try:
        return normalize_date(value)
    except (TypeError, ValueError, OverflowError):
        raise ValueError("Date must be a valid date")


def _not_in_past(value):
    if value is not None and value < utc_today():
        raise ValueError("Slot date cannot be in the past")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserRegistration(BaseModel):
    name: str
    email: str
    password: str
    role: str
    is_chain: bool = False
    parent_hospital_id: Optional[int] = None


class TimeWindowIn(CamelModel):
    start_time: str = Field(alias='startTime', pattern=TIME_FORMAT)
    end_time: str = Field(alias='endTime', pattern=TIME_FORMAT)
    capacity: int = Field(ge=1)
    booked: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode='after')
    def check_order(self):
        if time_to_minutes(self.end_time) <= time_to_minutes(self.start_time):
            raise ValueError("Each timeSlot must have endTime after startTime")
        return self


class WindowRef(CamelModel):
    start_time: str = Field(alias='startTime', pattern=TIME_FORMAT)
    end_time: str = Field(alias='endTime', pattern=TIME_FORMAT)


class SlotCreate(CamelModel):
    entity_type: EntityType = Field(alias='entityType')
    slot_date: date = Field(alias='date')
    start_time: Optional[str] = Field(default=None, alias='startTime', pattern=TIME_FORMAT)
    end_time: Optional[str] = Field(default=None, alias='endTime', pattern=TIME_FORMAT)
    capacity: Optional[int] = Field(default=None, ge=1)
    time_slots: Optional[List[TimeWindowIn]] = Field(default=None, alias='timeSlots')
    advance_booking_days: Optional[int] = Field(default=None, alias='advanceBookingDays', ge=0)
    metadata: Optional[dict] = None
    location_id: Optional[int] = Field(default=None, alias='locationId')

    @field_validator('slot_date', mode='before')
    @classmethod
    def parse_date(cls, value):
        return _parse_slot_date(value)

    @field_validator('slot_date')
    @classmethod
    def check_date(cls, value):
        return _not_in_past(value)

    @model_validator(mode='after')
    def check_shape(self):
        has_windows = bool(self.time_slots)
        has_legacy = bool(self.start_time and self.end_time and self.capacity is not None)
        if has_windows and (self.start_time or self.end_time or self.capacity is not None):
            raise ValueError("Provide either startTime/endTime/capacity or timeSlots, not both")
        if not has_windows and not has_legacy:
            raise ValueError("Either startTime/endTime/capacity or timeSlots array must be provided")
        if has_legacy and time_to_minutes(self.end_time) <= time_to_minutes(self.start_time):
            raise ValueError("End time must be after start time")
        return self

    @property
    def is_multi_window(self):
        return bool(self.time_slots)


class SlotUpdate(CamelModel):
    slot_date: Optional[date] = Field(default=None, alias='date')
    start_time: Optional[str] = Field(default=None, alias='startTime', pattern=TIME_FORMAT)
    end_time: Optional[str] = Field(default=None, alias='endTime', pattern=TIME_FORMAT)
    capacity: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = Field(default=None, alias='isActive')
    advance_booking_days: Optional[int] = Field(default=None, alias='advanceBookingDays', ge=0)
    metadata: Optional[dict] = None
    time_slots: Optional[List[TimeWindowIn]] = Field(default=None, alias='timeSlots', min_length=1)

    @field_validator('slot_date', mode='before')
    @classmethod
    def parse_date(cls, value):
        return _parse_slot_date(value)

    @field_validator('slot_date')
    @classmethod
    def check_date(cls, value):
        return _not_in_past(value)

    @model_validator(mode='after')
    def check_range(self):
        if self.time_slots and (self.start_time or self.end_time or self.capacity is not None):
            raise ValueError("Provide either startTime/endTime/capacity or timeSlots, not both")
        if self.start_time and self.end_time and time_to_minutes(self.end_time) <= time_to_minutes(self.start_time):
            raise ValueError("End time must be after start time")
        return self

    def changes(self):
        """Fields the caller actually sent, explicit nulls dropped."""
        return {key: value for key, value in self.model_dump(exclude_unset=True).items() if value is not None}


class BulkSlotCreate(BaseModel):
    slots: List[SlotCreate] = Field(min_length=1)


class WindowBookingRequest(CamelModel):
    time_slot: Optional[WindowRef] = Field(default=None, alias='timeSlot')


class AvailabilityQuery(CamelModel):
    provider_id: Optional[int] = Field(default=None, alias='providerId')
    entity_type: Optional[EntityType] = Field(default=None, alias='entityType')
    day: Optional[date] = Field(default=None, alias='date')
    start_time: Optional[str] = Field(default=None, alias='startTime', pattern=TIME_FORMAT)
    end_time: Optional[str] = Field(default=None, alias='endTime', pattern=TIME_FORMAT)

    @field_validator('day', mode='before')
    @classmethod
    def parse_date(cls, value):
        return _parse_slot_date(value)

    @model_validator(mode='after')
    def check_range(self):
        if self.start_time and self.end_time and time_to_minutes(self.end_time) <= time_to_minutes(self.start_time):
            raise ValueError("End time must be after start time")
        return self
