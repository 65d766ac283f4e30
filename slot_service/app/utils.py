import re
from datetime import date, datetime, timezone

from dateutil import parser as date_parser

TIME_FORMAT = r'^([01]\d|2[0-3]):([0-5]\d)$'
TIME_PATTERN = re.compile(TIME_FORMAT)


def time_to_minutes(time_str):
    """Convert a strict 24-hour 'HH:MM' string into minutes since midnight.

    Raises ValueError for anything that does not match the format, callers
    report that as a validation failure.
    """
    if not isinstance(time_str, str):
        raise ValueError(f"Invalid time format: {time_str!r}")
    match = TIME_PATTERN.match(time_str)
    if not match:
        raise ValueError(f"Invalid time format: {time_str!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def utc_today():
    return datetime.now(timezone.utc).date()


def normalize_date(value):
    """Reduce a date, datetime or ISO string to its UTC calendar day.

    Aware datetimes are converted to UTC first, naive ones are taken as UTC.
    """
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    raise ValueError(f"Invalid date: {value!r}")


def serialize_window(window):
    return {
        "startTime": window.start_time,
        "endTime": window.end_time,
        "capacity": window.capacity,
        "booked": window.booked,
        "remainingCapacity": window.capacity - window.booked,
    }


def serialize_slot(slot, include_private_info: bool = False, today=None):
    serialized = {
        "id": slot.id,
        "providerId": slot.provider_id,
        "locationId": slot.location_id,
        "providerRole": slot.provider_role,
        "entityType": slot.entity_type,
        "date": slot.date.isoformat(),
        "shape": slot.shape,
        "advanceBookingDays": slot.advance_booking_days,
        "metadata": slot.slot_metadata or {},
        "isActive": slot.is_active,
        "availableCapacity": slot.available_capacity,
        "isFull": slot.is_full,
        "isBookable": slot.is_bookable(today or utc_today()),
    }
    if slot.is_multi_window:
        serialized["timeSlots"] = [serialize_window(window) for window in slot.time_slots]
    else:
        serialized.update({
            "startTime": slot.start_time,
            "endTime": slot.end_time,
            "capacity": slot.capacity,
            "booked": slot.booked,
            "remainingCapacity": slot.capacity - slot.booked,
        })
    if include_private_info:
        serialized.update({
            "createdBy": slot.created_by,
            "updatedBy": slot.updated_by,
            "createdAt": slot.created_at.isoformat() if slot.created_at else None,
            "updatedAt": slot.updated_at.isoformat() if slot.updated_at else None,
        })
    return serialized
