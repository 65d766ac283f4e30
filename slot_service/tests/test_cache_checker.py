import json
from datetime import date

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from slot_service.app import services
from slot_service.app.cache_checker import (availability_cache_key, cached_availability, check_and_sync_cache,
                                            clear_availability_cache, compare_availability,
                                            invalidate_provider_availability)
from slot_service.app.dependencies import EntityType
from slot_service.app.schemas import SlotCreate


class UnavailableRedis:
    def get(self, key):
        raise RedisConnectionError("connection refused")

    def scan_iter(self, match=None):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def open_slot(db, make_user, future_day):
    doctor = make_user("doctor")
    payload = SlotCreate.model_validate(
        {"entityType": "OPD", "date": future_day(), "startTime": "09:00", "endTime": "10:00", "capacity": 1})
    return services.create_slot(db, doctor, payload)


def test_availability_cache_key():
    assert availability_cache_key(7, EntityType.OPD, date(2030, 1, 2), "09:00", "10:30") == \
        "availability:7:OPD:2030-01-02:0900:1030"
    assert availability_cache_key() == "availability:all:all:all:all:all"


def test_cached_availability_reads_through(db, redis_client, open_slot):
    day = open_slot.date
    slots = cached_availability(redis_client, db, open_slot.provider_id, "OPD", day)
    assert [slot["slotId"] for slot in slots] == [open_slot.id]

    key = availability_cache_key(open_slot.provider_id, "OPD", day)
    cached = json.loads(redis_client.get(key))
    assert cached["query"] == {"provider_id": open_slot.provider_id, "entity_type": "OPD",
                               "day": day.isoformat(), "start_time": None, "end_time": None}
    assert redis_client.ttl(key) > 0

    # A booking made without invalidation is not visible until the entry expires or is synced
    services.book_window(db, open_slot.id)
    assert cached_availability(redis_client, db, open_slot.provider_id, "OPD", day) == slots


def test_cached_availability_falls_back_to_database(db, open_slot):
    slots = cached_availability(UnavailableRedis(), db, open_slot.provider_id, "OPD", open_slot.date)
    assert [slot["slotId"] for slot in slots] == [open_slot.id]
    assert invalidate_provider_availability(UnavailableRedis(), open_slot.provider_id) == 0


def test_invalidate_provider_availability(redis_client):
    redis_client.set("availability:1:OPD:2030-01-02:all:all", "[]")
    redis_client.set("availability:all:OPD:2030-01-02:all:all", "[]")
    redis_client.set("availability:2:OPD:2030-01-02:all:all", "[]")

    assert invalidate_provider_availability(redis_client, 1) == 2
    assert redis_client.keys("availability:*") == ["availability:2:OPD:2030-01-02:all:all"]


def test_clear_availability_cache(redis_client):
    redis_client.set("availability:1:OPD:2030-01-02:all:all", "[]")
    redis_client.set("unrelated", "keep")
    assert clear_availability_cache(redis_client) == 1
    assert clear_availability_cache(redis_client) == 0
    assert redis_client.get("unrelated") == "keep"


def test_compare_availability():
    assert compare_availability([{"slotId": 1}], [{"slotId": 1}]) == []
    diff = compare_availability([{"slotId": 1}], [{"slotId": 2}])
    assert len(diff) == 2
    assert diff[0].startswith("Missing in cache")


def test_check_and_sync_cache_rewrites_stale_entries(db, redis_client, open_slot):
    day = open_slot.date
    cached_availability(redis_client, db, open_slot.provider_id, "OPD", day)
    key = availability_cache_key(open_slot.provider_id, "OPD", day)

    assert check_and_sync_cache(redis_client) == []

    services.book_window(db, open_slot.id)
    assert check_and_sync_cache(redis_client) == [key]
    assert json.loads(redis_client.get(key))["slots"] == []
    assert not redis_client.exists(f"lock:{key}")


def test_check_and_sync_cache_skips_locked_keys(db, redis_client, open_slot):
    day = open_slot.date
    cached_availability(redis_client, db, open_slot.provider_id, "OPD", day)
    key = availability_cache_key(open_slot.provider_id, "OPD", day)
    services.book_window(db, open_slot.id)

    redis_client.set(f"lock:{key}", "locked", ex=10)
    assert check_and_sync_cache(redis_client) == []
    assert len(json.loads(redis_client.get(key))["slots"]) == 1
