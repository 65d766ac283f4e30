# cache_checker.py
import json
import logging

from redis.exceptions import RedisError

from .dependencies import SessionLocal, get_cache_expiry_seconds, get_redis_client
from .services import check_availability

CACHE_PREFIX = "availability"


def _key_part(value):
    if value is None or value == "":
        return "all"
    return str(getattr(value, 'value', value)).replace(":", "")


def availability_cache_key(provider_id=None, entity_type=None, day=None, start_time=None, end_time=None):
    day = day.isoformat() if hasattr(day, 'isoformat') else day
    parts = [provider_id, entity_type, day, start_time, end_time]
    return ":".join([CACHE_PREFIX] + [_key_part(part) for part in parts])


def _query_dict(provider_id, entity_type, day, start_time, end_time):
    return {
        "provider_id": provider_id,
        "entity_type": getattr(entity_type, 'value', entity_type),
        "day": day.isoformat() if hasattr(day, 'isoformat') else day,
        "start_time": start_time,
        "end_time": end_time,
    }


def cached_availability(redis_client, session, provider_id=None, entity_type=None, day=None, start_time=None,
                        end_time=None):
    """Read-through cache around check_availability."""
    cache_key = availability_cache_key(provider_id, entity_type, day, start_time, end_time)
    try:
        cached = redis_client.get(cache_key)
    except RedisError as e:
        logging.warning(f"Availability cache unavailable, reading from database: {e}")
        return check_availability(session, provider_id, entity_type, day, start_time, end_time)

    if cached:
        logging.info(f"Retrieved from Redis: {cache_key}")
        return json.loads(cached)["slots"]

    logging.info(f"Retrieved from database: {cache_key}")
    slots = check_availability(session, provider_id, entity_type, day, start_time, end_time)
    payload = {"query": _query_dict(provider_id, entity_type, day, start_time, end_time), "slots": slots}
    try:
        redis_client.setex(cache_key, get_cache_expiry_seconds(), json.dumps(payload))
    except RedisError as e:
        logging.warning(f"Could not cache availability for {cache_key}: {e}")
    return slots


def invalidate_provider_availability(redis_client, provider_id):
    """Drop cached availability that may include this provider's slots."""
    deleted = 0
    try:
        for pattern in (f"{CACHE_PREFIX}:{provider_id}:*", f"{CACHE_PREFIX}:all:*"):
            keys = list(redis_client.scan_iter(match=pattern))
            if keys:
                deleted += redis_client.delete(*keys)
    except RedisError as e:
        logging.warning(f"Availability cache invalidation failed for provider {provider_id}: {e}")
    return deleted


def clear_availability_cache(redis_client):
    keys = list(redis_client.scan_iter(match=f"{CACHE_PREFIX}:*"))
    return redis_client.delete(*keys) if keys else 0


def acquire_lock(redis_client, lock_key, ttl=10):
    return redis_client.set(lock_key, "locked", nx=True, ex=ttl)


def release_lock(redis_client, lock_key):
    redis_client.delete(lock_key)


def _fingerprint(slot):
    return json.dumps(slot, sort_keys=True)


def compare_availability(correct_slots, cached_slots):
    discrepancies = []
    correct_set = {_fingerprint(slot) for slot in correct_slots}
    cached_set = {_fingerprint(slot) for slot in cached_slots}

    for item in correct_set - cached_set:
        discrepancies.append(f"Missing in cache: {item}")
        logging.info(f"Missing in cache: {item}")

    for item in cached_set - correct_set:
        discrepancies.append(f"Unexpected in cache: {item}")
        logging.info(f"Unexpected in cache: {item}")

    return discrepancies


def check_and_sync_cache(redis_client=None):
    """Recompute every cached availability entry and rewrite the ones that drifted.

    Returns the keys that were rewritten.
    """
    redis_client = redis_client or get_redis_client()
    updated = []

    with SessionLocal() as session:
        for cache_key in list(redis_client.scan_iter(match=f"{CACHE_PREFIX}:*")):
            lock_key = f"lock:{cache_key}"

            if not acquire_lock(redis_client, lock_key):
                logging.info(f"Cache check skipped for {cache_key} because another process is running.")
                continue
            try:
                cached = redis_client.get(cache_key)
                if not cached:
                    continue
                cached = json.loads(cached)
                query = cached["query"]
                correct_slots = check_availability(
                    session,
                    query["provider_id"],
                    query["entity_type"],
                    query["day"],
                    query["start_time"],
                    query["end_time"],
                )

                diff = compare_availability(correct_slots, cached["slots"])
                if diff:
                    logging.info(f"Discrepancy found for {cache_key}: {len(diff)} entries")
                    cached["slots"] = correct_slots
                    redis_client.setex(cache_key, get_cache_expiry_seconds(), json.dumps(cached))
                    updated.append(cache_key)
                else:
                    logging.info(f"Cache is consistent for {cache_key}.")
            finally:
                release_lock(redis_client, lock_key)

    return updated
