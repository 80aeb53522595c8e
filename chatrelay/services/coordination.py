from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatrelay.core.config import get_settings


logger = logging.getLogger(__name__)

WORKER_HEARTBEATS_KEY = "chatrelay:workers:heartbeats"
HEALTH_MONITOR_LOCK_KEY = "chatrelay:health:monitor:lock"

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()

_local_locks: dict[str, asyncio.Lock] = {}
_local_lock_owners: dict[str, str] = {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_redis() -> Redis | None:
    # Reuse one Redis client per event loop for heartbeats and locks.
    settings = get_settings()
    if not settings.redis_enabled:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except (RedisError, ValueError) as exc:
                logger.warning("coordination_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


@dataclass(slots=True)
class DistributedLock:
    key: str
    token: str
    redis: Any | None
    local: bool


async def acquire_lock(key: str, *, ttl_s: int) -> DistributedLock | None:
    # Single-owner lock: Redis SET NX EX when available, otherwise an in-process lock.
    token = uuid4().hex
    redis = await get_redis()
    if redis is not None:
        try:
            acquired = await redis.set(key, token, nx=True, ex=max(5, int(ttl_s)))
        except (RedisError, OSError) as exc:
            logger.warning("distributed_lock_redis_failed key=%s", key, exc_info=exc)
        else:
            if not acquired:
                return None
            return DistributedLock(key=key, token=token, redis=redis, local=False)

    lock = _local_locks.setdefault(key, asyncio.Lock())
    if lock.locked():
        return None
    await lock.acquire()
    _local_lock_owners[key] = token
    return DistributedLock(key=key, token=token, redis=None, local=True)


async def release_lock(lock: DistributedLock) -> None:
    # Release only while this holder still owns the token so a newer holder is never clobbered.
    if lock.local:
        local = _local_locks.get(lock.key)
        if local is not None and local.locked() and _local_lock_owners.get(lock.key) == lock.token:
            _local_lock_owners.pop(lock.key, None)
            local.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(lock.key)
        if current is not None and _decode(current) == lock.token:
            await lock.redis.delete(lock.key)
    except (RedisError, OSError) as exc:
        logger.warning("distributed_lock_release_failed key=%s", lock.key, exc_info=exc)


async def publish_worker_heartbeat(worker_id: str, *, timestamp: datetime | None = None) -> bool:
    # Heartbeats let the health monitor tell dead workers from an idle queue.
    redis = await get_redis()
    if redis is None:
        return False
    heartbeat = timestamp or _utc_now()
    try:
        await redis.hset(WORKER_HEARTBEATS_KEY, worker_id, heartbeat.isoformat())
    except (RedisError, OSError) as exc:
        logger.warning("worker_heartbeat_publish_failed worker_id=%s", worker_id, exc_info=exc)
        return False
    return True


async def remove_worker_heartbeat(worker_id: str) -> None:
    redis = await get_redis()
    if redis is None:
        return
    try:
        await redis.hdel(WORKER_HEARTBEATS_KEY, worker_id)
    except (RedisError, OSError) as exc:
        logger.warning("worker_heartbeat_remove_failed worker_id=%s", worker_id, exc_info=exc)


async def get_worker_heartbeats(*, now: datetime | None = None) -> dict[str, datetime] | None:
    # None means liveness is unknown (Redis disabled or unreachable), not "no workers".
    redis = await get_redis()
    if redis is None:
        return None
    try:
        raw = await redis.hgetall(WORKER_HEARTBEATS_KEY)
    except (RedisError, OSError) as exc:
        logger.warning("worker_heartbeat_read_failed", exc_info=exc)
        return None
    cutoff = (now or _utc_now()) - timedelta(seconds=max(1, get_settings().worker_heartbeat_retention_s))
    heartbeats: dict[str, datetime] = {}
    expired: list[str] = []
    for key, value in (raw or {}).items():
        worker_id = _decode(key)
        try:
            seen_at = datetime.fromisoformat(_decode(value))
        except ValueError:
            expired.append(worker_id)
            continue
        if seen_at < cutoff:
            expired.append(worker_id)
            continue
        heartbeats[worker_id] = seen_at
    for worker_id in expired:
        try:
            await redis.hdel(WORKER_HEARTBEATS_KEY, worker_id)
        except (RedisError, OSError) as exc:
            logger.warning("worker_heartbeat_prune_failed worker_id=%s", worker_id, exc_info=exc)
            break
    if expired:
        logger.info("worker_heartbeats_pruned count=%s", len(expired))
    return heartbeats
