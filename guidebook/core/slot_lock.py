"""
Per-slot mutex serializing capacity changes for one (guide, service, date).

The conditional UPDATE in AvailabilityRepository is what actually prevents
overbooking; this lock only keeps concurrent reservers from racing each other
into that UPDATE. Backends:

- ``local``: an in-process ``threading.Lock`` per slot key. The registry
  only keeps locks that are held or waited on.
- ``redis``: ``SET NX EX`` on a namespaced key, shared across processes.

Lock infrastructure failures degrade to "proceed unlocked" with a warning,
never to a failed reservation.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
import logging
import threading
import time
from typing import Dict, Iterator, Optional
import weakref

from redis import Redis

from ..monitoring.prometheus_metrics import prometheus_metrics
from .config import settings

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()

_LOCAL_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
# Strong references for held locks; waiters hold their own
_HELD_LOCAL_LOCKS: Dict[str, threading.Lock] = {}
_LOCAL_LOCKS_GUARD = threading.Lock()

_REDIS_POLL_INTERVAL_S = 0.05


def _lock_key(guide_id: str, service_id: str, slot_date: date) -> str:
    return f"slot:{guide_id}:{service_id}:{slot_date.isoformat()}:mutex"


def _namespaced_key(key: str) -> str:
    return f"{settings.slot_lock_namespace}:lock:{key}"


def _local_lock(key: str) -> threading.Lock:
    with _LOCAL_LOCKS_GUARD:
        lock = _LOCAL_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _LOCAL_LOCKS[key] = lock
        return lock


def _acquire_local(key: str, wait_s: float) -> bool:
    lock = _local_lock(key)
    if not lock.acquire(timeout=wait_s):
        return False
    with _LOCAL_LOCKS_GUARD:
        _HELD_LOCAL_LOCKS[key] = lock
    return True


def _release_local(key: str) -> bool:
    with _LOCAL_LOCKS_GUARD:
        lock = _HELD_LOCAL_LOCKS.pop(key, None)
    if lock is None:
        return False
    lock.release()
    return True


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            client.ping()
        except Exception as exc:
            logger.warning("slot_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def acquire_slot_lock(key: str, *, ttl_s: Optional[int] = None, wait_s: float = 5.0) -> bool:
    """Block up to ``wait_s`` for the slot lock. Returns whether it is held."""
    if settings.slot_lock_backend != "redis":
        acquired = _acquire_local(key, wait_s)
        prometheus_metrics.record_slot_lock("acquire", "success" if acquired else "blocked")
        return acquired

    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_slot_lock("acquire", "redis_unavailable")
        logger.warning("slot_lock_redis_unavailable", extra={"lock_key": key})
        return False

    ttl = ttl_s or settings.slot_lock_ttl_seconds
    deadline = time.monotonic() + wait_s
    try:
        while True:
            if client.set(_namespaced_key(key), str(time.time()), nx=True, ex=ttl):
                prometheus_metrics.record_slot_lock("acquire", "success")
                return True
            if time.monotonic() >= deadline:
                prometheus_metrics.record_slot_lock("acquire", "blocked")
                return False
            time.sleep(_REDIS_POLL_INTERVAL_S)
    except Exception as exc:
        prometheus_metrics.record_slot_lock("acquire", "error")
        logger.warning(
            "slot_lock_acquire_failed",
            extra={"lock_key": key, "error": str(exc), "error_type": type(exc).__name__},
        )
        return False


def release_slot_lock(key: str) -> None:
    if settings.slot_lock_backend != "redis":
        released = _release_local(key)
        prometheus_metrics.record_slot_lock("release", "success" if released else "not_held")
        return

    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_slot_lock("release", "redis_unavailable")
        return
    try:
        deleted = client.delete(_namespaced_key(key))
        prometheus_metrics.record_slot_lock("release", "success" if deleted else "not_found")
    except Exception as exc:
        prometheus_metrics.record_slot_lock("release", "error")
        logger.warning(
            "slot_lock_release_failed",
            extra={"lock_key": key, "error": str(exc), "error_type": type(exc).__name__},
        )


@contextmanager
def slot_lock(
    guide_id: str,
    service_id: str,
    slot_date: date,
    *,
    ttl_s: Optional[int] = None,
    wait_s: float = 5.0,
) -> Iterator[bool]:
    key = _lock_key(guide_id, service_id, slot_date)
    acquired = acquire_slot_lock(key, ttl_s=ttl_s, wait_s=wait_s)
    if not acquired:
        logger.warning("slot_lock_not_acquired; relying on conditional update", extra={"lock_key": key})
    try:
        yield acquired
    finally:
        if acquired:
            release_slot_lock(key)
