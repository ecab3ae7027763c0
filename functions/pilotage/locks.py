"""
Processing locks kept on a settings document.

A lock is two fields, ``processing`` and ``processing_started_at``. A lock
older than LOCK_STALE_MINUTES is assumed abandoned (the function that took
it timed out) and is released on the next attempt.
"""

import logging
from datetime import datetime, timedelta, timezone

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.config import LOCK_STALE_MINUTES
from pilotage.normalize import to_datetime

logger = logging.getLogger("pilotage.locks")


class LockHeld(Exception):
    """Another run holds a lock that is not stale yet."""


def is_stale(started_at, now=None, stale_minutes=LOCK_STALE_MINUTES):
    started = to_datetime(started_at)
    if started is None:
        return True
    now = now or datetime.now(timezone.utc)
    return started < now - timedelta(minutes=stale_minutes)


def acquire_lock(ref, now=None, stale_minutes=LOCK_STALE_MINUTES):
    """
    Take the lock on ``ref`` or raise LockHeld.

    Returns the document data read before the lock was taken, so callers
    can reuse it (the diary cache keeps the previous snapshot from it).
    """
    snap = ref.get()
    data = (snap.to_dict() or {}) if snap.exists else {}

    if data.get("processing"):
        if not is_stale(data.get("processing_started_at"), now, stale_minutes):
            raise LockHeld(f"{ref.id} is already being processed")
        logger.warning(f"Lock on {ref.id} is stale (>{stale_minutes}min), releasing")

    ref.set({"processing": True, "processing_started_at": SERVER_TIMESTAMP}, merge=True)
    return data


def release_lock(ref, extra=None):
    payload = {"processing": False, "processing_started_at": None}
    if extra:
        payload.update(extra)
    ref.set(payload, merge=True)
