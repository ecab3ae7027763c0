"""
Shannon Daily Diary Feed
========================
The port publishes a daily diary PDF (CarGoPro). Text extraction happens
upstream; this module takes the extracted rows from there:

  1. check_for_update()      - HEAD the PDF, flag update_available when its
                               Last-Modified changes (scheduled, never raises)
  2. normalize_extracted_ships() - "Eta 21/1150" day/time pairs → UTC datetimes,
                               status markers → visit statuses, pilot codes → names
  3. cache_extraction()      - store the normalized ships on the metadata doc,
                               keeping the replaced list as previous_ships so
                               the UI (and reconciliation) can show what changed

Metadata doc: system_settings/shannon_diary_metadata
    cached_ships, cached_text, cached_page_count, last_processed,
    previous_ships, previous_processed, update_available,
    current_last_modified, last_check, watchtower_enabled,
    processing, processing_started_at
"""

import logging
from datetime import datetime, timezone

import requests
from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.config import (
    DIARY_HEAD_TIMEOUT_SEC,
    DIARY_METADATA_DOC,
    DIARY_PDF_URL,
    DIARY_SOURCE,
    SETTINGS,
)
from pilotage.locks import acquire_lock, release_lock
from pilotage.models import VisitStatus

logger = logging.getLogger("pilotage.diary_feed")

# Initials used in the diary's pilot column
PILOT_CODES = {
    "MST": "Mark",
    "WMCN": "William",
    "PG": "Paddy",
    "CB": "Cyril",
    "BM": "Brendan",
    "BD": "Brian",
    "PB": "Peter",
    "MW": "Matt",
}


def metadata_ref(db):
    return db.collection(SETTINGS).document(DIARY_METADATA_DOC)


# ──────────────────────────────────────────────
#  Row normalization
# ──────────────────────────────────────────────

def resolve_eta(eta_day, eta_time, today=None):
    """
    Turn the diary's day-of-month plus "HH:MM" into a UTC datetime.

    The diary only prints the day. A day earlier than today belongs to next
    month (and next year after December). Returns None when either part is
    missing or does not form a real date.
    """
    if not eta_day or not eta_time:
        return None
    if today is None:
        today = datetime.now(timezone.utc).date()
    elif isinstance(today, datetime):
        today = today.astimezone(timezone.utc).date()

    try:
        day = int(eta_day)
        hours, minutes = (int(part) for part in str(eta_time).strip().split(":")[:2])
    except (TypeError, ValueError):
        logger.warning(f"Unreadable diary ETA: day={eta_day!r} time={eta_time!r}")
        return None

    year, month = today.year, today.month
    if day < today.day:
        month += 1
        if month > 12:
            month = 1
            year += 1

    try:
        return datetime(year, month, day, hours, minutes, tzinfo=timezone.utc)
    except ValueError:
        logger.warning(f"Diary ETA {day:02d} {hours:02d}:{minutes:02d} is not a date in {year}-{month:02d}")
        return None


def status_from_marker(marker):
    if marker == "anchor":
        return VisitStatus.AWAITING_BERTH
    if marker == "etc":
        return VisitStatus.ALONGSIDE
    return VisitStatus.DUE


def pilot_from_code(code):
    """Map diary initials to a pilot name; unknown codes pass through."""
    if not code:
        return None
    clean = str(code).strip()
    return PILOT_CODES.get(clean.upper(), clean)


def _to_gt(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def normalize_extracted_ships(raw_ships, today=None):
    ships = []
    for raw in raw_ships or []:
        if not isinstance(raw, dict):
            continue
        name = (raw.get("name") or "").strip()
        if not name:
            continue
        eta = resolve_eta(raw.get("etaDay"), raw.get("etaTime"), today)
        ets = resolve_eta(raw.get("etsDay"), raw.get("etsTime"), today)
        ships.append({
            "name": name,
            "gt": _to_gt(raw.get("gt")),
            "port": raw.get("port") or None,
            "eta": eta.isoformat().replace("+00:00", "Z") if eta else None,
            "ets": ets.isoformat().replace("+00:00", "Z") if ets else None,
            "status": status_from_marker(raw.get("statusMarker")),
            "notes": raw.get("notes") or None,
            "assignedPilot": pilot_from_code(raw.get("pilotCode") or raw.get("pilot")),
            "source": DIARY_SOURCE,
        })
    return ships


# ──────────────────────────────────────────────
#  Cache
# ──────────────────────────────────────────────

def cache_extraction(db, raw_ships, raw_text="", page_count=0, today=None):
    """
    Normalize and store one diary extraction.

    Raises LockHeld if another extraction is being stored. The lock is
    released whether or not the store succeeds.
    """
    ref = metadata_ref(db)
    previous = acquire_lock(ref)
    previous_ships = previous.get("cached_ships") or []
    previous_processed = previous.get("last_processed")

    try:
        ships = normalize_extracted_ships(raw_ships, today)
        ref.set({
            "update_available": False,
            "last_processed": SERVER_TIMESTAMP,
            "processing": False,
            "processing_started_at": None,
            "cached_ships": ships,
            "cached_text": raw_text or "",
            "cached_page_count": page_count or 0,
            "previous_ships": previous_ships,
            "previous_processed": previous_processed,
        }, merge=True)
    except Exception:
        release_lock(ref)
        raise

    logger.info(f"Cached {len(ships)} diary ships ({len(previous_ships)} previously)")
    return {"ships": ships, "shipsCount": len(ships), "previousCount": len(previous_ships)}


# ──────────────────────────────────────────────
#  Watchtower
# ──────────────────────────────────────────────

def check_for_update(db, session=requests, url=DIARY_PDF_URL):
    """
    Compare the PDF's Last-Modified header with the stored one.

    Returns "paused", "no_header", "updated", "unchanged" or "error".
    Errors are logged, not raised; the next scheduled run retries.
    """
    ref = metadata_ref(db)
    try:
        snap = ref.get()
        data = (snap.to_dict() or {}) if snap.exists else {}
        if data.get("watchtower_enabled") is False:
            logger.info("Watchtower is paused by admin. Skipping check.")
            return "paused"

        resp = session.head(url, timeout=DIARY_HEAD_TIMEOUT_SEC, allow_redirects=True)
        server_modified = resp.headers.get("Last-Modified")
        if not server_modified:
            logger.warning(f"No Last-Modified header from {url} (HTTP {resp.status_code})")
            return "no_header"

        current = data.get("current_last_modified")
        if server_modified != current:
            ref.set({
                "update_available": True,
                "current_last_modified": server_modified,
                "last_check": SERVER_TIMESTAMP,
                "watchtower_enabled": True,
            }, merge=True)
            logger.info(f"Diary update detected. Server: {server_modified}, previous: {current}")
            return "updated"

        ref.set({"last_check": SERVER_TIMESTAMP, "watchtower_enabled": True}, merge=True)
        logger.info("No diary update, PDF unchanged")
        return "unchanged"
    except Exception as e:
        logger.error(f"Diary flag check failed for {url}: {e}")
        return "error"
