"""
Charge → Trip Bridge
====================
Keeps /trips in step with the legacy /charges collection while both
systems run side by side. The old billing screens write charges; the new
app reads trips. Every charge write must leave exactly one confirmed trip
carrying that charge's billing data.

Flow per charge:
  1. Normalize aliases (pilotage.normalize)
  2. Strategy A: trips of the charge's visit, same trip type
  3. Strategy B: trips boarding within ±24h, matching ship name
  4. Match  → confirm the trip and copy billing fields onto it
     No match → create a standalone confirmed trip at ``charge_{chargeId}``

Both writes are replay-safe: the update payload only depends on the charge,
and the standalone trip id is derived from the charge id.

Charge deletions are ignored on purpose; the legacy system is being
retired and must not be able to delete billing history.
"""

import logging

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.config import (
    BACKFILL_LOCK_DOC,
    BRIDGE_MARKER,
    CHARGES,
    GAP_FILL_MARKER,
    SETTINGS,
    TRIPS,
)
from pilotage.intake import find_or_create_ship
from pilotage.locks import acquire_lock, release_lock
from pilotage.matching import (
    can_match_by_ship,
    can_match_by_visit,
    match_strategy,
    trip_window,
)
from pilotage.normalize import normalize_charge, to_datetime

logger = logging.getLogger("pilotage.bridge")

BRIDGE_SOURCE = "Legacy Bridge"
MAX_REPORTED_FAILURES = 50


def standalone_trip_id(charge_id):
    return f"charge_{charge_id}"


# ──────────────────────────────────────────────
#  Candidate queries
# ──────────────────────────────────────────────

def load_visit_trips(db, visit_id):
    docs = db.collection(TRIPS).where("visitId", "==", visit_id).get()
    return [(doc.id, doc.to_dict() or {}) for doc in docs]


def load_nearby_trips(db, charge_date):
    start, end = trip_window(charge_date)
    docs = (
        db.collection(TRIPS)
        .where("boarding", ">=", start)
        .where("boarding", "<=", end)
        .get()
    )
    return [(doc.id, doc.to_dict() or {}) for doc in docs]


def find_trip_for_charge(db, charge):
    """Run both strategies, querying the wider window only when A fails."""
    visit_trips = load_visit_trips(db, charge.visit_id) if can_match_by_visit(charge) else []
    trip_id, strategy = match_strategy(charge, visit_trips, [])
    if trip_id is None and can_match_by_ship(charge):
        nearby = load_nearby_trips(db, charge.charge_date)
        trip_id, strategy = match_strategy(charge, visit_trips, nearby)
    return trip_id, strategy


# ──────────────────────────────────────────────
#  Payloads
# ──────────────────────────────────────────────

def _confirmed_at(charge):
    # The charge's own creation time beats "now"
    return charge.created_at or charge.raw_date or SERVER_TIMESTAMP


def build_confirmation_update(charge, marker=BRIDGE_MARKER):
    return {
        "isConfirmed": True,
        "confirmedAt": _confirmed_at(charge),
        "confirmedBy": charge.confirmed_by,
        "confirmedById": charge.confirmed_by_id,
        "shipName": charge.ship_name,
        "gt": charge.gt,
        "lastModifiedAt": SERVER_TIMESTAMP,
        "lastModifiedBy": marker,
    }


def build_standalone_trip(charge, ship_id, marker=BRIDGE_MARKER, source=BRIDGE_SOURCE):
    when = charge.charge_date or SERVER_TIMESTAMP
    return {
        "typeTrip": charge.trip_type,
        "shipId": ship_id,
        "shipName": charge.ship_name,
        "gt": charge.gt,
        "boarding": when,
        "isConfirmed": True,
        "confirmedAt": when,
        "confirmedBy": charge.confirmed_by,
        "confirmedById": charge.confirmed_by_id,
        "visitId": None,
        "source": source,
        "migratedFromChargeId": charge.charge_id,
        "recordStatus": "active",
        "recordedAt": SERVER_TIMESTAMP,
        "recordedBy": marker,
    }


# ──────────────────────────────────────────────
#  Bridge
# ──────────────────────────────────────────────

def bridge_charge(db, charge_id, data, marker=BRIDGE_MARKER):
    """
    Apply one charge to /trips.

    Returns ``{"action": "updated"|"created", "trip_id", "strategy"}``.
    Store errors propagate so the trigger runtime can retry.
    """
    charge = normalize_charge(charge_id, data)
    trip_id, strategy = find_trip_for_charge(db, charge)

    if trip_id:
        db.collection(TRIPS).document(trip_id).update(
            build_confirmation_update(charge, marker)
        )
        logger.info(f"Charge {charge_id} → trip {trip_id} updated (by {strategy})")
        return {"action": "updated", "trip_id": trip_id, "strategy": strategy}

    ship_id = None
    if charge.ship_name:
        ship_id, _ = find_or_create_ship(db, charge.ship_name, charge.gt)

    new_id = standalone_trip_id(charge_id)
    db.collection(TRIPS).document(new_id).set(
        build_standalone_trip(charge, ship_id, marker), merge=True
    )
    logger.info(f"Charge {charge_id}: no matching trip, standalone trip {new_id} written")
    return {"action": "created", "trip_id": new_id, "strategy": None}


def handle_charge_written(db, charge_id, before, after):
    """Trigger entry point for ``charges/{chargeId}``."""
    if after is None:
        logger.info(f"Charge {charge_id} was deleted. No action taken on trips.")
        return None
    return bridge_charge(db, charge_id, after)


def backfill_charges(db, cutoff, marker=GAP_FILL_MARKER):
    """
    Re-run the bridge for every charge modified on or after ``cutoff``.

    A failing charge is counted and skipped; the rest of the run continues.
    Only one backfill runs at a time (LockHeld otherwise).
    """
    cutoff_dt = to_datetime(cutoff)
    if cutoff_dt is None:
        raise ValueError(f"Invalid cutoff date: {cutoff!r}")

    stats = {"processed": 0, "tripsUpdated": 0, "tripsCreated": 0, "failed": 0, "failures": []}
    lock_ref = db.collection(SETTINGS).document(BACKFILL_LOCK_DOC)
    acquire_lock(lock_ref)

    try:
        docs = db.collection(CHARGES).where("updateTime", ">=", cutoff_dt).stream()
        for doc in docs:
            stats["processed"] += 1
            try:
                result = bridge_charge(db, doc.id, doc.to_dict() or {}, marker)
                if result["action"] == "updated":
                    stats["tripsUpdated"] += 1
                else:
                    stats["tripsCreated"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.warning(f"Backfill: charge {doc.id} failed: {e}")
                if len(stats["failures"]) < MAX_REPORTED_FAILURES:
                    stats["failures"].append({"chargeId": doc.id, "error": str(e)})
    finally:
        release_lock(lock_ref, {
            "last_run_at": SERVER_TIMESTAMP,
            "last_cutoff": cutoff_dt,
            "last_processed": stats["processed"],
            "last_failed": stats["failed"],
        })

    logger.info(
        f"Backfill since {cutoff_dt.isoformat()}: processed={stats['processed']} "
        f"updated={stats['tripsUpdated']} created={stats['tripsCreated']} failed={stats['failed']}"
    )
    return stats
