"""
Bulk charge migration
=====================
One-shot (re-runnable) copy of every legacy charge onto /trips, used when
a deployment first switches to the trip-based billing screens.

Two reads (all charges, all trips), then matching in memory:
  Tier 1: trips indexed by ``visitId|typeTrip``
  Tier 2: trips indexed by ``ship|typeTrip|YYYY-MM-DD``, trying the charge
          day, then the day before, then the day after
Several candidates under one key are narrowed by find_best_match.

Matched trips that are already confirmed and named are left alone.
Unmatched charges become standalone ``source="migration"`` trips at
``charge_{chargeId}``, so a second run overwrites instead of duplicating.
"""

import logging
from collections import Counter
from datetime import timedelta

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.batching import commit_in_batches
from pilotage.bridge import standalone_trip_id
from pilotage.config import CHARGES, MIGRATION_MARKER, TRIPS
from pilotage.matching import find_best_match
from pilotage.normalize import normalize_charge, normalize_ship_name, to_datetime, trip_ship_name

logger = logging.getLogger("pilotage.charge_migration")

MIGRATION_SOURCE = "migration"
MAX_SAMPLE_ORPHANS = 20

NO_BOARDING = "No boarding date"
NO_VISIT_ID = "No visitId"
VISIT_NOT_FOUND = "visitId not found in trips"


def _day_key(dt):
    return dt.strftime("%Y-%m-%d")


def visit_key(visit_id, trip_type):
    return f"{visit_id}|{trip_type}"


def ship_day_key(ship_name, trip_type, dt):
    return f"{normalize_ship_name(ship_name)}|{trip_type}|{_day_key(dt)}"


def build_trip_indexes(trip_docs):
    """Return ``(by_visit, by_ship_day)`` dicts of ``[(trip_id, trip), ...]``."""
    by_visit = {}
    by_ship_day = {}
    for trip_id, trip in trip_docs:
        if trip.get("visitId"):
            by_visit.setdefault(visit_key(trip["visitId"], trip.get("typeTrip")), []).append((trip_id, trip))
        name = trip_ship_name(trip)
        boarding = to_datetime(trip.get("boarding"))
        if name and boarding is not None:
            by_ship_day.setdefault(ship_day_key(name, trip.get("typeTrip"), boarding), []).append((trip_id, trip))
    return by_visit, by_ship_day


def _ship_day_candidates(charge, by_ship_day):
    if not charge.ship_name:
        return []
    for offset in (0, -1, 1):
        day = charge.charge_date + timedelta(days=offset)
        candidates = by_ship_day.get(ship_day_key(charge.ship_name, charge.trip_type, day))
        if candidates:
            return candidates
    return []


def match_charge(charge, by_visit, by_ship_day):
    """Return ``(candidate, tier)``, or ``(None, reason)`` for an orphan."""
    if charge.charge_date is None:
        return None, NO_BOARDING

    reason = NO_VISIT_ID
    if charge.visit_id:
        candidates = by_visit.get(visit_key(charge.visit_id, charge.trip_type))
        if candidates:
            return find_best_match(candidates, charge.charge_date), 1
        reason = VISIT_NOT_FOUND

    candidates = _ship_day_candidates(charge, by_ship_day)
    if candidates:
        return find_best_match(candidates, charge.charge_date), 2

    return None, reason


def _confirmed_at(charge):
    return charge.updated_at or SERVER_TIMESTAMP


def _load(db, collection):
    return [(doc.id, doc.to_dict() or {}) for doc in db.collection(collection).get()]


def sync_all_charges(db):
    charges = _load(db, CHARGES)
    trips = _load(db, TRIPS)
    logger.info(f"Loaded {len(charges)} charges and {len(trips)} trips")

    by_visit, by_ship_day = build_trip_indexes(trips)

    result = {
        "totalCharges": len(charges),
        "tripsUpdated": 0,
        "tripsCreated": 0,
        "alreadySynced": 0,
        "skipped": 0,
        "matchBreakdown": {"byVisitId": 0, "byShipAndBoarding": 0},
    }
    writes = []

    for charge_id, data in charges:
        charge = normalize_charge(charge_id, data)
        match, tier = match_charge(charge, by_visit, by_ship_day)

        if match is not None:
            trip_id, trip = match
            if tier == 1:
                result["matchBreakdown"]["byVisitId"] += 1
            else:
                result["matchBreakdown"]["byShipAndBoarding"] += 1
            if trip.get("isConfirmed") and trip_ship_name(trip):
                result["alreadySynced"] += 1
                continue
            writes.append(("update", db.collection(TRIPS).document(trip_id), {
                "shipName": charge.ship_name,
                "gt": charge.gt,
                "confirmedBy": charge.confirmed_by,
                "confirmedById": charge.confirmed_by_id,
                "confirmedAt": _confirmed_at(charge),
                "isConfirmed": True,
            }))
            result["tripsUpdated"] += 1
            continue

        if tier == NO_BOARDING:
            result["skipped"] += 1
            continue

        writes.append(("set", db.collection(TRIPS).document(standalone_trip_id(charge_id)), {
            "typeTrip": charge.trip_type,
            "boarding": charge.charge_date,
            "port": charge.port or None,
            "pilot": charge.pilot or None,
            "pilotNotes": charge.pilot_notes or None,
            "extraChargesNotes": charge.extra_notes or None,
            "shipName": charge.ship_name,
            "gt": charge.gt,
            "isConfirmed": True,
            "confirmedBy": charge.confirmed_by,
            "confirmedById": charge.confirmed_by_id,
            "confirmedAt": _confirmed_at(charge),
            "source": MIGRATION_SOURCE,
            "migratedFromChargeId": charge_id,
            "visitId": None,
            "shipId": None,
            "recordedAt": charge.charge_date,
            "recordedBy": MIGRATION_MARKER,
        }))
        result["tripsCreated"] += 1

    stats = commit_in_batches(db, writes)
    result["batches"] = stats["batches"]
    result["message"] = (
        f"Migration successful. Updated {result['tripsUpdated']}, "
        f"Created {result['tripsCreated']} new trips."
    )
    logger.info(
        f"Charge migration: {result['tripsUpdated']} updated, {result['tripsCreated']} created, "
        f"{result['alreadySynced']} already synced, {result['skipped']} skipped"
    )
    return result


def analyze_orphan_charges(db):
    """Where unmatched charges come from, without writing anything."""
    charges = _load(db, CHARGES)
    trips = _load(db, TRIPS)
    by_visit, by_ship_day = build_trip_indexes(trips)

    by_month = Counter()
    by_year = Counter()
    by_reason = Counter()
    samples = []
    oldest = newest = None
    total = 0

    for charge_id, data in charges:
        charge = normalize_charge(charge_id, data)
        match, reason = match_charge(charge, by_visit, by_ship_day)
        if match is not None:
            continue

        total += 1
        by_reason[reason] += 1
        when = charge.charge_date
        if when is None:
            continue

        by_month[when.strftime("%Y-%m")] += 1
        by_year[str(when.year)] += 1
        oldest = when if oldest is None or when < oldest else oldest
        newest = when if newest is None or when > newest else newest
        if len(samples) < MAX_SAMPLE_ORPHANS:
            samples.append({
                "chargeId": charge_id,
                "ship": charge.ship_name,
                "typeTrip": charge.trip_type,
                "boarding": when.isoformat(),
                "reason": reason,
            })

    return {
        "totalCharges": len(charges),
        "totalTrips": len(trips),
        "totalOrphans": total,
        "oldestOrphan": oldest.isoformat() if oldest else None,
        "newestOrphan": newest.isoformat() if newest else None,
        "yearlyBreakdown": [{"year": y, "count": c} for y, c in sorted(by_year.items())],
        "monthlyBreakdown": [{"month": m, "count": c} for m, c in sorted(by_month.items())],
        "reasonBreakdown": [{"reason": r, "count": c} for r, c in by_reason.most_common()],
        "sampleOrphans": samples,
    }
