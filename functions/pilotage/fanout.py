"""
Ship detail fan-out.

When a ship's name or gross tonnage is corrected, the denormalized copies
on visits and trips are rewritten:
  1. Active visits (Due / Awaiting Berth / Alongside), whatever their age
  2. Visits whose initial ETA falls in the last 60 days, whatever their status
  3. Trips boarding in the last 60 days (billing); trips without a
     boarding time are not billing events yet and are skipped

Only changed fields are written. The payload depends on the new ship state
alone, so running the same change twice converges to the same documents.
"""

import logging
from datetime import datetime, timedelta, timezone

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.batching import commit_in_batches
from pilotage.config import FANOUT_LOOKBACK_DAYS, SHIP_UPDATE_MARKER, TRIPS, VISITS
from pilotage.models import ACTIVE_STATUSES

logger = logging.getLogger("pilotage.fanout")


def detect_changes(before, after):
    """Return ``(name_changed, gt_changed)``."""
    before = before or {}
    after = after or {}
    return (
        before.get("shipName") != after.get("shipName"),
        before.get("grossTonnage") != after.get("grossTonnage"),
    )


def build_visit_update(ship, name_changed, gt_changed):
    update = {"updatedBy": SHIP_UPDATE_MARKER, "statusLastUpdated": SERVER_TIMESTAMP}
    if name_changed:
        name = ship.get("shipName") or ""
        update["shipName"] = name
        update["shipName_lowercase"] = ship.get("shipName_lowercase") or name.lower()
    if gt_changed:
        update["grossTonnage"] = ship.get("grossTonnage")
    return update


def build_trip_update(ship, name_changed, gt_changed):
    update = {"lastModifiedBy": SHIP_UPDATE_MARKER, "lastModifiedAt": SERVER_TIMESTAMP}
    if name_changed:
        update["shipName"] = ship.get("shipName")
    if gt_changed:
        update["gt"] = ship.get("grossTonnage")
    return update


def select_visits(db, ship_id, since):
    """Active visits plus recent visits, deduplicated by id."""
    active = (
        db.collection(VISITS)
        .where("shipId", "==", ship_id)
        .where("currentStatus", "in", ACTIVE_STATUSES)
        .get()
    )
    recent = (
        db.collection(VISITS)
        .where("shipId", "==", ship_id)
        .where("initialEta", ">=", since)
        .get()
    )
    seen = set()
    refs = []
    for doc in list(active) + list(recent):
        if doc.id in seen:
            continue
        seen.add(doc.id)
        refs.append(doc.reference)
    return refs


def select_trips(db, ship_id, since):
    docs = (
        db.collection(TRIPS)
        .where("shipId", "==", ship_id)
        .where("boarding", ">=", since)
        .get()
    )
    return [doc.reference for doc in docs]


def handle_ship_updated(db, ship_id, before, after, now=None):
    """
    Trigger entry point for ``ships/{shipId}`` updates.

    Returns ``{"visits", "trips", "batches"}``; all zero when neither name
    nor tonnage changed. Raises BatchCommitError if any batch failed.
    """
    stats = {"visits": 0, "trips": 0, "batches": 0}
    if not before or not after:
        return stats

    name_changed, gt_changed = detect_changes(before, after)
    if not name_changed and not gt_changed:
        logger.info(f"Ship {ship_id} updated, but name/GT unchanged. Skipping sync.")
        return stats

    logger.info(
        f"Ship {ship_id} changed. Name: {before.get('shipName')}->{after.get('shipName')}, "
        f"GT: {before.get('grossTonnage')}->{after.get('grossTonnage')}"
    )

    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=FANOUT_LOOKBACK_DAYS)

    visit_refs = select_visits(db, ship_id, since)
    trip_refs = select_trips(db, ship_id, since)

    visit_update = build_visit_update(after, name_changed, gt_changed)
    trip_update = build_trip_update(after, name_changed, gt_changed)
    writes = [("update", ref, visit_update) for ref in visit_refs]
    writes += [("update", ref, trip_update) for ref in trip_refs]

    result = commit_in_batches(db, writes)
    stats.update(visits=len(visit_refs), trips=len(trip_refs), batches=result["batches"])
    logger.info(
        f"Synced {stats['visits']} visits and {stats['trips']} trips for ship "
        f"{after.get('shipName')} in {stats['batches']} batches"
    )
    return stats
