"""
Duplicate ship merge.

The same vessel sometimes gets two ship records ("MSC OSCAR" and
"Msc Oscar."). Merging keeps the target, moves every visit and trip of
the source onto it, and deletes the source. The source is only deleted
after all visit and trip batches have committed.
"""

import logging
import re

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.audit import audit_hints
from pilotage.batching import commit_in_batches
from pilotage.config import SHIPS, TRIPS, VISITS
from pilotage.models import SYSTEM

logger = logging.getLogger("pilotage.ship_merge")

NOTES_DIVIDER = "\n---\n"

_MT_ID = re.compile(r"/shipid:(\d+)", re.IGNORECASE)


def marine_traffic_id(link):
    if not link:
        return None
    m = _MT_ID.search(link)
    return m.group(1) if m else None


def compare_marine_traffic_links(ship_a, ship_b):
    """'same', 'different', or 'unknown' when either link lacks a ship id."""
    a = marine_traffic_id(ship_a.get("marineTrafficLink"))
    b = marine_traffic_id(ship_b.get("marineTrafficLink"))
    if not a or not b:
        return "unknown"
    return "same" if a == b else "different"


def merge_notes(target_notes, source_notes):
    target_notes = (target_notes or "").strip()
    source_notes = (source_notes or "").strip()
    if target_notes and source_notes:
        return f"{target_notes}{NOTES_DIVIDER}{source_notes}"
    return target_notes or source_notes


def merge_ships(db, target_id, source_id, gross_tonnage, merge_notes_flag=False, actor=SYSTEM):
    """
    Merge ship ``source_id`` into ``target_id``.

    Raises ValueError for missing or identical ids, or when either ship
    does not exist. Returns ``{"visitsMigrated", "tripsMigrated",
    "sourceShipDeleted", "mergedNotes"}``.
    """
    if not target_id or not source_id:
        raise ValueError("Both ships must have valid IDs")
    if target_id == source_id:
        raise ValueError("Cannot merge a ship into itself")

    target_ref = db.collection(SHIPS).document(target_id)
    source_ref = db.collection(SHIPS).document(source_id)
    target_snap = target_ref.get()
    source_snap = source_ref.get()
    if not target_snap.exists or not source_snap.exists:
        raise ValueError(f"Ship not found: {target_id if not target_snap.exists else source_id}")
    target = target_snap.to_dict() or {}
    source = source_snap.to_dict() or {}

    hints = audit_hints(actor)
    merged = None
    ship_update = {"grossTonnage": gross_tonnage, "updatedAt": SERVER_TIMESTAMP, **hints}
    if merge_notes_flag and source.get("shipNotes"):
        merged = merge_notes(target.get("shipNotes"), source.get("shipNotes"))
        ship_update["shipNotes"] = merged
    target_ref.update(ship_update)

    target_name = target.get("shipName") or ""
    visits = db.collection(VISITS).where("shipId", "==", source_id).get()
    trips = db.collection(TRIPS).where("shipId", "==", source_id).get()

    writes = [
        ("update", doc.reference, {
            "shipId": target_id,
            "shipName": target_name,
            "shipName_lowercase": target_name.lower(),
            "grossTonnage": gross_tonnage,
            **hints,
        })
        for doc in visits
    ]
    writes += [("update", doc.reference, {"shipId": target_id, **hints}) for doc in trips]
    commit_in_batches(db, writes)

    source_ref.delete()
    logger.info(
        f"Merged ship {source_id} ({source.get('shipName')}) into {target_id} ({target_name}): "
        f"{len(visits)} visits, {len(trips)} trips"
    )
    return {
        "visitsMigrated": len(visits),
        "tripsMigrated": len(trips),
        "sourceShipDeleted": True,
        "mergedNotes": merged,
    }
