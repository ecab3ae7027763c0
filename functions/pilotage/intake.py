"""
Ship and visit intake.

Ships are created the first time they are seen: by the charge bridge when
it has to fabricate a trip, and when an operator accepts a ship from the
daily diary that has no visit in the system yet.
"""

import hashlib
import logging
import re
from datetime import datetime, timezone

from google.api_core.exceptions import AlreadyExists
from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.audit import audit_hints
from pilotage.config import PORT_REPORT_MARKER, SHIPS, TRIPS, VISITS
from pilotage.models import ACTIVE_STATUSES, SYSTEM, TripType, VisitStatus
from pilotage.normalize import normalize_ship_name, to_datetime

logger = logging.getLogger("pilotage.intake")

DIARY_VISIT_SOURCE = "Sheet"


def find_ship_by_name(db, name):
    """Return ``(ship_id, data)`` for an exact lowercase name match, or None."""
    key = normalize_ship_name(name)
    if not key:
        return None
    docs = list(
        db.collection(SHIPS)
        .where("shipName_lowercase", "==", key)
        .limit(1)
        .get()
    )
    if not docs:
        return None
    return docs[0].id, docs[0].to_dict() or {}


def ship_id_for_name(name):
    """
    Document id for a ship created here, derived from its lowercase name.

    Two runs creating the same ship race onto the same document, so only
    one of them wins. The hash suffix keeps names that slug alike apart.
    """
    key = normalize_ship_name(name)
    slug = re.sub(r"[^a-z0-9]+", "-", key).strip("-")[:60]
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    return f"ship-{slug}-{digest}" if slug else f"ship-{digest}"


def find_or_create_ship(db, name, gross_tonnage=0, actor=SYSTEM):
    """
    Return ``(ship_id, created)``.

    Ships imported before this existed keep their auto ids and are found by
    the name lookup. New ships go to ``ship_id_for_name``; losing the create
    to a concurrent run counts as found.
    """
    existing = find_ship_by_name(db, name)
    if existing:
        return existing[0], False

    clean = name.strip()
    data = {
        "shipName": clean,
        "shipName_lowercase": clean.lower(),
        "grossTonnage": gross_tonnage or 0,
        "imoNumber": None,
        "marineTrafficLink": None,
        "shipNotes": None,
        "createdAt": SERVER_TIMESTAMP,
        "updatedAt": SERVER_TIMESTAMP,
    }
    data.update(audit_hints(actor))
    ref = db.collection(SHIPS).document(ship_id_for_name(clean))
    try:
        ref.create(data)
    except AlreadyExists:
        logger.info(f"Ship {ref.id} ({clean}) was created by a concurrent run")
        return ref.id, False
    logger.info(f"Created ship {ref.id} ({clean}, GT {gross_tonnage})")
    return ref.id, True


def find_active_visit(db, ship_id):
    docs = list(
        db.collection(VISITS)
        .where("shipId", "==", ship_id)
        .where("currentStatus", "in", ACTIVE_STATUSES)
        .get()
    )
    if not docs:
        return None
    return docs[0].id, docs[0].to_dict() or {}


def _new_trip(visit_id, ship_id, trip_type, boarding, pilot, recorded_by):
    return {
        "visitId": visit_id,
        "shipId": ship_id,
        "typeTrip": trip_type,
        "boarding": boarding,
        "pilot": pilot or "",
        "port": None,
        "pilotNotes": "",
        "extraChargesNotes": "",
        "isConfirmed": False,
        "recordedBy": recorded_by,
        "recordedAt": SERVER_TIMESTAMP,
    }


def accept_feed_ship(db, feed_ship, actor=SYSTEM, now=None):
    """
    Bring one diary ship into the system.

    Existing ship with an active visit: the visit's ETA and berth are
    refreshed from the diary. Otherwise a visit is opened with its inward
    and outward trips (boarding unknown, unconfirmed). A tonnage difference
    is written to the ship record, which the fan-out then propagates.
    """
    name = (feed_ship.get("name") or "").strip()
    if not name:
        raise ValueError("Diary ship has no name")

    now = now or datetime.now(timezone.utc)
    gt = feed_ship.get("gt") or 0
    eta = to_datetime(feed_ship.get("eta"))
    port = feed_ship.get("port") or None
    hints = audit_hints(actor)
    result = {
        "shipId": None,
        "visitId": None,
        "shipCreated": False,
        "visitCreated": False,
        "visitUpdated": False,
        "shipUpdated": False,
    }

    ship_id, created = find_or_create_ship(db, name, gt, actor)
    result["shipId"] = ship_id
    result["shipCreated"] = created

    ship_ref = db.collection(SHIPS).document(ship_id)
    ship = ship_ref.get().to_dict() or {}
    if not created and gt and ship.get("grossTonnage") != gt:
        ship_ref.update({"grossTonnage": gt, "updatedAt": SERVER_TIMESTAMP, **hints})
        result["shipUpdated"] = True
    ship_name = ship.get("shipName") or name

    active = find_active_visit(db, ship_id)
    if active:
        visit_id, _ = active
        update = {
            "berthPort": port,
            "updatedBy": PORT_REPORT_MARKER,
            "statusLastUpdated": SERVER_TIMESTAMP,
            **hints,
        }
        if eta is not None:
            update["initialEta"] = eta
        db.collection(VISITS).document(visit_id).update(update)
        result["visitId"] = visit_id
        result["visitUpdated"] = True
        logger.info(f"Refreshed visit {visit_id} for {ship_name} from diary")
        return result

    visit_ref = db.collection(VISITS).document()
    batch = db.batch()
    batch.set(visit_ref, {
        "shipId": ship_id,
        "shipName": ship_name,
        "shipName_lowercase": ship_name.lower(),
        "grossTonnage": gt or ship.get("grossTonnage") or 0,
        "currentStatus": feed_ship.get("status") or VisitStatus.DUE,
        "initialEta": eta or now,
        "berthPort": port,
        "visitNotes": feed_ship.get("notes"),
        "source": DIARY_VISIT_SOURCE,
        "updatedBy": PORT_REPORT_MARKER,
        "statusLastUpdated": SERVER_TIMESTAMP,
        **hints,
    })
    batch.set(
        db.collection(TRIPS).document(),
        _new_trip(visit_ref.id, ship_id, TripType.IN, None, None, actor.label),
    )
    batch.set(
        db.collection(TRIPS).document(),
        _new_trip(
            visit_ref.id, ship_id, TripType.OUT,
            to_datetime(feed_ship.get("ets")), feed_ship.get("assignedPilot"),
            actor.label,
        ),
    )
    batch.commit()

    result["visitId"] = visit_ref.id
    result["visitCreated"] = True
    logger.info(f"Opened visit {visit_ref.id} for {ship_name} from diary")
    return result
