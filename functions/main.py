"""
Shannon Pilotage Cloud Functions
================================
Server-side sync for the pilot-operations app. Everything here reacts to
Firestore writes, a callable request, or a schedule; the logic itself
lives in the pilotage package.

Functions:
1. bridge_charges_to_trips   - legacy charge written → confirm/create trip
2. on_ship_updated           - ship name/GT corrected → visits and trips
3. on_trip_written / on_visit_written / on_ship_written - audit trail
4. gap_fill_charges          - admin: re-bridge charges since a cutoff
5. sync_charges_to_trips     - admin: bulk charge → trip migration
6. analyze_orphan_charges    - admin: where unmatched charges come from
7. merge_ships               - admin: merge duplicate ship records
8. store_diary_extraction    - admin: cache an extracted daily diary
9. accept_diary_ship         - admin/pilot: bring a diary ship into visits
10. get_diary_reconciliation - diary vs previous diary vs our visits
11. check_diary_day / check_diary_night - watchtower for the diary PDF
"""

import json

import firebase_admin
from firebase_admin import firestore
from firebase_functions import firestore_fn, https_fn, options, scheduler_fn

from pilotage import audit, bridge, charge_migration, diary_feed, fanout, intake, reconciliation, ship_merge
from pilotage.access import ADMIN, PILOT, require_role
from pilotage.batching import BatchCommitError
from pilotage.config import REGION, SHIPS, TRIPS, VISITS
from pilotage.locks import LockHeld

# Initialize Firebase
firebase_admin.initialize_app()
db = None


def get_db():
    global db
    if db is None:
        db = firestore.client()
    return db


def _snapshot_dict(snapshot):
    """Document data, or None when the snapshot is missing/deleted."""
    if snapshot is None or not snapshot.exists:
        return None
    return snapshot.to_dict() or {}


def _change(event):
    return _snapshot_dict(event.data.before), _snapshot_dict(event.data.after)


def _invalid(message):
    return https_fn.HttpsError(code=https_fn.FunctionsErrorCode.INVALID_ARGUMENT, message=message)


def _busy(message):
    return https_fn.HttpsError(code=https_fn.FunctionsErrorCode.RESOURCE_EXHAUSTED, message=message)


# ============================================================
# LEGACY CHARGE BRIDGE
# ============================================================

@firestore_fn.on_document_written(document="charges/{chargeId}", region=REGION)
def bridge_charges_to_trips(event: firestore_fn.Event) -> None:
    """Every charge write leaves one confirmed trip carrying its billing data."""
    charge_id = event.params["chargeId"]
    before, after = _change(event)
    result = bridge.handle_charge_written(get_db(), charge_id, before, after)
    if result:
        print(f"🌉 Charge {charge_id}: trip {result['trip_id']} {result['action']}")


@https_fn.on_call(region=REGION, memory=options.MemoryOption.MB_512, timeout_sec=540)
def gap_fill_charges(req: https_fn.CallableRequest):
    require_role(get_db(), req.auth, [ADMIN])
    cutoff = (req.data or {}).get("cutoffDate")
    if not cutoff:
        raise _invalid("cutoffDate is required.")

    print(f"🔧 Gap fill since {cutoff}...")
    try:
        stats = bridge.backfill_charges(get_db(), cutoff)
    except ValueError as e:
        raise _invalid(str(e))
    except LockHeld as e:
        raise _busy(f"A gap fill is already running: {e}")

    print(f"✅ Gap fill: {stats['processed']} charges, {stats['failed']} failed")
    return {"success": stats["failed"] == 0, **stats}


@https_fn.on_call(region=REGION, memory=options.MemoryOption.GB_1, timeout_sec=540)
def sync_charges_to_trips(req: https_fn.CallableRequest):
    require_role(get_db(), req.auth, [ADMIN])
    print("🔄 Syncing all charges to trips...")
    try:
        result = charge_migration.sync_all_charges(get_db())
    except BatchCommitError as e:
        print(f"❌ Charge sync partially failed: {e}")
        raise https_fn.HttpsError(
            code=https_fn.FunctionsErrorCode.INTERNAL,
            message=f"Sync failed: {e}",
        )
    print(f"✅ {result['message']}")
    return result


@https_fn.on_call(region=REGION, memory=options.MemoryOption.GB_1, timeout_sec=300)
def analyze_orphan_charges(req: https_fn.CallableRequest):
    require_role(get_db(), req.auth, [ADMIN])
    result = charge_migration.analyze_orphan_charges(get_db())
    print(f"📊 Orphan analysis: {result['totalOrphans']} of {result['totalCharges']} charges unmatched")
    return result


# ============================================================
# SHIP DETAILS FAN-OUT
# ============================================================

@firestore_fn.on_document_updated(document="ships/{shipId}", region=REGION)
def on_ship_updated(event: firestore_fn.Event) -> None:
    """Ship name/GT corrections reach active and recent visits and trips."""
    ship_id = event.params["shipId"]
    before, after = _change(event)
    # BatchCommitError propagates so the runtime retries; the payload is idempotent
    stats = fanout.handle_ship_updated(get_db(), ship_id, before, after)
    if stats["batches"]:
        print(f"🚢 Ship {ship_id}: {stats['visits']} visits, {stats['trips']} trips updated")


@https_fn.on_call(region=REGION, timeout_sec=300)
def merge_ships(req: https_fn.CallableRequest):
    actor = require_role(get_db(), req.auth, [ADMIN], location="ship-merge")
    data = req.data or {}
    gross_tonnage = data.get("grossTonnage")
    if not isinstance(gross_tonnage, (int, float)) or isinstance(gross_tonnage, bool):
        raise _invalid("grossTonnage must be a number.")
    try:
        result = ship_merge.merge_ships(
            get_db(),
            data.get("targetShipId"),
            data.get("sourceShipId"),
            gross_tonnage,
            bool(data.get("mergeNotes")),
            actor=actor,
        )
    except ValueError as e:
        raise _invalid(str(e))
    print(f"🔗 Merged ship {data.get('sourceShipId')} → {data.get('targetShipId')}")
    return result


# ============================================================
# AUDIT TRAIL
# ============================================================

@firestore_fn.on_document_written(document="trips/{docId}", region=REGION)
def on_trip_written(event: firestore_fn.Event) -> None:
    before, after = _change(event)
    audit.handle_document_written(get_db(), TRIPS, event.params["docId"], before, after)


@firestore_fn.on_document_written(document="visits_new/{docId}", region=REGION)
def on_visit_written(event: firestore_fn.Event) -> None:
    before, after = _change(event)
    audit.handle_document_written(get_db(), VISITS, event.params["docId"], before, after)


@firestore_fn.on_document_written(document="ships/{docId}", region=REGION)
def on_ship_written(event: firestore_fn.Event) -> None:
    before, after = _change(event)
    audit.handle_document_written(get_db(), SHIPS, event.params["docId"], before, after)


# ============================================================
# DAILY DIARY
# ============================================================

@https_fn.on_call(region=REGION, memory=options.MemoryOption.MB_512, timeout_sec=60)
def store_diary_extraction(req: https_fn.CallableRequest):
    require_role(get_db(), req.auth, [ADMIN])
    data = req.data or {}
    ships = data.get("ships")
    if not isinstance(ships, list):
        raise _invalid("ships must be a list.")
    try:
        result = diary_feed.cache_extraction(
            get_db(), ships, data.get("text") or "", data.get("numPages") or 0
        )
    except LockHeld:
        raise _busy("PDF is currently being processed. Please try again in a moment.")
    print(f"📄 Diary cached: {result['shipsCount']} ships")
    return result


@https_fn.on_call(region=REGION)
def accept_diary_ship(req: https_fn.CallableRequest):
    actor = require_role(get_db(), req.auth, [ADMIN, PILOT], location="diary-reconciliation")
    ship = (req.data or {}).get("ship")
    if not isinstance(ship, dict):
        raise _invalid("ship is required.")
    try:
        result = intake.accept_feed_ship(get_db(), ship, actor=actor)
    except ValueError as e:
        raise _invalid(str(e))
    print(f"📥 Diary ship {ship.get('name')} accepted (visit {result['visitId']})")
    return result


@https_fn.on_call(region=REGION)
def get_diary_reconciliation(req: https_fn.CallableRequest):
    require_role(get_db(), req.auth, [])
    report = reconciliation.reconcile_latest(get_db())
    payload = {
        "results": [r.to_dict() for r in report["results"]],
        "changes": [c.to_dict() for c in report["changes"]],
        "summary": report["summary"],
        "lastProcessed": report["lastProcessed"],
    }
    # Visits carry Firestore timestamps
    return json.loads(json.dumps(payload, default=str))


@scheduler_fn.on_schedule(
    schedule="*/10 7-21 * * *",
    timezone=scheduler_fn.Timezone("UTC"),
    region=REGION,
    memory=options.MemoryOption.MB_256,
)
def check_diary_day(event: scheduler_fn.ScheduledEvent) -> None:
    """Every 10 minutes during the working day."""
    status = diary_feed.check_for_update(get_db())
    print(f"🗼 Diary watchtower (day): {status}")


@scheduler_fn.on_schedule(
    schedule="0 22-23,0-6 * * *",
    timezone=scheduler_fn.Timezone("UTC"),
    region=REGION,
    memory=options.MemoryOption.MB_256,
)
def check_diary_night(event: scheduler_fn.ScheduledEvent) -> None:
    """Hourly overnight."""
    status = diary_feed.check_for_update(get_db())
    print(f"🗼 Diary watchtower (night): {status}")
