"""
Daily Diary Reconciliation
==========================
Read-only comparisons between the port's daily diary (CarGoPro PDF,
extracted and cached in system_settings) and our own visit records.

1. compare_snapshots(previous, current)
   Diary against the diary it replaced, for change highlighting:
     NEW        - only in the current diary
     REMOVED    - only in the previous diary
     MODIFIED   - in both, one or more of name/gt/port/status/eta differ
     UNCHANGED  - in both, identical

2. reconcile(feed_ships, visits)
   Diary against internal visits, one result per ship name:
     PDF_ONLY     - in the diary, not in our records (needs adding)
     MISMATCH     - in both, name/eta/status/port differ
     MATCHED      - in both, all agree
     SYSTEM_ONLY  - in our records only (sailed, cancelled, or diary omission)
   Results come back in that order so the ones needing action are first.

Nothing here writes; accepting a diary ship is pilotage.intake.
"""

import logging
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import List, Optional

from pilotage.config import DIARY_METADATA_DOC, SETTINGS, VISITS
from pilotage.models import ACTIVE_STATUSES
from pilotage.normalize import to_datetime

logger = logging.getLogger("pilotage.reconciliation")

SNAPSHOT_FIELDS = ("name", "gt", "port", "status", "eta")

# Below this, two ETAs are the same minute written two ways
ETA_TOLERANCE_SECONDS = 60


class ChangeType(Enum):
    NEW = "new"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class MatchType(Enum):
    PDF_ONLY = "pdf-only"
    MISMATCH = "mismatch"
    MATCHED = "matched"
    SYSTEM_ONLY = "system-only"


MATCH_PRIORITY = {
    MatchType.PDF_ONLY: 0,
    MatchType.MISMATCH: 1,
    MatchType.MATCHED: 2,
    MatchType.SYSTEM_ONLY: 3,
}


@dataclass
class ShipComparison:
    ship: dict
    change_type: ChangeType
    changed_fields: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "ship": self.ship,
            "changeType": self.change_type.value,
            "changedFields": list(self.changed_fields),
        }


@dataclass
class FieldDiscrepancy:
    field: str
    pdf_value: str
    system_value: str

    def to_dict(self):
        return {"field": self.field, "pdfValue": self.pdf_value, "systemValue": self.system_value}


@dataclass
class ReconciliationResult:
    match_type: MatchType
    ship_name: str
    pdf_ship: Optional[dict] = None
    system_visit: Optional[dict] = None
    discrepancies: List[FieldDiscrepancy] = field(default_factory=list)

    def to_dict(self):
        return {
            "matchType": self.match_type.value,
            "shipName": self.ship_name,
            "pdfShip": self.pdf_ship,
            "systemVisit": self.system_visit,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
        }


# ──────────────────────────────────────────────
#  Keys and display values
# ──────────────────────────────────────────────

def snapshot_key(name):
    return (name or "").strip().lower()


def reconcile_key(name):
    """Case- and spacing-insensitive: 'MSC  OSCAR' and 'Msc Oscar' meet."""
    return "".join((name or "").split()).lower()


def format_eta(value):
    dt = to_datetime(value)
    if dt is None:
        return "-"
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _display(value):
    if value is None or value == "":
        return "-"
    return str(value)


def etas_differ(a, b):
    da, db_ = to_datetime(a), to_datetime(b)
    if da is None or db_ is None:
        return (da is None) != (db_ is None)
    return abs((da - db_).total_seconds()) > ETA_TOLERANCE_SECONDS


# ──────────────────────────────────────────────
#  Diary vs previous diary
# ──────────────────────────────────────────────

def changed_snapshot_fields(previous, current):
    return [f for f in SNAPSHOT_FIELDS if previous.get(f) != current.get(f)]


def compare_snapshots(previous, current):
    """
    Classify every ship of both diaries; removed ships come last.
    A name listed twice in one diary keeps its first occurrence.
    """
    previous_by_name = {}
    for ship in previous or []:
        previous_by_name.setdefault(snapshot_key(ship.get("name")), ship)

    results = []
    seen = set()
    for ship in current or []:
        key = snapshot_key(ship.get("name"))
        if key in seen:
            continue
        seen.add(key)
        old = previous_by_name.get(key)
        if old is None:
            results.append(ShipComparison(ship, ChangeType.NEW))
            continue
        changed = changed_snapshot_fields(old, ship)
        change_type = ChangeType.MODIFIED if changed else ChangeType.UNCHANGED
        results.append(ShipComparison(ship, change_type, changed))

    for key, ship in previous_by_name.items():
        if key not in seen:
            results.append(ShipComparison(ship, ChangeType.REMOVED))

    return results


# ──────────────────────────────────────────────
#  Diary vs internal visits
# ──────────────────────────────────────────────

def find_discrepancies(pdf_ship, visit):
    found = []

    pdf_name = " ".join((pdf_ship.get("name") or "").split())
    sys_name = " ".join((visit.get("shipName") or "").split())
    if pdf_name.lower() != sys_name.lower():
        found.append(FieldDiscrepancy("name", _display(pdf_ship.get("name")), _display(visit.get("shipName"))))

    if etas_differ(pdf_ship.get("eta"), visit.get("initialEta")):
        found.append(FieldDiscrepancy("eta", format_eta(pdf_ship.get("eta")), format_eta(visit.get("initialEta"))))

    if (pdf_ship.get("status") or "") != (visit.get("currentStatus") or ""):
        found.append(FieldDiscrepancy("status", _display(pdf_ship.get("status")), _display(visit.get("currentStatus"))))

    pdf_port = (pdf_ship.get("port") or "").strip().lower()
    sys_port = (visit.get("berthPort") or "").strip().lower()
    if pdf_port != sys_port:
        found.append(FieldDiscrepancy("port", _display(pdf_ship.get("port")), _display(visit.get("berthPort"))))

    return found


def reconcile(feed_ships, visits):
    """
    One result per distinct ship name across both sources.

    A name seen twice in the same source keeps its first occurrence.
    Discrepancies are non-empty exactly when the result is MISMATCH.
    """
    visits_by_name = {}
    for visit in visits or []:
        visits_by_name.setdefault(reconcile_key(visit.get("shipName")), visit)

    results = []
    used = set()
    for ship in feed_ships or []:
        key = reconcile_key(ship.get("name"))
        if key in used:
            continue
        used.add(key)
        visit = visits_by_name.get(key)
        if visit is None:
            results.append(ReconciliationResult(MatchType.PDF_ONLY, ship.get("name") or "", pdf_ship=ship))
            continue
        discrepancies = find_discrepancies(ship, visit)
        match_type = MatchType.MISMATCH if discrepancies else MatchType.MATCHED
        results.append(ReconciliationResult(
            match_type, ship.get("name") or "", pdf_ship=ship,
            system_visit=visit, discrepancies=discrepancies,
        ))

    for key, visit in visits_by_name.items():
        if key not in used:
            used.add(key)
            results.append(ReconciliationResult(
                MatchType.SYSTEM_ONLY, visit.get("shipName") or "", system_visit=visit
            ))

    # sorted() is stable, so source order survives inside each group
    return sorted(results, key=lambda r: MATCH_PRIORITY[r.match_type])


def summarize(results):
    counts = {m.value: 0 for m in MatchType}
    for r in results:
        counts[r.match_type.value] += 1
    return counts


# ──────────────────────────────────────────────
#  Loading
# ──────────────────────────────────────────────

def load_feed_snapshot(db):
    """Return ``(current_ships, previous_ships, metadata)`` from the cache doc."""
    snap = db.collection(SETTINGS).document(DIARY_METADATA_DOC).get()
    metadata = (snap.to_dict() or {}) if snap.exists else {}
    return metadata.get("cached_ships") or [], metadata.get("previous_ships") or [], metadata


def load_system_visits(db):
    docs = db.collection(VISITS).where("currentStatus", "in", ACTIVE_STATUSES).get()
    visits = []
    for doc in docs:
        data = doc.to_dict() or {}
        data["id"] = doc.id
        visits.append(data)
    return visits


def reconcile_latest(db):
    current, previous, metadata = load_feed_snapshot(db)
    visits = load_system_visits(db)
    results = reconcile(current, visits)
    logger.info(f"Reconciled {len(current)} diary ships against {len(visits)} visits: {summarize(results)}")
    return {
        "results": results,
        "changes": compare_snapshots(previous, current),
        "summary": summarize(results),
        "lastProcessed": metadata.get("last_processed"),
    }
