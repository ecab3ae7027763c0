"""
Audit Engine
============
Writes an immutable change record for every write to trips, visits_new and
ships. Entries go to ``{collection}/{docId}/audit_logs/{autoId}``; clients
may read but never write that subcollection.

The web app stamps two hint fields on every payload:
  - ``_modifiedBy``   → uid of the saving user
  - ``_modifiedFrom`` → app route the save came from

They identify the actor and are stripped before diffing. Writes without
hints (other functions, scripts) are attributed to the system.

Entry format (current):
    timestamp, loggedAtMs, action, modifiedBy, modifiedByKind,
    modifiedFrom, changes = {field: {"old": ..., "new": ...}}
Trip entries also carry ``expireAt`` for the storage TTL policy.

Older entries hold full ``previousState``/``newState`` snapshots instead of
``changes``; ``entry_changes`` reads both.
"""

import logging
import math
from datetime import datetime, timedelta, timezone

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from pilotage.config import AUDIT_SUBCOLLECTION, TRIP_AUDIT_RETENTION_DAYS, TRIPS
from pilotage.models import Actor, AuditAction

logger = logging.getLogger("pilotage.audit")

HINT_FIELDS = ("_modifiedBy", "_modifiedFrom")


def resolve_action(before, after):
    if before is None:
        return AuditAction.CREATE
    if after is None:
        return AuditAction.DELETE
    return AuditAction.UPDATE


def extract_actor(before, after):
    """Hints come from the new state, or the old one on delete."""
    source = after if after is not None else (before or {})
    user_id = source.get("_modifiedBy")
    location = source.get("_modifiedFrom")
    return Actor(user_id=user_id or None, location=location or None)


def audit_hints(actor):
    """Hint fields for a server-side write made on behalf of ``actor``."""
    if actor.is_system:
        return {}
    return {"_modifiedBy": actor.user_id, "_modifiedFrom": actor.origin}


def strip_audit_hints(data):
    return {k: v for k, v in (data or {}).items() if k not in HINT_FIELDS}


def deep_equal(a, b):
    """Structural equality that also requires matching types (1 != 1.0 != True)."""
    if isinstance(a, datetime) and isinstance(b, datetime):
        return a == b
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


def compute_changes(before, after):
    """Return ``{field: {"old", "new"}}`` for every field whose value differs."""
    before = before or {}
    after = after or {}
    changes = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if not deep_equal(old, new):
            changes[key] = {"old": old, "new": new}
    return changes


def build_audit_entry(collection, before, after, now=None):
    """
    Build the log entry for one write, or None for a ghost save (an update
    that changes nothing once the hint fields are removed).
    """
    now = now or datetime.now(timezone.utc)
    action = resolve_action(before, after)
    actor = extract_actor(before, after)

    entry = {
        "timestamp": SERVER_TIMESTAMP,
        "loggedAtMs": int(now.timestamp() * 1000),
        "action": action.value,
        "modifiedBy": actor.label,
        "modifiedByKind": actor.kind,
        "modifiedFrom": actor.origin,
    }

    if action == AuditAction.UPDATE:
        changes = compute_changes(strip_audit_hints(before), strip_audit_hints(after))
        if not changes:
            return None
        entry["changes"] = changes

    if collection == TRIPS:
        entry["expireAt"] = now + timedelta(days=TRIP_AUDIT_RETENTION_DAYS)

    return entry


def write_audit_log(db, collection, doc_id, entry):
    _, ref = (
        db.collection(collection)
        .document(doc_id)
        .collection(AUDIT_SUBCOLLECTION)
        .add(entry)
    )
    return ref.id


def handle_document_written(db, collection, doc_id, before, after, now=None):
    """
    Trigger entry point for the three audited collections.

    Returns the new entry id, or None when nothing was written. Failures are
    logged and swallowed: the audited write has already happened and must
    not be retried because of its log.
    """
    if before is None and after is None:
        return None
    try:
        entry = build_audit_entry(collection, before, after, now)
        if entry is None:
            logger.debug(f"Ghost save on {collection}/{doc_id}, no audit entry")
            return None
        entry_id = write_audit_log(db, collection, doc_id, entry)
        logger.info(
            f"Audit {entry['action']} {collection}/{doc_id} by {entry['modifiedBy']}"
            f" ({len(entry.get('changes', {}))} fields)"
        )
        return entry_id
    except Exception as e:
        logger.error(f"Audit log failed for {collection}/{doc_id}: {e}")
        return None


def entry_changes(entry):
    """Field delta for either entry format."""
    if entry.get("changes") is not None:
        return entry["changes"]
    if entry.get("action") != AuditAction.UPDATE.value:
        return {}
    previous = entry.get("previousState")
    new = entry.get("newState")
    if not isinstance(previous, dict) or not isinstance(new, dict):
        return {}
    return compute_changes(strip_audit_hints(previous), strip_audit_hints(new))
