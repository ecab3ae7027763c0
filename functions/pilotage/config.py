"""
Runtime settings for the pilotage sync functions.

Collection names, windows and writer markers live here so every trigger
reads the same values. A few can be overridden by environment variables
for staging deployments.
"""

import os

REGION = os.environ.get("PILOTAGE_REGION", "europe-west1")

# ──────────────────────────────────────────────
#  Collections
# ──────────────────────────────────────────────

SHIPS = "ships"
VISITS = "visits_new"
TRIPS = "trips"
CHARGES = "charges"
USERS = "users"
SETTINGS = "system_settings"
AUDIT_SUBCOLLECTION = "audit_logs"

DIARY_METADATA_DOC = "shannon_diary_metadata"
BACKFILL_LOCK_DOC = "charge_backfill_lock"

# ──────────────────────────────────────────────
#  Windows and limits
# ──────────────────────────────────────────────

# Charge ↔ trip heuristic window, either side of the charge date
MATCH_WINDOW_HOURS = 24

# Historical visits/trips older than this are left alone by the fan-out
FANOUT_LOOKBACK_DAYS = int(os.environ.get("PILOTAGE_FANOUT_LOOKBACK_DAYS", "60"))

# Firestore caps a batch at 500 operations
BATCH_WRITE_LIMIT = 499
BATCH_COMMIT_WORKERS = int(os.environ.get("PILOTAGE_BATCH_WORKERS", "4"))

TRIP_AUDIT_RETENTION_DAYS = 365

LOCK_STALE_MINUTES = 5

# ──────────────────────────────────────────────
#  Writer markers
# ──────────────────────────────────────────────

SYSTEM_ACTOR = "system"
BRIDGE_MARKER = "Bridge System"
GAP_FILL_MARKER = "GapFill"
SHIP_UPDATE_MARKER = "System (Ship Update)"
MIGRATION_MARKER = "system_migration"
LEGACY_CONFIRMER = "Legacy System"
DIARY_SOURCE = "CarGoPro Daily Diary"
PORT_REPORT_MARKER = "Port Report"

# ──────────────────────────────────────────────
#  External diary feed
# ──────────────────────────────────────────────

DIARY_PDF_URL = os.environ.get(
    "PILOTAGE_DIARY_PDF_URL",
    "http://www.cargopro.ie/sfpc/download/rpt_daydiary.pdf",
)
DIARY_HEAD_TIMEOUT_SEC = 10
