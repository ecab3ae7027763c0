"""
Pilotage sync engine for the Shannon Estuary pilot-operations app.

Modules:
    config          - collection names, windows, markers, env overrides
    models          - statuses, trip types, Actor, ChargeRecord
    normalize       - legacy charge alias and date resolution
    matching        - charge → trip matching strategies
    bridge          - charge → trip bridge and gap-fill backfill
    fanout          - ship name/GT propagation to visits and trips
    audit           - per-document audit trail
    reconciliation  - daily diary vs previous diary / internal visits
    diary_feed      - diary watchtower, ETA resolution, extraction cache
    intake          - ship lookup/creation, accepting diary ships
    charge_migration - bulk charge → trip migration and orphan analysis
    ship_merge      - merge duplicate ship records
    batching        - chunked concurrent batch commits
    locks           - processing locks on settings documents
    access          - role checks for callables
"""
