"""
Tests for pilotage.charge_migration and pilotage.ship_merge.
"""

import pytest
from datetime import datetime, timezone, timedelta
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pilotage.charge_migration import analyze_orphan_charges, build_trip_indexes, sync_all_charges
from pilotage.config import MIGRATION_MARKER
from pilotage.ship_merge import compare_marine_traffic_links, merge_notes, merge_ships

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


# ── indexes ──────────────────────────────────────────────────

class TestBuildTripIndexes:

    def test_keys(self):
        by_visit, by_ship_day = build_trip_indexes([
            ("t1", {"visitId": "V1", "typeTrip": "In", "shipName": "Karim ", "boarding": T0}),
            ("t2", {"typeTrip": "Out", "shipName": "Karim"}),
        ])
        assert list(by_visit) == ["V1|In"]
        assert list(by_ship_day) == ["karim|In|2024-03-01"]


# ── sync_all_charges ─────────────────────────────────────────

class TestSyncAllCharges:

    def test_tiers_and_orphans(self, fake_db):
        fake_db.seed("trips", "by-visit", {"visitId": "V1", "typeTrip": "In"})
        fake_db.seed("trips", "by-day", {"shipName": "Celtic Mist", "typeTrip": "Out",
                                         "boarding": T0 + timedelta(days=1, hours=2)})
        fake_db.seed("trips", "done", {"visitId": "V2", "typeTrip": "In",
                                       "isConfirmed": True, "shipName": "Bravo"})

        fake_db.seed("charges", "c1", {"visitid": "V1", "typeTrip": "Inward", "ship": "Alpha",
                                       "gt": 5000, "boarding": T0, "createdBy": "Mark"})
        fake_db.seed("charges", "c2", {"ship": "Celtic Mist", "typeTrip": "Outward", "boarding": T0})
        fake_db.seed("charges", "c3", {"visitid": "V2", "typeTrip": "In", "ship": "Bravo", "boarding": T0})
        fake_db.seed("charges", "c4", {"ship": "Nowhere", "typeTrip": "In", "boarding": T0,
                                       "port": "Foynes", "extra": "overtime"})
        fake_db.seed("charges", "c5", {"ship": "Undated", "typeTrip": "In"})

        result = sync_all_charges(fake_db)

        assert result["totalCharges"] == 5
        assert result["matchBreakdown"] == {"byVisitId": 2, "byShipAndBoarding": 1}
        assert result["tripsUpdated"] == 2
        assert result["alreadySynced"] == 1
        assert result["tripsCreated"] == 1
        assert result["skipped"] == 1

        assert fake_db.doc("trips/by-visit")["shipName"] == "Alpha"
        assert fake_db.doc("trips/by-visit")["confirmedBy"] == "Mark"
        assert fake_db.doc("trips/by-day")["isConfirmed"] is True
        orphan = fake_db.doc("trips/charge_c4")
        assert orphan["source"] == "migration"
        assert orphan["recordedBy"] == MIGRATION_MARKER
        assert orphan["visitId"] is None
        assert orphan["extraChargesNotes"] == "overtime"

    def test_rerun_does_not_duplicate(self, fake_db):
        fake_db.seed("charges", "c4", {"ship": "Nowhere", "typeTrip": "In", "boarding": T0})
        sync_all_charges(fake_db)
        second = sync_all_charges(fake_db)
        assert list(fake_db.docs("trips")) == ["charge_c4"]
        assert second["alreadySynced"] == 1
        assert second["tripsCreated"] == 0


class TestAnalyzeOrphanCharges:

    def test_breakdowns(self, fake_db):
        fake_db.seed("trips", "t1", {"visitId": "V1", "typeTrip": "In"})
        fake_db.seed("charges", "matched", {"visitid": "V1", "typeTrip": "In", "boarding": T0})
        fake_db.seed("charges", "lost-visit", {"visitid": "V9", "typeTrip": "In", "ship": "A", "boarding": T0})
        fake_db.seed("charges", "no-visit", {"ship": "B", "typeTrip": "Out",
                                             "boarding": datetime(2023, 11, 5, tzinfo=timezone.utc)})
        fake_db.seed("charges", "undated", {"ship": "C", "typeTrip": "In"})

        report = analyze_orphan_charges(fake_db)

        assert report["totalOrphans"] == 3
        assert report["yearlyBreakdown"] == [{"year": "2023", "count": 1}, {"year": "2024", "count": 1}]
        assert report["monthlyBreakdown"][0] == {"month": "2023-11", "count": 1}
        reasons = {r["reason"]: r["count"] for r in report["reasonBreakdown"]}
        assert reasons == {"visitId not found in trips": 1, "No visitId": 1, "No boarding date": 1}
        assert report["oldestOrphan"].startswith("2023-11-05")
        assert len(report["sampleOrphans"]) == 2


# ── ship merge ───────────────────────────────────────────────

class TestMergeShips:

    def _seed(self, fake_db):
        fake_db.seed("ships", "keep", {"shipName": "MSC Oscar", "grossTonnage": 50000, "shipNotes": "Bow thruster"})
        fake_db.seed("ships", "dupe", {"shipName": "Msc Oscar.", "grossTonnage": 49000, "shipNotes": "Needs 2 tugs"})
        fake_db.seed("visits_new", "v1", {"shipId": "dupe", "shipName": "Msc Oscar.", "grossTonnage": 49000})
        fake_db.seed("visits_new", "v2", {"shipId": "keep", "shipName": "MSC Oscar"})
        fake_db.seed("trips", "t1", {"shipId": "dupe"})
        fake_db.seed("trips", "t2", {"shipId": "dupe"})

    def test_merge_moves_everything(self, fake_db):
        self._seed(fake_db)

        result = merge_ships(fake_db, "keep", "dupe", 50000, merge_notes_flag=True)

        assert result == {
            "visitsMigrated": 1,
            "tripsMigrated": 2,
            "sourceShipDeleted": True,
            "mergedNotes": "Bow thruster\n---\nNeeds 2 tugs",
        }
        assert fake_db.doc("ships/dupe") is None
        assert fake_db.doc("ships/keep")["shipNotes"] == "Bow thruster\n---\nNeeds 2 tugs"
        visit = fake_db.doc("visits_new/v1")
        assert (visit["shipId"], visit["shipName"], visit["grossTonnage"]) == ("keep", "MSC Oscar", 50000)
        assert all(t["shipId"] == "keep" for t in fake_db.docs("trips").values())

    def test_notes_untouched_without_flag(self, fake_db):
        self._seed(fake_db)
        result = merge_ships(fake_db, "keep", "dupe", 49000)
        assert result["mergedNotes"] is None
        assert fake_db.doc("ships/keep")["shipNotes"] == "Bow thruster"
        assert fake_db.doc("ships/keep")["grossTonnage"] == 49000

    def test_invalid_ids(self, fake_db):
        self._seed(fake_db)
        with pytest.raises(ValueError):
            merge_ships(fake_db, "keep", "keep", 1)
        with pytest.raises(ValueError):
            merge_ships(fake_db, "keep", "missing", 1)
        assert fake_db.doc("ships/dupe") is not None

    def test_merge_notes(self):
        assert merge_notes(" a ", "b") == "a\n---\nb"
        assert merge_notes("", "b") == "b"
        assert merge_notes(None, None) == ""

    def test_marine_traffic_comparison(self):
        a = {"marineTrafficLink": "https://www.marinetraffic.com/en/ais/details/ships/shipid:8583597"}
        b = {"marineTrafficLink": "https://www.marinetraffic.com/en/ais/details/ships/shipid:1111"}
        assert compare_marine_traffic_links(a, dict(a)) == "same"
        assert compare_marine_traffic_links(a, b) == "different"
        assert compare_marine_traffic_links(a, {}) == "unknown"
