"""
Tests for pilotage.intake and pilotage.access.
"""

import pytest
from unittest.mock import Mock
from datetime import datetime, timezone, timedelta
import sys, os

from firebase_functions import https_fn

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pilotage.access import ADMIN, PILOT, require_role
from pilotage.config import PORT_REPORT_MARKER
from pilotage.intake import accept_feed_ship, find_or_create_ship, find_ship_by_name, ship_id_for_name
from pilotage.models import Actor

DIARY_SHIP = {
    "name": "Karim",
    "gt": 15900,
    "port": "Foynes",
    "eta": "2026-01-03T10:00:00Z",
    "ets": "2026-01-04T18:00:00Z",
    "status": "Due",
    "assignedPilot": "Paddy",
}


# ── ships ────────────────────────────────────────────────────

class TestFindOrCreateShip:

    def test_case_insensitive_lookup(self, fake_db, sample_ship):
        fake_db.seed("ships", "s1", sample_ship)
        assert find_ship_by_name(fake_db, "  ATLANTIC star ")[0] == "s1"
        assert find_or_create_ship(fake_db, "Atlantic Star") == ("s1", False)

    def test_creates_with_lowercase_key(self, fake_db):
        ship_id, created = find_or_create_ship(fake_db, " Celtic Mist ", 4500)
        ship = fake_db.doc(f"ships/{ship_id}")
        assert created is True
        assert ship["shipName"] == "Celtic Mist"
        assert ship["shipName_lowercase"] == "celtic mist"
        assert ship["grossTonnage"] == 4500
        assert "_modifiedBy" not in ship

    def test_user_creation_carries_hints(self, fake_db):
        ship_id, _ = find_or_create_ship(fake_db, "Celtic Mist", 4500, Actor("uid-1", "diary"))
        assert fake_db.doc(f"ships/{ship_id}")["_modifiedBy"] == "uid-1"

    def test_blank_name_is_never_found(self, fake_db):
        assert find_ship_by_name(fake_db, "  ") is None

    def test_new_ship_id_follows_name(self, fake_db):
        ship_id, _ = find_or_create_ship(fake_db, "Celtic Mist")
        assert ship_id == ship_id_for_name(" CELTIC MIST ")
        assert ship_id.startswith("ship-celtic-mist-")
        assert ship_id != ship_id_for_name("Celtic-Mist")

    def test_lost_create_race_counts_as_found(self, fake_db):
        ship_id = ship_id_for_name("Celtic Mist")
        fake_db.seed("ships", ship_id, {"shipName": "Celtic Mist", "grossTonnage": 4500})

        assert find_or_create_ship(fake_db, "Celtic Mist", 9999) == (ship_id, False)
        assert fake_db.doc(f"ships/{ship_id}")["grossTonnage"] == 4500
        assert len(fake_db.docs("ships")) == 1


# ── accept_feed_ship ─────────────────────────────────────────

class TestAcceptFeedShip:

    def test_new_ship_opens_visit_with_two_trips(self, fake_db):
        result = accept_feed_ship(fake_db, DIARY_SHIP, actor=Actor("uid-1", "diary"))

        assert result["shipCreated"] is True
        assert result["visitCreated"] is True
        visit = fake_db.doc(f"visits_new/{result['visitId']}")
        assert visit["shipId"] == result["shipId"]
        assert visit["initialEta"] == datetime(2026, 1, 3, 10, 0, tzinfo=timezone.utc)
        assert visit["currentStatus"] == "Due"
        assert visit["berthPort"] == "Foynes"
        assert visit["updatedBy"] == PORT_REPORT_MARKER

        trips = sorted(fake_db.docs("trips").values(), key=lambda t: t["typeTrip"])
        assert [t["typeTrip"] for t in trips] == ["In", "Out"]
        assert all(t["visitId"] == result["visitId"] and not t["isConfirmed"] for t in trips)
        assert trips[0]["boarding"] is None
        assert trips[1]["boarding"] == datetime(2026, 1, 4, 18, 0, tzinfo=timezone.utc)
        assert trips[1]["pilot"] == "Paddy"

    def test_active_visit_is_refreshed(self, fake_db, now):
        fake_db.seed("ships", "s1", {"shipName": "Karim", "shipName_lowercase": "karim", "grossTonnage": 15900})
        fake_db.seed("visits_new", "v1", {
            "shipId": "s1", "currentStatus": "Awaiting Berth",
            "initialEta": now - timedelta(days=1), "berthPort": "Tarbert",
        })

        result = accept_feed_ship(fake_db, DIARY_SHIP)

        assert result == {
            "shipId": "s1", "visitId": "v1", "shipCreated": False,
            "visitCreated": False, "visitUpdated": True, "shipUpdated": False,
        }
        visit = fake_db.doc("visits_new/v1")
        assert visit["berthPort"] == "Foynes"
        assert visit["initialEta"] == datetime(2026, 1, 3, 10, 0, tzinfo=timezone.utc)
        assert visit["currentStatus"] == "Awaiting Berth"
        assert fake_db.docs("trips") == {}

    def test_sailed_visit_does_not_count(self, fake_db):
        fake_db.seed("ships", "s1", {"shipName": "Karim", "shipName_lowercase": "karim", "grossTonnage": 15900})
        fake_db.seed("visits_new", "old", {"shipId": "s1", "currentStatus": "Sailed"})
        result = accept_feed_ship(fake_db, DIARY_SHIP)
        assert result["visitCreated"] is True
        assert result["visitId"] != "old"

    def test_tonnage_difference_updates_ship(self, fake_db):
        fake_db.seed("ships", "s1", {"shipName": "Karim", "shipName_lowercase": "karim", "grossTonnage": 9000})
        result = accept_feed_ship(fake_db, DIARY_SHIP)
        assert result["shipUpdated"] is True
        assert fake_db.doc("ships/s1")["grossTonnage"] == 15900

    def test_nameless_ship_rejected(self, fake_db):
        with pytest.raises(ValueError):
            accept_feed_ship(fake_db, {"name": " "})


# ── access ───────────────────────────────────────────────────

class TestRequireRole:

    def _auth(self, uid):
        auth = Mock()
        auth.uid = uid
        return auth

    def test_admin_allowed(self, fake_db):
        fake_db.seed("users", "u1", {"userType": "admin"})
        actor = require_role(fake_db, self._auth("u1"), [ADMIN], location="ship-merge")
        assert actor == Actor("u1", "ship-merge")

    def test_pilot_denied_admin_action(self, fake_db):
        fake_db.seed("users", "u2", {"userType": "pilot"})
        with pytest.raises(https_fn.HttpsError) as exc:
            require_role(fake_db, self._auth("u2"), [ADMIN])
        assert exc.value.code == https_fn.FunctionsErrorCode.PERMISSION_DENIED

    def test_pilot_allowed_where_listed(self, fake_db):
        fake_db.seed("users", "u2", {"userType": "pilot"})
        assert require_role(fake_db, self._auth("u2"), [ADMIN, PILOT]).user_id == "u2"

    def test_unknown_user_denied(self, fake_db):
        with pytest.raises(https_fn.HttpsError):
            require_role(fake_db, self._auth("ghost"), [ADMIN])

    def test_anonymous_rejected(self, fake_db):
        with pytest.raises(https_fn.HttpsError) as exc:
            require_role(fake_db, None, [])
        assert exc.value.code == https_fn.FunctionsErrorCode.UNAUTHENTICATED

    def test_any_signed_in_user(self, fake_db):
        assert require_role(fake_db, self._auth("u3"), []).user_id == "u3"
