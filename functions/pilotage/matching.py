"""
Charge → Trip Matching
======================
Pure functions that decide which trip a legacy charge belongs to.

Strategies, tried in order:
  A. VISIT_ID       - trips of the charge's visit with the same trip type
  B. SHIP_AND_DATE  - trips boarding within ±24h whose ship name contains,
                      or is contained in, the charge's ship name

Candidates are ``(trip_id, trip_dict)`` pairs in the order the store
returned them; the first acceptable candidate wins, so the result only
depends on the charge and the candidate list.
"""

from datetime import timedelta

from pilotage.config import MATCH_WINDOW_HOURS
from pilotage.normalize import normalize_ship_name, to_datetime, trip_ship_name

VISIT_ID = "visit_id"
SHIP_AND_DATE = "ship_and_date"


def trip_window(charge_date, hours=MATCH_WINDOW_HOURS):
    """Inclusive (start, end) boarding range searched by strategy B."""
    delta = timedelta(hours=hours)
    return charge_date - delta, charge_date + delta


def can_match_by_visit(charge):
    return bool(charge.visit_id)


def can_match_by_ship(charge):
    return bool(charge.ship_name) and charge.charge_date is not None


def match_by_visit(charge, visit_trips):
    for trip_id, trip in visit_trips or []:
        if trip.get("typeTrip") == charge.trip_type:
            return trip_id
    return None


def ship_names_match(charge_ship, trip_ship):
    a = normalize_ship_name(charge_ship)
    b = normalize_ship_name(trip_ship)
    if not a or not b:
        return False
    return a in b or b in a


def match_by_ship_and_date(charge, nearby_trips):
    start, end = trip_window(charge.charge_date)
    for trip_id, trip in nearby_trips or []:
        boarding = to_datetime(trip.get("boarding"))
        if boarding is None or boarding < start or boarding > end:
            continue
        if ship_names_match(charge.ship_name, trip_ship_name(trip)):
            return trip_id
    return None


def match_strategy(charge, visit_trips, nearby_trips):
    """Return ``(trip_id, strategy)``; ``(None, None)`` when nothing matches."""
    if can_match_by_visit(charge):
        trip_id = match_by_visit(charge, visit_trips)
        if trip_id:
            return trip_id, VISIT_ID

    if can_match_by_ship(charge):
        trip_id = match_by_ship_and_date(charge, nearby_trips)
        if trip_id:
            return trip_id, SHIP_AND_DATE

    return None, None


def find_matching_trip(charge, visit_trips, nearby_trips):
    trip_id, _ = match_strategy(charge, visit_trips, nearby_trips)
    return trip_id


def find_best_match(candidates, charge_date):
    """
    Pick one trip out of several that share a visit/ship key.

    A single candidate wins outright. Otherwise a lone unconfirmed trip is
    preferred; failing that, the closest boarding time within the
    unconfirmed pool (or within everything when all are confirmed).
    Ties keep the earlier candidate.
    """
    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0]

    unconfirmed = [c for c in candidates if not c[1].get("isConfirmed")]
    if len(unconfirmed) == 1:
        return unconfirmed[0]

    pool = unconfirmed or candidates
    best = pool[0]
    if charge_date is None:
        return best

    best_diff = None
    for candidate in pool:
        boarding = to_datetime(candidate[1].get("boarding"))
        if boarding is None:
            continue
        diff = abs((boarding - charge_date).total_seconds())
        if best_diff is None or diff < best_diff:
            best_diff = diff
            best = candidate
    return best
