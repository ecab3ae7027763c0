"""
Normalization for legacy charge documents.

The old billing screens wrote the same fact under different keys
(``ship``/``vessel``, ``boarding``/``date``, ...) and in different shapes
(Firestore timestamps, ISO strings, epoch millis). Everything is resolved
here, once, into a ChargeRecord before any matching runs.
"""

import logging
from datetime import datetime, timezone

from pilotage.config import LEGACY_CONFIRMER
from pilotage.models import ChargeRecord, TripType

logger = logging.getLogger("pilotage.normalize")

_FALLBACK_DATE_FORMATS = (
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%Y-%m-%d %H:%M",
)


def to_datetime(value):
    """
    Coerce a stored date into an aware UTC datetime.

    Accepts datetimes (Firestore timestamps arrive as DatetimeWithNanoseconds,
    a datetime subclass), ISO 8601 strings, DD/MM/YYYY strings and epoch
    milliseconds. Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
            for fmt in _FALLBACK_DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
        return to_datetime(parsed)

    return None


def normalize_trip_type(raw):
    """
    Map a free-text charge category onto a trip type.

    Substring containment, checked in this order: in, out, shift, anchor.
    "Inward", "INWARD" and "In" all give In. Note "Shifting" also gives In
    because it contains "in"; callers rely on this exact rule, so tighten it
    here and nowhere else.
    """
    norm = (raw or "").lower()
    if "in" in norm:
        return TripType.IN
    if "out" in norm:
        return TripType.OUT
    if "shift" in norm:
        return TripType.SHIFT
    if "anchor" in norm:
        return TripType.ANCHORAGE
    return TripType.OTHER


def normalize_ship_name(name):
    return (name or "").strip().lower()


def trip_ship_name(trip):
    """Ship name on a trip document; older trips only have ``ship``."""
    return trip.get("shipName") or trip.get("ship") or ""


def _first(data, *keys):
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def normalize_charge(charge_id, data):
    """Resolve every field alias on a charge document."""
    raw_type = _first(data, "typeTrip", "type", "category") or "Unknown"
    ship = _first(data, "ship", "vessel")

    charge_date = None
    for key in ("boarding", "date"):
        raw_date = data.get(key)
        if raw_date in (None, ""):
            continue
        charge_date = to_datetime(raw_date)
        if charge_date is not None:
            break
        logger.warning(f"Charge {charge_id}: unparseable {key} {raw_date!r}")

    return ChargeRecord(
        charge_id=charge_id,
        visit_id=_first(data, "visitid", "visitId"),
        ship_name=ship.strip() if isinstance(ship, str) else ship,
        trip_type=normalize_trip_type(str(raw_type)),
        raw_type=str(raw_type),
        charge_date=charge_date,
        gt=_to_int(data.get("gt")),
        confirmed_by=_first(data, "user_name", "createdBy") or LEGACY_CONFIRMER,
        confirmed_by_id=_first(data, "user_id", "createdById"),
        created_at=data.get("created_at"),
        raw_date=data.get("date"),
        updated_at=to_datetime(data.get("updateTime")),
        port=data.get("port"),
        pilot=data.get("pilot"),
        pilot_notes=data.get("sailingNote"),
        extra_notes=data.get("extra"),
    )
