"""
Shared vocabulary for ships, visits, trips and charges.

Firestore stores these as plain strings; the classes below only give the
strings one name each.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pilotage.config import SYSTEM_ACTOR


class VisitStatus:
    DUE = "Due"
    AWAITING_BERTH = "Awaiting Berth"
    ALONGSIDE = "Alongside"
    SAILED = "Sailed"
    CANCELLED = "Cancelled"


ACTIVE_STATUSES = [VisitStatus.DUE, VisitStatus.AWAITING_BERTH, VisitStatus.ALONGSIDE]


class TripType:
    IN = "In"
    OUT = "Out"
    SHIFT = "Shift"
    ANCHORAGE = "Anchorage"
    OTHER = "Other"


class AuditAction(Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class Actor:
    """Who made a write.

    ``user_id`` is None for writes issued by other functions or scripts.
    Keeping the kind separate means a user whose id is literally "system"
    is still recorded as a user.
    """
    user_id: Optional[str] = None
    location: Optional[str] = None

    @property
    def is_system(self) -> bool:
        return self.user_id is None

    @property
    def kind(self) -> str:
        return "system" if self.is_system else "user"

    @property
    def label(self) -> str:
        return SYSTEM_ACTOR if self.is_system else self.user_id

    @property
    def origin(self) -> str:
        return self.location or SYSTEM_ACTOR


SYSTEM = Actor()


@dataclass
class ChargeRecord:
    """A legacy charge after alias resolution."""
    charge_id: str
    visit_id: Optional[str]
    ship_name: Optional[str]
    trip_type: str
    raw_type: str
    charge_date: Optional[datetime]
    gt: int = 0
    confirmed_by: str = ""
    confirmed_by_id: Optional[str] = None
    created_at: object = None
    raw_date: object = None
    updated_at: Optional[datetime] = None
    port: Optional[str] = None
    pilot: Optional[str] = None
    pilot_notes: Optional[str] = None
    extra_notes: Optional[str] = None
