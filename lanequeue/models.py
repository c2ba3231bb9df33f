"""Database models for the lane queue.

We use SQLModel to define the schema.  Lanes hold the live pointers
(``current_number`` / ``last_served_number``), queue items are the tickets
handed out to customers, and queue operations are the append-only audit
trail of staff actions.  Staff users and their lane assignments gate who may
operate a lane.  Settings is a small key/value table; the daily reset marker
lives there.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Always writes UTC and always reads back an aware datetime.

    SQLite keeps no offset in its DATETIME text, so values are normalised to
    UTC on the way in and tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


class LaneType(str, Enum):
    """Mutually exclusive service classes."""

    regular = "REGULAR"
    priority = "PRIORITY"


class QueueItemStatus(str, Enum):
    waiting = "WAITING"
    called = "CALLED"
    served = "SERVED"


class QueueAction(str, Enum):
    """Staff actions on a lane."""

    advance = "ADVANCE"
    recall = "RECALL"
    alert = "ALERT"
    serve = "SERVE"

    @classmethod
    def _missing_(cls, value: object) -> Optional["QueueAction"]:
        # Older display/staff clients send NEXT/CALL/BUZZ.
        if isinstance(value, str):
            key = value.strip().upper()
            key = _LEGACY_ACTIONS.get(key, key)
            for member in cls:
                if member.value == key:
                    return member
        return None


_LEGACY_ACTIONS = {"NEXT": "ADVANCE", "CALL": "RECALL", "BUZZ": "ALERT"}


class StaffRole(str, Enum):
    admin = "ADMIN"
    user = "USER"
    display = "DISPLAY"
    reservation = "RESERVATION"


class Lane(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    is_active: bool = Field(default=True)
    type: LaneType = Field(default=LaneType.regular)
    current_number: int = Field(default=0)
    last_served_number: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class QueueItem(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("lane_id", "service_day", "number", name="uq_queueitem_lane_day_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    lane_id: int = Field(foreign_key="lane.id", index=True)
    number: int
    service_day: date = Field(index=True)
    status: QueueItemStatus = Field(default=QueueItemStatus.waiting)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    called_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    served_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class StaffUser(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    name: str
    role: StaffRole = Field(default=StaffRole.user)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class LaneAssignment(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("staff_id", "lane_id", name="uq_assignment_staff_lane"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    staff_id: int = Field(foreign_key="staffuser.id", index=True)
    lane_id: int = Field(foreign_key="lane.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class QueueOperation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: int = Field(foreign_key="staffuser.id")
    lane_id: int = Field(foreign_key="lane.id", index=True)
    action: QueueAction
    number: int
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)


class Setting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
