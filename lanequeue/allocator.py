"""Ticket number allocation.

Numbers run 1..max_number per lane and service day, wrap back to 1 after the
maximum, and restart every UTC day.  The unique constraint on
(lane_id, service_day, number) is the authority: two requests may compute
the same candidate, the loser gets an ``IntegrityError`` and moves on to the
next number instead of failing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import AllocatorExhausted, LaneInactive
from .lanes import get_lane
from .models import QueueItem, QueueItemStatus

logger = logging.getLogger(__name__)

MAX_NUMBER = 999


def service_day(now: Optional[datetime] = None) -> date:
    """Calendar day at the UTC midnight boundary."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.date()


def is_unique_violation(exc: IntegrityError) -> bool:
    """True for duplicate-key errors only, not foreign key or NOT NULL failures."""
    orig = exc.orig
    if getattr(orig, "pgcode", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(orig)


def next_after(highest: Optional[int], max_number: int = MAX_NUMBER) -> int:
    if highest is None or highest >= max_number:
        return 1
    return highest + 1


def highest_number(session: Session, lane_id: int, day: date) -> Optional[int]:
    return session.exec(
        select(func.max(QueueItem.number)).where(
            QueueItem.lane_id == lane_id, QueueItem.service_day == day
        )
    ).one()


def count_items(
    session: Session,
    lane_id: int,
    day: date,
    status: Optional[QueueItemStatus] = None,
    below: Optional[int] = None,
) -> int:
    stmt = select(func.count()).select_from(QueueItem).where(
        QueueItem.lane_id == lane_id, QueueItem.service_day == day
    )
    if status is not None:
        stmt = stmt.where(QueueItem.status == status)
    if below is not None:
        stmt = stmt.where(QueueItem.number < below)
    return session.exec(stmt).one()


def next_number(session: Session, lane_id: int, day: date, max_number: int = MAX_NUMBER) -> int:
    """Number the next customer would get, ignoring races."""
    return next_after(highest_number(session, lane_id, day), max_number)


@dataclass(frozen=True)
class Allocation:
    lane_id: int
    number: int
    service_day: date
    lane_name: str
    current_number: int
    waiting_count: int


def allocate(
    session: Session,
    lane_id: int,
    *,
    day: Optional[date] = None,
    max_number: int = MAX_NUMBER,
) -> Allocation:
    """Mint and persist the next WAITING ticket for a lane.

    Raises NotFound / LaneInactive for a bad lane and AllocatorExhausted when
    every number of the day is taken.  Either a ticket is committed and
    returned, or nothing is written.
    """
    lane = get_lane(session, lane_id)
    if not lane.is_active:
        raise LaneInactive(f"Lane {lane_id} is inactive")
    lane_name = lane.name
    current_number = lane.current_number
    day = day or service_day()

    if count_items(session, lane_id, day) >= max_number:
        raise AllocatorExhausted()

    candidate = next_after(highest_number(session, lane_id, day), max_number)
    item: Optional[QueueItem] = None
    for attempt in range(max_number):
        item = QueueItem(
            lane_id=lane_id,
            number=candidate,
            service_day=day,
            status=QueueItemStatus.waiting,
        )
        session.add(item)
        try:
            session.commit()
            break
        except IntegrityError as exc:
            session.rollback()
            if not is_unique_violation(exc):
                raise
            logger.debug("Lane %s number %s already taken, retrying", lane_id, candidate)
            item = None
            candidate = next_after(candidate, max_number)

    if item is None:
        logger.warning("Lane %s has no free numbers left for %s", lane_id, day)
        raise AllocatorExhausted()
    if attempt:
        logger.info("Lane %s allocated %s after %s retries", lane_id, candidate, attempt)

    waiting = count_items(session, lane_id, day, QueueItemStatus.waiting, below=candidate)
    return Allocation(
        lane_id=lane_id,
        number=candidate,
        service_day=day,
        lane_name=lane_name,
        current_number=current_number,
        waiting_count=waiting,
    )
