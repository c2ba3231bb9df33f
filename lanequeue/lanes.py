"""Lane store.

Durable lookup and mutation of lanes.  All functions take an open
``Session``.  Pointer writes (``set_current_number``, ``set_last_served``,
``compare_and_set_current``) only flush; the caller commits, so they can be
combined with ticket updates in one transaction.  Admin operations commit
themselves.
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .errors import InvalidState, NotFound
from .models import Lane, LaneType, utcnow


def get_lane(session: Session, lane_id: int) -> Lane:
    lane = session.get(Lane, lane_id)
    if lane is None:
        raise NotFound(f"Lane {lane_id} not found")
    return lane


def list_active_lanes(session: Session) -> List[Lane]:
    return list(session.exec(select(Lane).where(Lane.is_active == True).order_by(Lane.name)).all())  # noqa: E712


def list_lanes(session: Session) -> List[Lane]:
    return list(session.exec(select(Lane).order_by(Lane.name)).all())


def create_lane(
    session: Session,
    name: str,
    description: Optional[str] = None,
    lane_type: LaneType = LaneType.regular,
    is_active: bool = True,
) -> Lane:
    name = (name or "").strip()
    if not name:
        raise InvalidState("Lane name is required")
    lane = Lane(name=name, description=description, type=lane_type, is_active=is_active)
    session.add(lane)
    session.commit()
    session.refresh(lane)
    return lane


def update_lane(
    session: Session,
    lane_id: int,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Lane:
    lane = get_lane(session, lane_id)
    if name is not None:
        if not name.strip():
            raise InvalidState("Lane name cannot be empty")
        lane.name = name.strip()
    if description is not None:
        lane.description = description
    lane.updated_at = utcnow()
    session.add(lane)
    session.commit()
    session.refresh(lane)
    return lane


def set_active(session: Session, lane_id: int, active: bool) -> Lane:
    lane = get_lane(session, lane_id)
    lane.is_active = active
    lane.updated_at = utcnow()
    session.add(lane)
    session.commit()
    session.refresh(lane)
    return lane


def _write_pointer(session: Session, lane_id: int, **values: int) -> None:
    for field, value in values.items():
        if value < 0:
            raise InvalidState(f"{field} cannot be negative")
    result = session.exec(
        update(Lane).where(Lane.id == lane_id).values(updated_at=utcnow(), **values)
    )
    if result.rowcount == 0:
        raise NotFound(f"Lane {lane_id} not found")


def set_current_number(session: Session, lane_id: int, number: int) -> None:
    _write_pointer(session, lane_id, current_number=number)


def set_last_served(session: Session, lane_id: int, number: int) -> None:
    _write_pointer(session, lane_id, last_served_number=number)


def compare_and_set_current(session: Session, lane_id: int, expected: int, new: int) -> bool:
    """Move ``current_number`` from ``expected`` to ``new``.

    Returns False when another writer changed the pointer first.
    """
    result = session.exec(
        update(Lane)
        .where(Lane.id == lane_id, Lane.current_number == expected)
        .values(current_number=new, updated_at=utcnow())
    )
    return result.rowcount == 1


def serve_current(session: Session, lane_id: int, expected_current: int) -> bool:
    """Copy ``current_number`` into ``last_served_number`` if it is still ``expected_current``."""
    result = session.exec(
        update(Lane)
        .where(Lane.id == lane_id, Lane.current_number == expected_current)
        .values(last_served_number=expected_current, updated_at=utcnow())
    )
    return result.rowcount == 1


def reset_current_numbers(session: Session) -> int:
    """Zero every lane's ``current_number``.  Returns the number of lanes touched."""
    result = session.exec(update(Lane).values(current_number=0, updated_at=utcnow()))
    return result.rowcount
