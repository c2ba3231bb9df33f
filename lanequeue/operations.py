"""Staff operations on a lane: the queue state machine.

ADVANCE moves the lane's ``current_number`` forward and marks that ticket
CALLED; SERVE copies it into ``last_served_number`` and marks the ticket
SERVED; RECALL and ALERT only leave an entry in the operation log, which
display clients poll to play the call/buzz sounds.

Pointer moves are compare-and-set UPDATEs inside the same transaction as
the ticket update and the log insert.  Losing the compare-and-set means
another staff action on the same lane committed first; ``run_action``
retries once with fresh state and then gives up with ``Conflict``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .allocator import MAX_NUMBER, next_after
from .database import session_scope
from .errors import Conflict, InvalidState
from .lanes import compare_and_set_current, get_lane, serve_current
from .models import (
    Lane,
    QueueAction,
    QueueItem,
    QueueItemStatus,
    QueueOperation,
    StaffUser,
    utcnow,
)
from .staff import authorize_lane_operation, require_active_staff

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class StaleLane(Exception):
    """The lane pointer changed between read and compare-and-set."""


@dataclass(frozen=True)
class OperationResult:
    action: QueueAction
    lane_id: int
    number: int

    def to_dict(self) -> Dict[str, int]:
        if self.action == QueueAction.serve:
            return {"servedNumber": self.number}
        return {"currentNumber": self.number}


def _ticket(session: Session, lane_id: int, day: date, number: int) -> Optional[QueueItem]:
    return session.exec(
        select(QueueItem).where(
            QueueItem.lane_id == lane_id,
            QueueItem.service_day == day,
            QueueItem.number == number,
        )
    ).first()


def _log(session: Session, actor: StaffUser, lane_id: int, action: QueueAction, number: int) -> None:
    session.add(QueueOperation(actor_id=actor.id, lane_id=lane_id, action=action, number=number))


def _require_called_number(lane: Lane) -> int:
    if lane.current_number <= 0:
        raise InvalidState("No number has been called on this lane yet")
    return lane.current_number


def _advance(session: Session, actor: StaffUser, lane: Lane, day: date, max_number: int) -> int:
    lane_id = lane.id
    expected = lane.current_number
    new = next_after(expected, max_number)
    if not compare_and_set_current(session, lane_id, expected, new):
        session.rollback()
        raise StaleLane()
    item = _ticket(session, lane_id, day, new)
    if item is not None:
        item.status = QueueItemStatus.called
        item.called_at = utcnow()
        session.add(item)
    _log(session, actor, lane_id, QueueAction.advance, new)
    session.commit()
    return new


def _serve(session: Session, actor: StaffUser, lane: Lane, day: date, max_number: int) -> int:
    lane_id = lane.id
    number = _require_called_number(lane)
    if not serve_current(session, lane_id, number):
        session.rollback()
        raise StaleLane()
    item = _ticket(session, lane_id, day, number)
    if item is not None:
        item.status = QueueItemStatus.served
        item.served_at = utcnow()
        session.add(item)
    _log(session, actor, lane_id, QueueAction.serve, number)
    session.commit()
    return number


def _announce(action: QueueAction) -> Callable[[Session, StaffUser, Lane, date, int], int]:
    def handler(session: Session, actor: StaffUser, lane: Lane, day: date, max_number: int) -> int:
        number = _require_called_number(lane)
        _log(session, actor, lane.id, action, number)
        session.commit()
        return number

    handler.__name__ = f"_{action.name}"
    return handler


_HANDLERS: Dict[QueueAction, Callable[[Session, StaffUser, Lane, date, int], int]] = {
    QueueAction.advance: _advance,
    QueueAction.recall: _announce(QueueAction.recall),
    QueueAction.alert: _announce(QueueAction.alert),
    QueueAction.serve: _serve,
}

_unhandled = set(QueueAction) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for queue actions: {sorted(a.value for a in _unhandled)}")


def apply_action(
    session: Session,
    actor_id: int,
    lane_id: int,
    action: QueueAction,
    *,
    day: date,
    max_number: int = MAX_NUMBER,
) -> OperationResult:
    """Run one staff action in ``session``.

    Authorization failures raise before anything is written, so they leave
    no operation log entry.
    """
    actor = require_active_staff(session, actor_id)
    lane = get_lane(session, lane_id)
    authorize_lane_operation(session, actor, lane_id)
    number = _HANDLERS[action](session, actor, lane, day, max_number)
    return OperationResult(action=action, lane_id=lane_id, number=number)


def run_action(
    engine: Engine,
    actor_id: int,
    lane_id: int,
    action: QueueAction,
    *,
    day: date,
    max_number: int = MAX_NUMBER,
) -> OperationResult:
    for attempt in range(1, MAX_ATTEMPTS + 1):
        with session_scope(engine) as session:
            try:
                return apply_action(
                    session, actor_id, lane_id, action, day=day, max_number=max_number
                )
            except StaleLane:
                logger.info(
                    "Lane %s changed during %s (attempt %s/%s)",
                    lane_id, action.value, attempt, MAX_ATTEMPTS,
                )
    raise Conflict(f"Lane {lane_id} was updated concurrently, please retry")


def recent_operations(session: Session, since: datetime) -> List[Tuple[QueueOperation, Lane]]:
    rows = session.exec(
        select(QueueOperation, Lane)
        .join(Lane, Lane.id == QueueOperation.lane_id)
        .where(QueueOperation.created_at >= since)
        .order_by(QueueOperation.created_at.desc(), QueueOperation.id.desc())
    ).all()
    return list(rows)


def operation_to_dict(op: QueueOperation, lane: Lane) -> Dict[str, Any]:
    return {
        "id": op.id,
        "actorId": op.actor_id,
        "laneId": op.lane_id,
        "action": op.action.value,
        "number": op.number,
        "createdAt": op.created_at.isoformat(),
        "lane": {"id": lane.id, "name": lane.name, "currentNumber": lane.current_number},
    }
