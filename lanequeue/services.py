"""Queue service: the entry points the HTTP layer calls.

``QueueService`` ties the lane store, allocator, state machine, daily reset
and broadcast hub together.  Every public method opens its own database
session and closes it before returning.  State changes are broadcast only
after they commit, and a failing broadcast never fails the request.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from . import lanes as lane_store
from . import staff as staff_store
from .allocator import allocate, count_items, next_number, service_day
from .broadcast import (
    BroadcastHub,
    Channel,
    ChannelClosed,
    connected_event,
    lanes_update_event,
    operation_event,
)
from .config import Config
from .database import session_scope
from .errors import Forbidden
from .models import (
    Lane,
    LaneType,
    QueueAction,
    QueueItem,
    QueueItemStatus,
    StaffRole,
    StaffUser,
    as_utc,
)
from .operations import operation_to_dict, recent_operations, run_action
from .reset import DailyResetScheduler

logger = logging.getLogger(__name__)


def lane_to_dict(lane: Lane) -> Dict[str, Any]:
    return {
        "id": lane.id,
        "name": lane.name,
        "description": lane.description,
        "type": lane.type.value,
        "isActive": lane.is_active,
        "currentNumber": lane.current_number,
        "lastServedNumber": lane.last_served_number,
    }


def staff_to_dict(staff: StaffUser) -> Dict[str, Any]:
    return {
        "id": staff.id,
        "username": staff.username,
        "name": staff.name,
        "role": staff.role.value,
        "isActive": staff.is_active,
    }


class QueueService:
    def __init__(
        self,
        engine: Engine,
        hub: BroadcastHub,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None,
        reset_scheduler: Optional[DailyResetScheduler] = None,
    ) -> None:
        self.engine = engine
        self.hub = hub
        self.config = config or Config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.reset_scheduler = reset_scheduler or DailyResetScheduler(engine, self.clock)
        self._snapshot_lock = threading.Lock()

    def today(self) -> date:
        return service_day(self.clock())

    # -------------------- customers --------------------

    def reserve(self, lane_id: int) -> Dict[str, Any]:
        """Hand out the next number on a lane."""
        self.reset_scheduler.maybe_reset()
        with session_scope(self.engine) as session:
            allocation = allocate(
                session, lane_id, day=self.today(), max_number=self.config.max_number
            )
        logger.info("Lane %s issued number %s", lane_id, allocation.number)
        self.publish_lanes()
        return {
            "number": allocation.number,
            "serviceDay": allocation.service_day.isoformat(),
            "laneId": allocation.lane_id,
            "laneName": allocation.lane_name,
            "currentNumber": allocation.current_number,
            "waitingCount": allocation.waiting_count,
            "estimatedWait": allocation.waiting_count * self.config.minutes_per_person,
        }

    def lane_statuses(self) -> List[Dict[str, Any]]:
        """Public status of every active lane, counted over today's tickets."""
        self.reset_scheduler.maybe_reset()
        with session_scope(self.engine) as session:
            return self._lane_statuses(session)

    def _lane_statuses(self, session: Session) -> List[Dict[str, Any]]:
        day = self.today()
        statuses = []
        for lane in lane_store.list_active_lanes(session):
            statuses.append(
                {
                    "id": lane.id,
                    "name": lane.name,
                    "description": lane.description,
                    "type": lane.type.value,
                    "currentNumber": lane.current_number,
                    "lastServedNumber": lane.last_served_number,
                    "waitingCount": count_items(session, lane.id, day, QueueItemStatus.waiting),
                    "calledCount": count_items(session, lane.id, day, QueueItemStatus.called),
                    "nextNumber": next_number(session, lane.id, day, self.config.max_number),
                }
            )
        return statuses

    # -------------------- staff --------------------

    def operate(self, action: QueueAction, lane_id: int, actor_id: int) -> Dict[str, int]:
        self.reset_scheduler.maybe_reset()
        outcome = run_action(
            self.engine,
            actor_id,
            lane_id,
            action,
            day=self.today(),
            max_number=self.config.max_number,
        )
        result = outcome.to_dict()
        logger.info("Staff %s ran %s on lane %s -> %s", actor_id, action.value, lane_id, result)
        try:
            self.hub.broadcast(operation_event(action.value, lane_id, result))
        except Exception:
            logger.exception("Failed to broadcast queue operation")
        self.publish_lanes()
        return result

    def recent_operations(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        if since is None:
            since = self.clock() - timedelta(seconds=self.config.recent_operations_seconds)
        since = as_utc(since)
        with session_scope(self.engine) as session:
            return [operation_to_dict(op, lane) for op, lane in recent_operations(session, since)]

    # -------------------- displays --------------------

    def open_channel(self) -> Channel:
        """Register an observer; it starts with a greeting and the current lane state.

        The channel is registered before the snapshot is read, and snapshots
        are read and delivered under one lock, so the last ``lanes_update`` a
        channel receives is never older than the last commit.
        """
        self.reset_scheduler.maybe_reset()
        with self._snapshot_lock:
            channel = self.hub.connect([connected_event()])
            try:
                with session_scope(self.engine) as session:
                    snapshot = self._lane_statuses(session)
            except Exception:
                self.hub.disconnect(channel)
                raise
            try:
                channel.send(lanes_update_event(snapshot))
            except ChannelClosed:
                self.hub.disconnect(channel)
        return channel

    def publish_lanes(self) -> None:
        try:
            with self._snapshot_lock:
                with session_scope(self.engine) as session:
                    snapshot = self._lane_statuses(session)
                self.hub.broadcast(lanes_update_event(snapshot))
        except Exception:
            logger.exception("Failed to broadcast lane snapshot")

    # -------------------- lane administration --------------------

    def list_lanes(self, actor_id: int) -> List[Dict[str, Any]]:
        """All lanes with their staff and today's open numbers, for staff screens."""
        self.reset_scheduler.maybe_reset()
        day = self.today()
        with session_scope(self.engine) as session:
            actor = staff_store.require_active_staff(session, actor_id)
            if actor.role not in staff_store.OPERATOR_ROLES:
                raise Forbidden("Not allowed to view lanes")
            result = []
            for lane in lane_store.list_lanes(session):
                data = lane_to_dict(lane)
                data["assignedUsers"] = [
                    staff_to_dict(s) for s in staff_store.assigned_staff(session, lane.id)
                ]
                data["queueItems"] = self._open_items(session, lane.id, day)
                result.append(data)
            return result

    def _open_items(self, session: Session, lane_id: int, day: date) -> List[Dict[str, Any]]:
        items = session.exec(
            select(QueueItem)
            .where(
                QueueItem.lane_id == lane_id,
                QueueItem.service_day == day,
                QueueItem.status.in_([QueueItemStatus.waiting, QueueItemStatus.called]),
            )
            .order_by(QueueItem.number)
        ).all()
        return [{"number": item.number, "status": item.status.value} for item in items]

    def create_lane(
        self,
        actor_id: int,
        name: str,
        description: Optional[str] = None,
        lane_type: LaneType = LaneType.regular,
    ) -> Dict[str, Any]:
        with session_scope(self.engine) as session:
            staff_store.require_admin(session, actor_id)
            lane = lane_store.create_lane(session, name, description, lane_type)
            data = lane_to_dict(lane)
        logger.info("Lane %s (%s) created", data["id"], data["name"])
        self.publish_lanes()
        return data

    def update_lane(self, actor_id: int, lane_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply admin edits.  ``changes`` may hold name, description,
        is_active, current_number and last_served_number."""
        with session_scope(self.engine) as session:
            staff_store.require_admin(session, actor_id)
            lane_store.get_lane(session, lane_id)
            if "name" in changes or "description" in changes:
                lane_store.update_lane(
                    session,
                    lane_id,
                    name=changes.get("name"),
                    description=changes.get("description"),
                )
            if changes.get("is_active") is not None:
                lane_store.set_active(session, lane_id, changes["is_active"])
            if changes.get("current_number") is not None:
                lane_store.set_current_number(session, lane_id, changes["current_number"])
            if changes.get("last_served_number") is not None:
                lane_store.set_last_served(session, lane_id, changes["last_served_number"])
            session.commit()
            lane = lane_store.get_lane(session, lane_id)
            session.refresh(lane)
            data = lane_to_dict(lane)
        self.publish_lanes()
        return data

    def assign(self, actor_id: int, lane_id: int, staff_id: int) -> Dict[str, Any]:
        with session_scope(self.engine) as session:
            staff_store.require_admin(session, actor_id)
            staff_store.assign_staff(session, lane_id, staff_id)
            return self._lane_with_staff(session, lane_id)

    def unassign(self, actor_id: int, lane_id: int, staff_id: int) -> Dict[str, Any]:
        with session_scope(self.engine) as session:
            staff_store.require_admin(session, actor_id)
            staff_store.unassign_staff(session, lane_id, staff_id)
            return self._lane_with_staff(session, lane_id)

    def _lane_with_staff(self, session: Session, lane_id: int) -> Dict[str, Any]:
        data = lane_to_dict(lane_store.get_lane(session, lane_id))
        data["assignedUsers"] = [staff_to_dict(s) for s in staff_store.assigned_staff(session, lane_id)]
        return data

    # -------------------- staff administration --------------------

    def create_staff(
        self,
        actor_id: int,
        username: str,
        name: str,
        role: StaffRole = StaffRole.user,
    ) -> Dict[str, Any]:
        with session_scope(self.engine) as session:
            staff_store.require_admin(session, actor_id)
            return staff_to_dict(staff_store.create_staff(session, username, name, role))

    def update_staff(self, actor_id: int, staff_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        with session_scope(self.engine) as session:
            staff_store.require_admin(session, actor_id)
            staff = staff_store.update_staff(
                session,
                staff_id,
                name=changes.get("name"),
                role=changes.get("role"),
                is_active=changes.get("is_active"),
            )
            return staff_to_dict(staff)

    def assigned_lanes(self, actor_id: int, staff_id: int) -> List[Dict[str, Any]]:
        """Lanes a staff member works, with today's open numbers.  Staff may
        only look up themselves; admins may look up anyone."""
        self.reset_scheduler.maybe_reset()
        day = self.today()
        with session_scope(self.engine) as session:
            actor = staff_store.require_active_staff(session, actor_id)
            if actor.id != staff_id and actor.role != StaffRole.admin:
                raise Forbidden("Cannot view another staff member's lanes")
            staff_store.get_staff(session, staff_id)
            result = []
            for lane in staff_store.assigned_lanes(session, staff_id):
                data = lane_to_dict(lane)
                data["queueItems"] = self._open_items(session, lane.id, day)
                result.append(data)
            return result
