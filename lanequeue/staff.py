"""Staff records, lane assignments and role gates.

Authentication is handled outside this service; callers pass the acting
staff member's id and the checks here only decide what that actor may do.
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import DuplicateAssignment, Forbidden, InvalidState, NotFound
from .lanes import get_lane
from .models import Lane, LaneAssignment, StaffRole, StaffUser

OPERATOR_ROLES = (StaffRole.admin, StaffRole.user)


def get_staff(session: Session, staff_id: int) -> StaffUser:
    staff = session.get(StaffUser, staff_id)
    if staff is None:
        raise NotFound(f"Staff member {staff_id} not found")
    return staff


def create_staff(
    session: Session,
    username: str,
    name: str,
    role: StaffRole = StaffRole.user,
    is_active: bool = True,
) -> StaffUser:
    username = (username or "").strip()
    if not username:
        raise InvalidState("Username is required")
    staff = StaffUser(username=username, name=name or username, role=role, is_active=is_active)
    session.add(staff)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise InvalidState(f"Username {username!r} is already taken")
    session.refresh(staff)
    return staff


def update_staff(
    session: Session,
    staff_id: int,
    *,
    name: Optional[str] = None,
    role: Optional[StaffRole] = None,
    is_active: Optional[bool] = None,
) -> StaffUser:
    staff = get_staff(session, staff_id)
    if name is not None:
        staff.name = name
    if role is not None:
        staff.role = role
    if is_active is not None:
        staff.is_active = is_active
    session.add(staff)
    session.commit()
    session.refresh(staff)
    return staff


def require_active_staff(session: Session, actor_id: int) -> StaffUser:
    actor = get_staff(session, actor_id)
    if not actor.is_active:
        raise Forbidden("Account is inactive")
    return actor


def require_admin(session: Session, actor_id: int) -> StaffUser:
    actor = require_active_staff(session, actor_id)
    if actor.role != StaffRole.admin:
        raise Forbidden("Administrator role required")
    return actor


def is_assigned(session: Session, staff_id: int, lane_id: int) -> bool:
    row = session.exec(
        select(LaneAssignment).where(
            LaneAssignment.staff_id == staff_id, LaneAssignment.lane_id == lane_id
        )
    ).first()
    return row is not None


def authorize_lane_operation(session: Session, actor: StaffUser, lane_id: int) -> None:
    """Admins may operate any lane; USER staff only lanes they are assigned to."""
    if not actor.is_active or actor.role not in OPERATOR_ROLES:
        raise Forbidden("Not allowed to operate lanes")
    if actor.role == StaffRole.admin:
        return
    if not is_assigned(session, actor.id, lane_id):
        raise Forbidden("Not assigned to this lane")


def assign_staff(session: Session, lane_id: int, staff_id: int) -> LaneAssignment:
    """Assign a USER-role staff member to a lane.

    A staff member holds at most one assignment per lane category, so a
    cashier can work one regular and one priority lane but not two regular
    ones.
    """
    staff = get_staff(session, staff_id)
    lane = get_lane(session, lane_id)
    if staff.role != StaffRole.user:
        raise InvalidState("Only staff with the USER role can be assigned to lanes")
    if not staff.is_active:
        raise InvalidState("Cannot assign an inactive staff member")
    if is_assigned(session, staff_id, lane_id):
        raise DuplicateAssignment("Staff member is already assigned to this lane")

    same_category = session.exec(
        select(Lane.name)
        .join(LaneAssignment, LaneAssignment.lane_id == Lane.id)
        .where(LaneAssignment.staff_id == staff_id, Lane.type == lane.type)
    ).first()
    if same_category is not None:
        raise DuplicateAssignment(
            f"Staff member already holds a {lane.type.value} lane ({same_category})"
        )

    assignment = LaneAssignment(staff_id=staff_id, lane_id=lane_id)
    session.add(assignment)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateAssignment("Staff member is already assigned to this lane")
    session.refresh(assignment)
    return assignment


def unassign_staff(session: Session, lane_id: int, staff_id: int) -> None:
    assignment = session.exec(
        select(LaneAssignment).where(
            LaneAssignment.staff_id == staff_id, LaneAssignment.lane_id == lane_id
        )
    ).first()
    if assignment is None:
        raise NotFound("Staff member is not assigned to this lane")
    session.delete(assignment)
    session.commit()


def assigned_staff(session: Session, lane_id: int) -> List[StaffUser]:
    return list(
        session.exec(
            select(StaffUser)
            .join(LaneAssignment, LaneAssignment.staff_id == StaffUser.id)
            .where(LaneAssignment.lane_id == lane_id)
            .order_by(StaffUser.username)
        ).all()
    )


def assigned_lanes(session: Session, staff_id: int) -> List[Lane]:
    """Active lanes the staff member is assigned to, regular lanes first."""
    lanes = session.exec(
        select(Lane)
        .join(LaneAssignment, LaneAssignment.lane_id == Lane.id)
        .where(LaneAssignment.staff_id == staff_id, Lane.is_active == True)  # noqa: E712
    ).all()
    order = {"REGULAR": 0, "PRIORITY": 1}
    return sorted(lanes, key=lambda lane: (order.get(lane.type.value, 9), lane.name))
