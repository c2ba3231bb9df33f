"""Management entrypoint.

    python -m lanequeue.manage serve          run the API with uvicorn
    python -m lanequeue.manage init-db        create tables
    python -m lanequeue.manage seed           demo admin, cashier, display and lanes
    python -m lanequeue.manage reset-lanes    zero every lane's current number now
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from typing import Optional, Sequence

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .config import Config, configure_logging
from .database import create_db_engine, init_db
from .models import Lane, LaneAssignment, LaneType, StaffRole, StaffUser
from .reset import DailyResetScheduler

logger = logging.getLogger(__name__)

DEMO_STAFF = [
    ("admin", "System Administrator", StaffRole.admin),
    ("cashier", "Cashier One", StaffRole.user),
    ("display", "Display Screen", StaffRole.display),
    ("reservation", "Reservation System", StaffRole.reservation),
]

DEMO_LANES = [
    ("Customer Service", "General customer inquiries and support", LaneType.regular),
    ("Billing", "Payments and billing questions", LaneType.regular),
    ("Priority", "Seniors, persons with disability and expectant mothers", LaneType.priority),
]


def seed_demo(engine: Engine) -> None:
    """Create demo staff and lanes.  Safe to run twice."""
    with Session(engine) as session:
        staff = {}
        for username, name, role in DEMO_STAFF:
            user = session.exec(select(StaffUser).where(StaffUser.username == username)).first()
            if user is None:
                user = StaffUser(username=username, name=name, role=role)
                session.add(user)
                session.commit()
                session.refresh(user)
                logger.info("✅ Created staff: %s (%s)", username, role.value)
            staff[username] = user

        for name, description, lane_type in DEMO_LANES:
            lane = session.exec(select(Lane).where(Lane.name == name)).first()
            if lane is None:
                lane = Lane(name=name, description=description, type=lane_type)
                session.add(lane)
                session.commit()
                session.refresh(lane)
                logger.info("✅ Created lane: %s", name)

        cashier = staff["cashier"]
        billing = session.exec(select(Lane).where(Lane.name == "Billing")).one()
        assigned = session.exec(
            select(LaneAssignment).where(LaneAssignment.staff_id == cashier.id)
        ).first()
        if assigned is None:
            session.add(LaneAssignment(staff_id=cashier.id, lane_id=billing.id))
            session.commit()
            logger.info("✅ Assigned %s to %s", cashier.username, billing.name)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Lane Queue - management commands")
    parser.add_argument("--database-url", default=None, help="overrides DATABASE_URL")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("seed", help="Create demo staff and lanes")
    sub.add_parser("reset-lanes", help="Zero every lane's current number now")

    args = parser.parse_args(argv)

    config = Config.from_env()
    configure_logging(config.log_level)
    database_url = args.database_url or config.database_url

    if args.cmd == "serve":
        import uvicorn

        from .main import create_app

        if args.database_url:
            config = replace(config, database_url=database_url)
        uvicorn.run(
            create_app(config),
            host=args.host or config.host,
            port=args.port or config.port,
        )
        return

    engine = create_db_engine(database_url)
    init_db(engine)

    if args.cmd == "init-db":
        logger.info("✅ Database ready")
    elif args.cmd == "seed":
        seed_demo(engine)
    elif args.cmd == "reset-lanes":
        touched = DailyResetScheduler(engine).force_reset()
        logger.info("✅ Reset %s lane(s)", touched)


if __name__ == "__main__":
    main()
