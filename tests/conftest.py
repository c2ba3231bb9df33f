from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from lanequeue.broadcast import BroadcastHub
from lanequeue.config import Config
from lanequeue.database import create_db_engine, init_db
from lanequeue.lanes import create_lane
from lanequeue.models import LaneType, StaffRole
from lanequeue.services import QueueService
from lanequeue.staff import assign_staff, create_staff


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture
def engine(db_url):
    engine = create_db_engine(db_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def config(db_url):
    return Config(database_url=db_url, sse_poll_interval=0.01)


@pytest.fixture
def hub():
    return BroadcastHub(buffer_size=64)


@pytest.fixture
def service(engine, hub, config, clock):
    return QueueService(engine, hub, config, clock=clock)


@pytest.fixture
def lane(session):
    return create_lane(session, "Billing", "Payments", LaneType.regular)


@pytest.fixture
def admin(session):
    return create_staff(session, "admin", "System Administrator", StaffRole.admin)


@pytest.fixture
def cashier(session, lane):
    staff = create_staff(session, "cashier", "Cashier One", StaffRole.user)
    assign_staff(session, lane.id, staff.id)
    return staff


@pytest.fixture
def outsider(session):
    return create_staff(session, "outsider", "Not Assigned", StaffRole.user)
