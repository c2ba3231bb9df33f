"""Once-a-day reset of lane pointers.

Every process keeps its own ``last_reset_date`` so the common case is a
string comparison.  The ``lastLaneReset`` setting row is what the processes
share: whoever finds it stale zeroes the lanes and stamps it.  Two processes
racing here both zero the lanes, which is harmless, and the marker is
written with an upsert so neither write fails.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlmodel import Session

from .allocator import service_day
from .database import session_scope
from .lanes import reset_current_numbers
from .models import Setting, utcnow

logger = logging.getLogger(__name__)

RESET_MARKER_KEY = "lastLaneReset"


def get_setting(session: Session, key: str) -> Optional[str]:
    setting = session.get(Setting, key)
    return setting.value if setting is not None else None


def upsert_setting(session: Session, key: str, value: str) -> None:
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(Setting).values(key=key, value=value, updated_at=utcnow())
    stmt = stmt.on_conflict_do_update(
        index_elements=["key"],
        set_={"value": value, "updated_at": utcnow()},
    )
    session.exec(stmt)


class DailyResetScheduler:
    def __init__(
        self,
        engine: Engine,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.last_reset_date: Optional[str] = None
        self._lock = threading.Lock()

    def today(self) -> str:
        return service_day(self.clock()).isoformat()

    def maybe_reset(self) -> bool:
        """Reset lanes if nobody has done it today.  Returns True if this call reset them."""
        today = self.today()
        if self.last_reset_date == today:
            return False

        with self._lock:
            if self.last_reset_date == today:
                return False
            with session_scope(self.engine) as session:
                if get_setting(session, RESET_MARKER_KEY) == today:
                    self.last_reset_date = today
                    return False
                self._reset(session, today)
            self.last_reset_date = today
            return True

    def force_reset(self) -> int:
        """Zero all lanes now, whatever the marker says."""
        today = self.today()
        with self._lock:
            with session_scope(self.engine) as session:
                touched = self._reset(session, today)
            self.last_reset_date = today
        return touched

    def _reset(self, session: Session, today: str) -> int:
        touched = reset_current_numbers(session)
        upsert_setting(session, RESET_MARKER_KEY, today)
        session.commit()
        logger.info("✅ All lane current numbers reset to 0 for %s (%s lanes)", today, touched)
        return touched
