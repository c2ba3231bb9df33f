"""Runtime configuration.

Everything is read from environment variables once, at startup.  Defaults
are chosen so the service runs locally against a SQLite file with no other
setup.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_DB_FILENAME = "queue.db"


@dataclass(frozen=True)
class Config:
    database_url: str = DEFAULT_DB_FILENAME
    redis_url: Optional[str] = None
    redis_channel: str = "lanequeue:updates"
    max_number: int = 999
    minutes_per_person: int = 5
    sse_poll_interval: float = 0.1
    sse_heartbeat_seconds: float = 15.0
    sse_buffer_size: int = 256
    recent_operations_seconds: int = 30
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DB_FILENAME),
            redis_url=os.getenv("REDIS_URL") or None,
            redis_channel=os.getenv("REDIS_CHANNEL", "lanequeue:updates"),
            max_number=int(os.getenv("MAX_QUEUE_NUMBER", 999)),
            minutes_per_person=int(os.getenv("MINUTES_PER_PERSON", 5)),
            sse_poll_interval=float(os.getenv("SSE_POLL_INTERVAL", 0.1)),
            sse_heartbeat_seconds=float(os.getenv("SSE_HEARTBEAT_SECONDS", 15)),
            sse_buffer_size=int(os.getenv("SSE_BUFFER_SIZE", 256)),
            recent_operations_seconds=int(os.getenv("RECENT_OPERATIONS_SECONDS", 30)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", 8000)),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
