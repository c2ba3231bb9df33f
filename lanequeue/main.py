"""FastAPI application for the lane queue.

The app exposes endpoints for taking a number, the public lane status, staff
queue operations, lane/staff administration, and a Server-Sent Events
stream for display screens.  It reads configuration from environment
variables and connects to a relational database using SQLModel.  Redis is
optional and only used to share display events between processes.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from . import __version__
from .broadcast import BroadcastHub, RedisRelay, event_stream
from .config import Config, configure_logging
from .database import create_db_engine, init_db
from .errors import QueueError
from .schemas import (
    AssignmentRequest,
    LaneCreateRequest,
    LaneUpdateRequest,
    OperationRequest,
    ReservationRequest,
    StaffCreateRequest,
    StaffUpdateRequest,
)
from .services import QueueService

logger = logging.getLogger(__name__)


def create_app(config: Optional[Config] = None, service: Optional[QueueService] = None) -> FastAPI:
    config = config or (service.config if service else Config.from_env())
    if service is None:
        engine = create_db_engine(config.database_url)
        service = QueueService(engine, BroadcastHub(config.sse_buffer_size), config)

    app = FastAPI(
        title="Lane Queue",
        description="Walk-in service queue with live display updates",
        version=__version__,
    )
    app.state.config = config
    app.state.service = service
    app.state.relay = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def on_startup() -> None:
        logger.info("🚀 Starting Lane Queue application...")
        logger.info(
            "🗄️ Database: %s",
            "PostgreSQL" if config.database_url.startswith("postgres") else "SQLite",
        )
        init_db(service.engine)
        if config.redis_url:
            relay = RedisRelay.from_url(config.redis_url, service.hub, config.redis_channel)
            relay.start()
            app.state.relay = relay
        else:
            logger.info("⚡ Redis not configured, display events stay in this process")
        logger.info("✅ Lane Queue started successfully!")

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        relay = app.state.relay
        if relay is not None:
            relay.stop()
        service.hub.close_all()
        logger.info("Lane Queue stopped")

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_message())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("🔥 Unhandled error on %s %s: %s", request.method, request.url, exc)
        logger.error("🔥 Traceback: %s", traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={"error": "internal", "message": "Internal server error"},
        )

    @app.get("/")
    def root() -> Dict[str, Any]:
        return {
            "service": "Lane Queue API",
            "version": __version__,
            "status": "running",
            "displays": len(service.hub),
        }

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "healthy", "serviceDay": service.today().isoformat()}

    # -------------------- customers & displays --------------------

    @app.post("/api/queue/reservation", status_code=201)
    def take_number(request: ReservationRequest) -> Dict[str, Any]:
        """Give the customer the next number on a lane."""
        return service.reserve(request.lane_id)

    @app.get("/api/queue/reservation")
    def queue_status() -> List[Dict[str, Any]]:
        """Current status of every active lane (today's tickets only)."""
        return service.lane_statuses()

    @app.get("/api/queue/events")
    async def queue_events(request: Request) -> StreamingResponse:
        """Server-Sent Events stream of lane snapshots and staff operations."""
        channel = await run_in_threadpool(service.open_channel)
        return StreamingResponse(
            event_stream(
                service.hub,
                channel,
                request.is_disconnected,
                poll_interval=config.sse_poll_interval,
                heartbeat_seconds=config.sse_heartbeat_seconds,
            ),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-store, must-revalidate",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/queue/recent-operations")
    def recent_operations(since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Operations since ``since`` (default: the last few seconds), newest first."""
        return service.recent_operations(since)

    # -------------------- staff --------------------

    @app.post("/api/queue/operations")
    def queue_operation(request: OperationRequest) -> Dict[str, int]:
        """Advance, re-call, alert or serve on a lane."""
        return service.operate(request.action, request.lane_id, request.actor_id)

    @app.get("/api/lanes")
    def list_lanes(actor_id: int) -> List[Dict[str, Any]]:
        return service.list_lanes(actor_id)

    @app.post("/api/lanes", status_code=201)
    def create_lane(request: LaneCreateRequest) -> Dict[str, Any]:
        return service.create_lane(request.actor_id, request.name, request.description, request.type)

    @app.patch("/api/lanes/{lane_id}")
    def update_lane(lane_id: int, request: LaneUpdateRequest) -> Dict[str, Any]:
        changes = request.model_dump(exclude_unset=True, exclude={"actor_id"})
        return service.update_lane(request.actor_id, lane_id, changes)

    @app.post("/api/lanes/{lane_id}/assign")
    def assign_lane(lane_id: int, request: AssignmentRequest) -> Dict[str, Any]:
        lane = service.assign(request.actor_id, lane_id, request.user_id)
        return {"message": "User assigned to lane successfully", "lane": lane}

    @app.post("/api/lanes/{lane_id}/unassign")
    def unassign_lane(lane_id: int, request: AssignmentRequest) -> Dict[str, Any]:
        lane = service.unassign(request.actor_id, lane_id, request.user_id)
        return {"message": "User unassigned from lane successfully", "lane": lane}

    @app.post("/api/users", status_code=201)
    def create_user(request: StaffCreateRequest) -> Dict[str, Any]:
        return service.create_staff(request.actor_id, request.username, request.name, request.role)

    @app.patch("/api/users/{user_id}")
    def update_user(user_id: int, request: StaffUpdateRequest) -> Dict[str, Any]:
        changes = request.model_dump(exclude_unset=True, exclude={"actor_id"})
        return service.update_staff(request.actor_id, user_id, changes)

    @app.get("/api/users/{user_id}/assigned-lanes")
    def user_assigned_lanes(user_id: int, actor_id: int) -> List[Dict[str, Any]]:
        return service.assigned_lanes(actor_id, user_id)

    return app


def get_app() -> FastAPI:
    """Factory for ``uvicorn --factory lanequeue.main:get_app``."""
    config = Config.from_env()
    configure_logging(config.log_level)
    return create_app(config)
