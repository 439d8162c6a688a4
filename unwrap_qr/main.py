"""
Server process: HTTP front end plus the responses-side queue actor.

    unwrap-qr-server
"""

import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .common.errors import ConfigError
from .common.logging import get_project_logger, setup_logging
from .common.metrics import setup_metrics_endpoint
from .config import Settings, get_settings
from .queue.actor import QueueActor
from .queue.broker import BrokerGateway
from .routers import tasks
from .services.server_handler import ServerHandler
from .storage.registry import TaskRegistry

log = get_project_logger()


def build_actor(settings: Settings, registry: TaskRegistry) -> QueueActor:
    handler = ServerHandler(
        registry, source_queue=settings.responses_queue, target_queue=settings.requests_queue
    )
    gateway = BrokerGateway(settings.broker_url, drain_timeout=settings.drain_timeout_seconds)
    return QueueActor(
        handler,
        gateway,
        outbound_queue_size=settings.outbound_queue_size,
        send_timeout=settings.send_timeout_seconds,
    )


def create_app(
    settings: Optional[Settings] = None,
    actor: Optional[QueueActor] = None,
    registry: Optional[TaskRegistry] = None,
) -> FastAPI:
    settings = settings or get_settings()
    registry = registry if registry is not None else TaskRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.actor is None:
            # startup failures propagate and abort the server
            owned = build_actor(settings, registry).start_in_background()
            app.state.actor = owned
        log.info("server_started", extra={"payload": {"queue": settings.responses_queue}})
        try:
            yield
        finally:
            if owned is not None:
                owned.stop()

    app = FastAPI(title="Unwrap QR", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.actor = actor
    setup_metrics_endpoint(app)
    app.include_router(tasks.router)
    return app


def run() -> None:
    import uvicorn

    try:
        settings = get_settings()
    except ConfigError as e:
        sys.exit(f"Invalid configuration: {e}")
    setup_logging(settings)
    uvicorn.run(create_app(settings), host=settings.http_host, port=settings.http_port, log_config=None)


if __name__ == "__main__":
    run()
