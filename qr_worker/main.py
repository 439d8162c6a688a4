"""
Worker process: consumes image requests, replies with decode results.

    unwrap-qr-worker
"""

import sys

from unwrap_qr.common.errors import AppError, BrokerDisconnectedError, ConfigError
from unwrap_qr.common.logging import get_project_logger, setup_logging
from unwrap_qr.config import Settings, get_settings
from unwrap_qr.queue.actor import QueueActor
from unwrap_qr.queue.broker import BrokerGateway

from .handler import WorkerHandler

log = get_project_logger("worker")


def build_actor(settings: Settings) -> QueueActor:
    handler = WorkerHandler(source_queue=settings.requests_queue, target_queue=settings.responses_queue)
    gateway = BrokerGateway(settings.broker_url, drain_timeout=settings.drain_timeout_seconds)
    return QueueActor(
        handler,
        gateway,
        outbound_queue_size=settings.outbound_queue_size,
        send_timeout=settings.send_timeout_seconds,
    )


def main() -> None:
    try:
        settings = get_settings()
    except ConfigError as e:
        sys.exit(f"Invalid configuration: {e}")
    setup_logging(settings)

    actor = build_actor(settings)
    try:
        actor.start()
    except AppError as e:
        log.critical("worker_startup_failed", extra={"payload": {"error": str(e), "code": e.code}})
        sys.exit(1)

    log.info("worker_started", extra={"payload": {"queue": settings.requests_queue}})
    try:
        actor.run_forever()
    except KeyboardInterrupt:
        log.info("worker_interrupted")
    except BrokerDisconnectedError as e:
        log.critical("worker_disconnected", extra={"payload": {"error": str(e)}})
        sys.exit(1)
    finally:
        actor.stop()


if __name__ == "__main__":
    main()
