"""
Queue actor: binds one handler to a source and a target queue.

The consume loop processes one delivery at a time, in broker order:
ack, look up the correlation id, call the handler, queue the reply. Replies
and direct sends are published by a separate publisher loop that owns its own
broker connection, so a slow publish never stalls consumption beyond the
bounded outbound queue.
"""

from __future__ import annotations

import os
import queue
import signal
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from ..common.errors import AppError, BrokerDisconnectedError, PublishError
from ..common.logging import get_project_logger
from ..common.metrics import DELIVERIES_TOTAL, OUTBOUND_DEPTH, PUBLISH_TOTAL
from .broker import BrokerGateway, Delivery
from .envelope import new_correlation_id

log = get_project_logger("actor")


class QueueHandler(Protocol):
    def source_queue_name(self) -> str: ...

    def target_queue_name(self) -> str: ...

    def handle(self, task_id: str, payload: bytes) -> Optional[bytes]:
        """Returns the reply body, or None for no reply. Raising drops the message."""
        ...


def terminate_process(error: BaseException) -> None:
    os.kill(os.getpid(), signal.SIGTERM)


@dataclass
class Outbound:
    correlation_id: str
    body: bytes
    confirm: Optional[Future] = field(default=None)


_STOP = object()


class OutboundPublisher:
    """Drains a bounded outbound queue into the target queue on its own thread."""

    def __init__(
        self,
        gateway: BrokerGateway,
        queue_name: str,
        maxsize: int = 1000,
        on_fatal: Callable[[BaseException], None] = terminate_process,
    ):
        self.gateway = gateway
        self.queue_name = queue_name
        self.on_fatal = on_fatal
        self._jobs: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._connection = None
        self._producer = None
        self._thread: Optional[threading.Thread] = None

    def open(self) -> None:
        self._connection = self.gateway.connect()
        self._producer = self.gateway.producer(self._connection)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.run, name=f"publisher-{self.queue_name}", daemon=True
        )
        self._thread.start()

    def submit(self, job: Outbound) -> None:
        # blocks when full: this is the backpressure on the consume loop
        self._jobs.put(job)
        OUTBOUND_DEPTH.labels(queue=self.queue_name).set(self._jobs.qsize())

    def run(self) -> None:
        while True:
            job = self._jobs.get()
            OUTBOUND_DEPTH.labels(queue=self.queue_name).set(self._jobs.qsize())
            if job is _STOP:
                return
            self.publish(job)

    def publish(self, job: Outbound) -> None:
        payload = {"queue": self.queue_name, "correlation_id": job.correlation_id}
        try:
            self.gateway.publish(self._producer, self.queue_name, job.correlation_id, job.body)
        except Exception as e:
            PUBLISH_TOTAL.labels(queue=self.queue_name, result="failed").inc()
            log.error("publish_failed", exc_info=True, extra={"payload": payload})
            if job.confirm is not None:
                job.confirm.set_exception(
                    PublishError(f"Failed to publish to {self.queue_name}: {e}", details=payload)
                )
            if self._connection is not None and self.gateway.is_connection_error(self._connection, e):
                log.critical("publisher_disconnected", extra={"payload": payload})
                self.on_fatal(BrokerDisconnectedError(str(e), details=payload))
            return

        PUBLISH_TOTAL.labels(queue=self.queue_name, result="ok").inc()
        log.debug("message_published", extra={"payload": payload})
        if job.confirm is not None:
            job.confirm.set_result(job.correlation_id)

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._jobs.put(_STOP)
            self._thread.join(timeout)
            self._thread = None
        if self._connection is not None:
            self.gateway.close(self._connection)
            self._connection = None


class QueueActor:
    def __init__(
        self,
        handler: QueueHandler,
        gateway: BrokerGateway,
        *,
        outbound_queue_size: int = 1000,
        send_timeout: float = 10.0,
        on_fatal: Callable[[BaseException], None] = terminate_process,
        publisher: Optional[OutboundPublisher] = None,
    ):
        self.handler = handler
        self.gateway = gateway
        self.send_timeout = send_timeout
        self.on_fatal = on_fatal
        self.source_queue = handler.source_queue_name()
        self.target_queue = handler.target_queue_name()
        self.publisher = publisher or OutboundPublisher(
            gateway, self.target_queue, maxsize=outbound_queue_size, on_fatal=on_fatal
        )
        self._connection = None
        self._queue = None
        self._tag: Optional[str] = None
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ setup

    def start(self) -> "QueueActor":
        """Connects, declares target then source queue, opens the consumer.

        Any failure here is raised to the caller; nothing is retried.
        """
        self._connection = self.gateway.connect()
        try:
            log.debug("channel_created", extra={"payload": {"queue": self.source_queue}})
            self.gateway.declare_queue(self._connection, self.target_queue)
            self._queue = self.gateway.declare_queue(self._connection, self.source_queue)
            self._tag = self.gateway.consume(self._connection, self._queue, self.on_delivery)
            self.publisher.open()
        except AppError:
            self.gateway.close(self._connection)
            self._connection = None
            raise
        self.publisher.start()
        log.info(
            "queue_actor_started",
            extra={"payload": {"source": self.source_queue, "target": self.target_queue}},
        )
        return self

    def start_in_background(self) -> "QueueActor":
        if self._connection is None:
            self.start()
        self._thread = threading.Thread(
            target=self._run_guarded, name=f"actor-{self.source_queue}", daemon=True
        )
        self._thread.start()
        return self

    # ------------------------------------------------------------------- loop

    def run_forever(self) -> None:
        if self._connection is None:
            self.start()
        try:
            while not self._stopping.is_set():
                self.gateway.drain(self._connection)
        finally:
            self._close_consumer()

    def _run_guarded(self) -> None:
        try:
            self.run_forever()
        except BrokerDisconnectedError as e:
            log.critical(
                "queue_actor_disconnected",
                extra={"payload": {"source": self.source_queue, "error": str(e)}},
            )
            self.on_fatal(e)

    def on_delivery(self, delivery: Delivery) -> None:
        """Processes one delivery. Never raises: a bad message must not stop the loop."""
        try:
            delivery.ack()
        except Exception:
            log.error("ack_failed", exc_info=True, extra={"payload": {"queue": self.source_queue}})

        task_id = delivery.correlation_id
        if not task_id:
            DELIVERIES_TOTAL.labels(queue=self.source_queue, result="missing_correlation_id").inc()
            log.warning(
                "delivery_dropped",
                extra={"payload": {"queue": self.source_queue, "reason": "missing correlation id"}},
            )
            return

        payload = {"queue": self.source_queue, "correlation_id": task_id}
        try:
            reply = self.handler.handle(task_id, delivery.body)
        except Exception as e:
            DELIVERIES_TOTAL.labels(queue=self.source_queue, result="handler_error").inc()
            log.error(
                "handler_failed",
                exc_info=not isinstance(e, AppError),
                extra={"payload": {**payload, "error": str(e)}},
            )
            return

        if reply is None:
            DELIVERIES_TOTAL.labels(queue=self.source_queue, result="no_reply").inc()
            log.debug("delivery_handled", extra={"payload": payload})
            return

        DELIVERIES_TOTAL.labels(queue=self.source_queue, result="replied").inc()
        log.debug("reply_queued", extra={"payload": {**payload, "target": self.target_queue}})
        self.publisher.submit(Outbound(correlation_id=task_id, body=reply))

    # ------------------------------------------------------------ direct send

    def send(self, body: bytes, on_minted: Optional[Callable[[str], None]] = None) -> str:
        """Publishes `body` to the target queue under a fresh correlation id.

        `on_minted` runs before the publish, so whatever it registers exists
        before any reply can come back. Blocks until the publisher confirms.
        """
        correlation_id = new_correlation_id()
        if on_minted is not None:
            on_minted(correlation_id)

        confirm: Future = Future()
        self.publisher.submit(Outbound(correlation_id=correlation_id, body=body, confirm=confirm))
        try:
            confirm.result(timeout=self.send_timeout)
        except FutureTimeout as e:
            raise PublishError(
                f"Publish to {self.target_queue} not confirmed within {self.send_timeout}s",
                details={"correlation_id": correlation_id},
            ) from e
        log.info(
            "task_sent",
            extra={"payload": {"queue": self.target_queue, "correlation_id": correlation_id}},
        )
        return correlation_id

    # ------------------------------------------------------------------- stop

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        elif self._connection is not None:
            self._close_consumer()
        self.publisher.stop(timeout)
        log.info("queue_actor_stopped", extra={"payload": {"source": self.source_queue}})

    def _close_consumer(self) -> None:
        if self._connection is None:
            return
        if self._queue is not None and self._tag is not None:
            self.gateway.cancel(self._connection, self._queue, self._tag)
        self.gateway.close(self._connection)
        self._connection = None
