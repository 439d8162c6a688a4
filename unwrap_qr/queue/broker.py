"""
Broker gateway on top of kombu.

Both queues are declared auto-delete and non-durable. Replies and requests go
through the default exchange with the queue name as routing key, and the
correlation id travels in the message properties.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Callable, Optional

from kombu import Connection, Producer, Queue

from ..common.errors import BrokerConnectionError, BrokerDisconnectedError, QueueSetupError
from ..common.logging import get_project_logger
from .envelope import CONTENT_ENCODING, CONTENT_TYPE

log = get_project_logger("broker")


@dataclass
class Delivery:
    correlation_id: Optional[str]
    body: bytes
    ack: Callable[[], None]


def consumer_tag(queue_name: str) -> str:
    return f"{queue_name}-consumer"


def _broker_errors(connection: Connection) -> tuple:
    return (*connection.connection_errors, *connection.channel_errors, OSError)


class BrokerGateway:
    def __init__(self, url: str, drain_timeout: float = 1.0, polling_interval: Optional[float] = None):
        self.url = url
        self.drain_timeout = drain_timeout
        self.transport_options = {}
        if polling_interval is not None:
            self.transport_options["polling_interval"] = polling_interval

    def connect(self) -> Connection:
        connection = Connection(self.url, transport_options=self.transport_options)
        try:
            # a single attempt: startup failures are fatal, not retried
            connection.connect()
            connection.default_channel  # opens the channel
        except _broker_errors(connection) as e:
            connection.release()
            raise BrokerConnectionError(
                f"Failed to establish connection to broker: {e}",
                details={"broker": connection.as_uri()},
            ) from e
        log.debug("broker_connected", extra={"payload": {"broker": connection.as_uri()}})
        return connection

    def declare_queue(self, connection: Connection, name: str) -> Queue:
        queue = Queue(name, auto_delete=True, durable=False)
        try:
            bound = queue(connection.default_channel)
            bound.declare()
        except _broker_errors(connection) as e:
            raise QueueSetupError(f"Failed to declare queue {name}: {e}", details={"queue": name}) from e
        log.debug("queue_declared", extra={"payload": {"queue": name}})
        return bound

    def consume(self, connection: Connection, queue: Queue, callback: Callable[[Delivery], None]) -> str:
        channel = connection.default_channel
        tag = consumer_tag(queue.name)

        def on_raw_message(raw_message):
            callback(self._to_delivery(channel.message_to_python(raw_message)))

        try:
            queue.consume(tag, on_raw_message, no_ack=False)
        except _broker_errors(connection) as e:
            raise QueueSetupError(
                f"Failed to consume from queue {queue.name}: {e}", details={"queue": queue.name}
            ) from e
        log.debug("consumer_started", extra={"payload": {"queue": queue.name, "consumer_tag": tag}})
        return tag

    def cancel(self, connection: Connection, queue: Queue, tag: str) -> None:
        try:
            queue.cancel(tag)
        except _broker_errors(connection) as e:
            log.warning("consumer_cancel_failed", extra={"payload": {"queue": queue.name, "error": str(e)}})

    def drain(self, connection: Connection) -> None:
        """Dispatch pending deliveries; returns quietly when nothing arrives in time."""
        try:
            connection.drain_events(timeout=self.drain_timeout)
        except socket.timeout:
            return
        except _broker_errors(connection) as e:
            raise BrokerDisconnectedError(f"Lost connection to broker: {e}") from e

    def producer(self, connection: Connection) -> Producer:
        return Producer(connection.default_channel)

    def publish(self, producer: Producer, queue_name: str, correlation_id: str, body: bytes) -> None:
        producer.publish(
            body,
            exchange="",
            routing_key=queue_name,
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
            correlation_id=correlation_id,
            retry=False,
        )

    def is_connection_error(self, connection: Connection, exc: BaseException) -> bool:
        return isinstance(exc, tuple(connection.connection_errors)) or isinstance(exc, OSError)

    def close(self, connection: Connection) -> None:
        try:
            connection.release()
        except _broker_errors(connection) as e:
            log.warning("broker_close_failed", extra={"payload": {"error": str(e)}})

    @staticmethod
    def _to_delivery(message) -> Delivery:
        body = message.body
        if isinstance(body, str):
            body = body.encode(CONTENT_ENCODING)
        correlation_id = message.properties.get("correlation_id") or None
        return Delivery(correlation_id=correlation_id, body=body or b"", ack=message.ack)
