"""
Error codes and exceptions shared by the server and the worker.

Anything raised while a delivery is being handled is caught by the queue actor
and logged; only startup errors and broker disconnects leave the process.
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    CONFIG = "config_error"
    CONNECTION_FAILURE = "connection_failure"
    QUEUE_SETUP_FAILURE = "queue_setup_failure"
    BROKER_DISCONNECTED = "broker_disconnected"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    HANDLER_FAILURE = "handler_failure"
    PUBLISH_FAILURE = "publish_failure"
    DUPLICATE_TASK = "duplicate_task"


@dataclass
class AppError(Exception):
    """
    Base application error.
    - code: stable error code
    - message: human readable message
    - details: extra context for logs
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFIG, message, details)


class BrokerConnectionError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.CONNECTION_FAILURE, message, details)


class QueueSetupError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.QUEUE_SETUP_FAILURE, message, details)


class BrokerDisconnectedError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.BROKER_DISCONNECTED, message, details)


class ProtocolMismatchError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.PROTOCOL_MISMATCH, message, details)


class HandlerError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.HANDLER_FAILURE, message, details)


class PublishError(AppError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.PUBLISH_FAILURE, message, details)


class DuplicateTaskError(AppError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            ErrCode.DUPLICATE_TASK, f"Task {task_id} is already registered", {"task_id": task_id}
        )
