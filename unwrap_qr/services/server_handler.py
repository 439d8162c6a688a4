from typing import Optional

from ..common.logging import get_project_logger
from ..queue.envelope import decode_status
from ..storage.registry import TaskRegistry

log = get_project_logger("server")


class ServerHandler:
    """Applies worker replies from the responses queue to the task registry."""

    def __init__(self, registry: TaskRegistry, source_queue: str = "responses", target_queue: str = "requests"):
        self.registry = registry
        self.source_queue = source_queue
        self.target_queue = target_queue

    def source_queue_name(self) -> str:
        return self.source_queue

    def target_queue_name(self) -> str:
        return self.target_queue

    def handle(self, task_id: str, payload: bytes) -> Optional[bytes]:
        # ProtocolMismatchError propagates: the actor logs it and drops the message
        status = decode_status(payload)
        if self.registry.update(task_id, status):
            log.info("task_updated", extra={"payload": {"task_id": task_id, "status": status.kind}})
        # the server never answers back onto the requests queue
        return None
