import threading
from typing import Dict, List, Optional

from ..common.errors import DuplicateTaskError
from ..common.logging import get_project_logger
from ..common.metrics import TASK_ANOMALIES_TOTAL
from ..queue.envelope import Pending, Status, can_transition
from .schema import TaskRecord

log = get_project_logger("registry")


class TaskRegistry:
    """In-memory task records, kept in submission order.

    Every operation takes the same lock, and only for the dict access itself.
    Records are immutable and replaced whole, so snapshots never see a half
    applied update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, TaskRecord] = {}

    def insert(self, task_id: str, status: Optional[Status] = None) -> TaskRecord:
        rec = TaskRecord(task_id=task_id, status=status or Pending())
        with self._lock:
            if task_id in self._records:
                raise DuplicateTaskError(task_id)
            self._records[task_id] = rec
        log.debug("task_registered", extra={"payload": {"task_id": task_id, "status": rec.status.kind}})
        return rec

    def update(self, task_id: str, status: Status) -> bool:
        with self._lock:
            current = self._records.get(task_id)
            if current is not None and can_transition(current.status, status):
                self._records[task_id] = current.model_copy(update={"status": status})
                return True

        if current is None:
            TASK_ANOMALIES_TOTAL.labels(kind="unknown_task").inc()
            log.warning("task_unknown", extra={"payload": {"task_id": task_id, "status": status.kind}})
        else:
            TASK_ANOMALIES_TOTAL.labels(kind="transition_rejected").inc()
            log.warning(
                "task_transition_rejected",
                extra={
                    "payload": {
                        "task_id": task_id,
                        "current": current.status.kind,
                        "requested": status.kind,
                    }
                },
            )
        return False

    def get(self, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            return self._records.get(task_id)

    def snapshot(self) -> List[TaskRecord]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
