from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from .storage.schema import TaskRecord


class TaskOut(BaseModel):
    task_id: str
    created_at: datetime
    status: str  # Pending | InProgress | Success | Failure
    result: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_record(cls, rec: TaskRecord) -> "TaskOut":
        status = rec.status
        return cls(
            task_id=rec.task_id,
            created_at=rec.created_at,
            status=status.kind,
            result=getattr(status, "text", None),
            error=getattr(status, "reason", None),
        )


class TaskListResponse(BaseModel):
    tasks: List[TaskOut]


class HealthResponse(BaseModel):
    status: str
    tasks: int
