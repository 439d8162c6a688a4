from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from ..queue.envelope import Status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    status: Status
