from dataclasses import dataclass, fields
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional


class TaskStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True, kw_only=True)
class TaskQueueEntry:
    id: str
    task_type: str
    payload: dict[str, Any]
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    scheduled_for: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    leased_until: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    def to_dict(self):
        return {f.name: getattr(self, f.name) for f in fields(self)}
