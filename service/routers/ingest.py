import datetime
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ingest.chains.registry import get_chains
from service.db.base import TaskLedger
from service.db.models import TaskQueueEntry, TaskStatus
from service.handlers import INGEST_CHAIN_TASK

router = APIRouter(tags=["Ingestion"])


def get_ledger(request: Request) -> TaskLedger:
    return request.app.state.ledger


Ledger = Annotated[TaskLedger, Depends(get_ledger)]


class IngestRequest(BaseModel):
    """Ingestion request schema."""

    date: datetime.date | None = Field(
        None, description="Date of the price lists to ingest (default: latest)."
    )
    priority: int = Field(0, ge=0, le=10, description="Task priority, 0 to 10.")


class IngestResponse(BaseModel):
    """Scheduled ingestion response schema."""

    task_id: str = Field(..., description="ID of the scheduled task.")
    run_id: str = Field(..., description="ID of the ingestion run.")
    chain: str = Field(..., description="Retail chain code.")
    status: TaskStatus = Field(..., description="Task status.")


class TaskResponse(BaseModel):
    """Task state response schema."""

    id: str = Field(..., description="Task ID.")
    task_type: str = Field(..., description="Task type.")
    payload: dict[str, Any] = Field(..., description="Task arguments.")
    priority: int = Field(..., description="Task priority.")
    status: TaskStatus = Field(..., description="Task status.")
    scheduled_for: datetime.datetime
    started_at: datetime.datetime | None
    completed_at: datetime.datetime | None
    failed_at: datetime.datetime | None
    worker_id: str | None = Field(..., description="Worker holding the task.")
    leased_until: datetime.datetime | None
    retry_count: int
    max_retries: int
    error_message: str | None = Field(..., description="Last error, if any.")
    result: dict[str, Any] | None = Field(..., description="Task result.")
    created_at: datetime.datetime
    updated_at: datetime.datetime


def task_response(task: TaskQueueEntry) -> TaskResponse:
    return TaskResponse(**task.to_dict())


@router.post(
    "/ingest/{chain}",
    summary="Schedule chain ingestion",
    status_code=202,
)
async def ingest_chain(
    chain: str,
    ledger: Ledger,
    body: IngestRequest | None = None,
) -> IngestResponse:
    """
    Schedule discovery and download of a chain's price lists.

    The work is done asynchronously by task workers; poll the returned
    task for its status.
    """
    if chain not in get_chains():
        raise HTTPException(status_code=404, detail=f"Unknown retail chain: {chain}")

    body = body or IngestRequest()
    run_id = f"run_{uuid.uuid4().hex}"
    task_id = await ledger.schedule(
        INGEST_CHAIN_TASK,
        {
            "chain": chain,
            "date": body.date.isoformat() if body.date else None,
            "run_id": run_id,
        },
        priority=body.priority,
    )
    return IngestResponse(
        task_id=task_id,
        run_id=run_id,
        chain=chain,
        status=TaskStatus.PENDING,
    )


@router.get("/tasks/{task_id}", summary="Get task status")
async def get_task(task_id: str, ledger: Ledger) -> TaskResponse:
    task = await ledger.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"No task {task_id}")
    return task_response(task)


@router.post("/tasks/{task_id}/cancel", summary="Cancel a task")
async def cancel_task(task_id: str, ledger: Ledger) -> TaskResponse:
    """
    Cancel a pending or running task.

    A running task finishes the download in progress but enqueues no
    further work.
    """
    task = await ledger.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"No task {task_id}")

    if not await ledger.cancel(task_id):
        task = await ledger.get(task_id)
        raise HTTPException(
            status_code=409,
            detail=f"Task {task_id} is already {task.status if task else 'gone'}",
        )

    task = await ledger.get(task_id)
    return task_response(task)
