"""Task store events feeding the outbound sync."""

import logging

from fastapi import APIRouter, status

from todobridge.api.dependencies import EngineDep
from todobridge.api.models import TaskEvent, TaskEventResponse
from todobridge.core.models import SyncAction

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/events", response_model=TaskEventResponse, status_code=status.HTTP_202_ACCEPTED)
async def task_event(event: TaskEvent, engine: EngineDep):
    """
    Accept a task-changed or task-deleted event.

    The push runs in the background; the caller never waits on Microsoft.
    """
    if event.action == SyncAction.DELETE:
        snapshot = event.snapshot.to_local_task(event.task_id) if event.snapshot else None
        engine.on_task_deleted(event.task_id, snapshot=snapshot)
    else:
        engine.on_task_changed(event.task_id, event.action)

    logger.debug(f"Queued {event.action.value} push for task {event.task_id}")
    return TaskEventResponse(accepted=True, sync_enabled=engine.enabled)
