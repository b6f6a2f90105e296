"""Pydantic models for API request/response validation."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from todobridge.core.models import LocalTask, SyncAction, TaskPriority, TaskStatus


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = "healthy"
    timestamp: str


class VersionResponse(BaseModel):
    """Response model for version information."""

    version: str
    python_version: str


class StatusResponse(BaseModel):
    """Response model for service status."""

    sync_enabled: bool
    scheduler_running: bool = False
    jobs: dict[str, str | None] = Field(default_factory=dict)


class TaskSnapshot(BaseModel):
    """Last known state of a deleted task, sent when the row is already gone."""

    title: str = ""
    creator_id: str
    assignee_id: str | None = None
    co_assignee_ids: list[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: date | None = None
    remote_task_id: str | None = None
    remote_owner_id: str | None = None

    def to_local_task(self, task_id: str) -> LocalTask:
        return LocalTask(id=task_id, **self.model_dump())


class TaskEvent(BaseModel):
    """Task-changed / task-deleted event emitted by the task store."""

    task_id: str = Field(..., description="Local task id")
    action: SyncAction = Field(
        default=SyncAction.UPDATE,
        description="create, update or delete",
    )
    snapshot: TaskSnapshot | None = Field(
        default=None,
        description="Task state before deletion (delete events only)",
    )


class TaskEventResponse(BaseModel):
    accepted: bool
    sync_enabled: bool


class IntegrationStatusResponse(BaseModel):
    """Microsoft To Do integration state of one user."""

    enabled: bool
    connected: bool
    needs_reauth: bool = False
    email: str | None = None
    list_id: str | None = None
    webhook_expires_at: datetime | None = None


class DisconnectResponse(BaseModel):
    disconnected: bool


class PullResponse(BaseModel):
    """Result of an on-demand pull."""

    user_id: str
    stats: dict[str, Any] = Field(default_factory=dict)
