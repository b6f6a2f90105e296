"""Domain models shared by the sync engine."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from todobridge.utils.datetime_utils import parse_graph_datetime


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RemoteStatus(str, Enum):
    NOT_STARTED = "notStarted"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"


class Importance(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"


@dataclass
class Credential:
    """Microsoft account linked to one local user."""

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str = ""
    email: str | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    remote_list_id: str | None = None
    webhook_subscription_id: str | None = None
    webhook_expires_at: datetime | None = None

    @property
    def is_invalid(self) -> bool:
        return self.status == CredentialStatus.INVALID


@dataclass
class LocalTask:
    """The fields of a dashboard task the engine reads and writes."""

    id: str
    title: str
    creator_id: str
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    description: str | None = None
    due_date: date | None = None
    assignee_id: str | None = None
    co_assignee_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    board_column: str | None = None
    # Sync link
    remote_task_id: str | None = None
    remote_owner_id: str | None = None
    last_synced_at: datetime | None = None

    @property
    def linked_user_ids(self) -> list[str]:
        """Creator, assignee and co-assignees, deduplicated in that stable order."""
        ordered: list[str] = []
        for user_id in [self.creator_id, self.assignee_id, *self.co_assignee_ids]:
            if user_id and user_id not in ordered:
                ordered.append(user_id)
        return ordered


@dataclass
class RemoteTaskSnapshot:
    """A To Do task as returned by Graph, kept only for the duration of a pass."""

    id: str
    title: str
    status: RemoteStatus
    importance: Importance
    last_modified_date_time: datetime
    due_date_time: dict | None = None
    completed_date_time: dict | None = None
    body: str | None = None

    @classmethod
    def from_graph(cls, data: dict) -> "RemoteTaskSnapshot":
        try:
            status = RemoteStatus(data.get("status", "notStarted"))
        except ValueError:
            # waitingOnOthers / deferred have no local equivalent
            status = RemoteStatus.NOT_STARTED
        try:
            importance = Importance(data.get("importance", "normal"))
        except ValueError:
            importance = Importance.NORMAL

        body = data.get("body") or {}
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            status=status,
            importance=importance,
            last_modified_date_time=parse_graph_datetime(data["lastModifiedDateTime"]),
            due_date_time=data.get("dueDateTime"),
            completed_date_time=data.get("completedDateTime"),
            body=body.get("content"),
        )
