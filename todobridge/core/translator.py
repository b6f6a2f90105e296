"""Field mapping between dashboard tasks and Microsoft To Do tasks.

Every function here is pure. The reverse mappings are lossy on purpose:
several local states collapse into one remote state, so a round trip yields
the equivalence class, not necessarily the original value.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from html import unescape

from todobridge.core.models import (
    Importance,
    LocalTask,
    RemoteStatus,
    TaskPriority,
    TaskStatus,
)
from todobridge.utils.datetime_utils import parse_date_time_time_zone, resolve_zone

DUE_TIME_OF_DAY = "T00:00:00"
BACK_LINK_LABEL = "Open in dashboard"

_STATUS_TO_REMOTE = {
    TaskStatus.TODO: RemoteStatus.NOT_STARTED,
    TaskStatus.IN_PROGRESS: RemoteStatus.IN_PROGRESS,
    TaskStatus.IN_REVIEW: RemoteStatus.IN_PROGRESS,
    TaskStatus.DONE: RemoteStatus.COMPLETED,
    TaskStatus.CANCELLED: RemoteStatus.COMPLETED,
}

_STATUS_FROM_REMOTE = {
    RemoteStatus.NOT_STARTED: TaskStatus.TODO,
    RemoteStatus.IN_PROGRESS: TaskStatus.IN_PROGRESS,
    RemoteStatus.COMPLETED: TaskStatus.DONE,
}

_PRIORITY_TO_REMOTE = {
    TaskPriority.LOW: Importance.LOW,
    TaskPriority.MEDIUM: Importance.NORMAL,
    TaskPriority.HIGH: Importance.HIGH,
    TaskPriority.URGENT: Importance.HIGH,
}

_PRIORITY_FROM_REMOTE = {
    Importance.LOW: TaskPriority.LOW,
    Importance.NORMAL: TaskPriority.MEDIUM,
    Importance.HIGH: TaskPriority.HIGH,
}

# Kanban column the dashboard shows for each status
BOARD_COLUMNS = {
    TaskStatus.TODO: "todo",
    TaskStatus.IN_PROGRESS: "in_progress",
    TaskStatus.IN_REVIEW: "in_review",
    TaskStatus.DONE: "done",
    TaskStatus.CANCELLED: "cancelled",
}

_BLOCK_BREAK_RE = re.compile(
    r"<br\s*/?>|</(?:p|div|li|h[1-6]|tr|blockquote|pre|ul|ol)\s*>",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"<[^>]+>")
_EXTRA_BLANK_LINES_RE = re.compile(r"\n{3,}")


def status_to_remote(status: TaskStatus | str) -> RemoteStatus:
    return _STATUS_TO_REMOTE.get(TaskStatus(status), RemoteStatus.NOT_STARTED)


def status_from_remote(status: RemoteStatus | str) -> TaskStatus:
    return _STATUS_FROM_REMOTE.get(RemoteStatus(status), TaskStatus.TODO)


def priority_to_remote(priority: TaskPriority | str) -> Importance:
    return _PRIORITY_TO_REMOTE.get(TaskPriority(priority), Importance.NORMAL)


def priority_from_remote(importance: Importance | str) -> TaskPriority:
    return _PRIORITY_FROM_REMOTE.get(Importance(importance), TaskPriority.MEDIUM)


def board_column_for(status: TaskStatus) -> str:
    return BOARD_COLUMNS[status]


def due_date_to_remote(due: date | None, time_zone: str) -> dict | None:
    """Date-only due date pinned to midnight in the configured zone."""
    if due is None:
        return None
    return {"dateTime": f"{due.isoformat()}{DUE_TIME_OF_DAY}", "timeZone": time_zone}


def due_date_from_remote(value: dict | None, time_zone: str) -> date | None:
    """Calendar day of a Graph due date, seen from the configured zone."""
    moment = parse_date_time_time_zone(value)
    if moment is None:
        return None
    return moment.astimezone(resolve_zone(time_zone)).date()


def completed_at_from_remote(value: dict | None) -> datetime | None:
    return parse_date_time_time_zone(value)


def html_to_text(html: str | None) -> str:
    """Degrade rich description markup to plain text."""
    if not html:
        return ""
    text = _BLOCK_BREAK_RE.sub("\n", html)
    text = _TAG_RE.sub("", text)
    text = unescape(text).replace("\xa0", " ")
    text = _EXTRA_BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def task_link(site_url: str, task_id: str) -> str:
    """Deep link back to the task in the dashboard."""
    return f"{site_url.rstrip('/')}/tasks?taskId={task_id}"


def to_remote_create(
    task: LocalTask,
    *,
    time_zone: str,
    site_url: str,
    application_name: str,
) -> dict:
    """Body for POST /me/todo/lists/{list}/tasks."""
    payload: dict = {
        "title": task.title,
        "status": status_to_remote(task.status).value,
        "importance": priority_to_remote(task.priority).value,
    }

    body = html_to_text(task.description)
    if body:
        payload["body"] = {"content": body, "contentType": "text"}

    due = due_date_to_remote(task.due_date, time_zone)
    if due:
        payload["dueDateTime"] = due

    payload["linkedResources"] = [
        {
            "webUrl": task_link(site_url, task.id),
            "applicationName": application_name,
            "displayName": BACK_LINK_LABEL,
            "externalId": task.id,
        }
    ]
    return payload


def to_remote_update(task: LocalTask, *, time_zone: str) -> dict:
    """Body for PATCH of an existing To Do task.

    Always carries every mapped field so that removing a description or a due
    date locally clears it remotely too.
    """
    return {
        "title": task.title,
        "status": status_to_remote(task.status).value,
        "importance": priority_to_remote(task.priority).value,
        "body": {"content": html_to_text(task.description), "contentType": "text"},
        "dueDateTime": due_date_to_remote(task.due_date, time_zone),
    }
