"""Inbound sync: remote To Do changes applied to local tasks."""

import logging
from datetime import datetime
from enum import Enum

from todobridge.core.config import MicrosoftConfig
from todobridge.core.locks import KeyedLocks
from todobridge.core.models import LocalTask, RemoteTaskSnapshot, TaskStatus
from todobridge.core.translator import (
    board_column_for,
    completed_at_from_remote,
    due_date_from_remote,
    priority_from_remote,
    status_from_remote,
)
from todobridge.sources.mstodo.client import GraphClient
from todobridge.utils.datetime_utils import EPOCH, ensure_aware, utc_now
from todobridge.utils.db import CredentialsDB, TasksDB

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    UNCHANGED = "unchanged"
    LOCAL_WINS = "local"
    REMOTE_WINS = "remote"


def resolve_conflict(
    local_updated_at: datetime | None,
    remote_modified: datetime,
    watermark: datetime | None,
) -> Decision:
    """
    Last-write-wins decision for one task.

    No remote change since the watermark means nothing to pull. When both
    sides changed, the strictly later timestamp wins and a tie goes to the
    remote side.
    """
    watermark = ensure_aware(watermark) if watermark else EPOCH
    remote_modified = ensure_aware(remote_modified)

    if remote_modified <= watermark:
        return Decision.UNCHANGED

    if local_updated_at is not None:
        local_updated_at = ensure_aware(local_updated_at)
        if local_updated_at > watermark and local_updated_at > remote_modified:
            return Decision.LOCAL_WINS

    return Decision.REMOTE_WINS


def compute_changes(task: LocalTask, remote: RemoteTaskSnapshot, time_zone: str) -> dict:
    """
    Columns of ``task`` that differ from the remote copy.

    Status and priority go through the reverse mapping, so a winning remote
    copy collapses IN_REVIEW to IN_PROGRESS, URGENT to HIGH and CANCELLED to
    DONE.
    """
    changes: dict = {}

    new_status = status_from_remote(remote.status)
    if new_status != task.status:
        changes["status"] = new_status
        changes["board_column"] = board_column_for(new_status)
        if new_status == TaskStatus.DONE:
            changes["completed_at"] = completed_at_from_remote(remote.completed_date_time) or utc_now()
        elif task.status == TaskStatus.DONE:
            changes["completed_at"] = None

    if remote.title and remote.title != task.title:
        changes["title"] = remote.title

    new_priority = priority_from_remote(remote.importance)
    if new_priority != task.priority:
        changes["priority"] = new_priority

    due_date = due_date_from_remote(remote.due_date_time, time_zone)
    if due_date != task.due_date:
        changes["due_date"] = due_date

    return changes


class InboundSync:
    """
    Delta pull of one user's To Do list.

    Lists every remote task, matches it to a local task by remote id and
    applies remote-side changes newer than the task's watermark. Remote tasks
    without a local counterpart are never imported.
    """

    def __init__(
        self,
        tasks_db: TasksDB,
        credentials_db: CredentialsDB,
        graph: GraphClient,
        config: MicrosoftConfig,
        user_locks: KeyedLocks,
    ):
        self.tasks_db = tasks_db
        self.credentials_db = credentials_db
        self.graph = graph
        self.config = config
        self.user_locks = user_locks

    async def pull(self, user_id: str) -> dict[str, int]:
        """
        Pull remote changes for one user.

        Returns:
            Stats dict: fetched, matched, updated, unchanged, local_wins, errors

        Raises:
            CredentialInvalid: The user must re-authorize
            RemoteError: Listing the remote tasks failed
        """
        stats = {
            "fetched": 0,
            "matched": 0,
            "updated": 0,
            "unchanged": 0,
            "local_wins": 0,
            "errors": 0,
        }

        async with self.user_locks.hold(user_id):
            credential = await self.credentials_db.get(user_id)
            if credential is None or not credential.remote_list_id:
                logger.debug(f"User {user_id} has no resolved To Do list, skipping pull")
                return stats

            remote_tasks = await self.graph.list_tasks(user_id, credential.remote_list_id)
            stats["fetched"] = len(remote_tasks)

            for remote in remote_tasks:
                try:
                    task = await self.tasks_db.get_task_by_remote_id(remote.id)
                    if task is None:
                        continue
                    stats["matched"] += 1
                    outcome = await self._apply(task, remote)
                    stats[outcome] += 1
                except Exception as e:
                    logger.error(f"Failed to pull remote task {remote.id} for user {user_id}: {e}")
                    stats["errors"] += 1

        if stats["updated"] or stats["errors"]:
            logger.info(
                f"Pull for user {user_id}: {stats['updated']} updated, "
                f"{stats['local_wins']} kept local, {stats['errors']} errors"
            )
        return stats

    async def _apply(self, task: LocalTask, remote: RemoteTaskSnapshot) -> str:
        decision = resolve_conflict(task.updated_at, remote.last_modified_date_time, task.last_synced_at)

        if decision == Decision.UNCHANGED:
            return "unchanged"
        if decision == Decision.LOCAL_WINS:
            logger.debug(f"Task {task.id} changed locally after remote edit, keeping local copy")
            return "local_wins"

        changes = compute_changes(task, remote, self.config.time_zone)
        # Never move the watermark behind the change we just consumed
        synced_at = max(utc_now(), ensure_aware(remote.last_modified_date_time))
        await self.tasks_db.apply_remote_changes(task.id, changes, synced_at)

        if not changes:
            return "unchanged"
        logger.info(f"Applied remote changes to task {task.id}: {', '.join(sorted(changes))}")
        return "updated"
