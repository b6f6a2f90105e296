"""Outbound sync: local task mutations pushed to Microsoft To Do."""

import logging
from datetime import datetime
from enum import Enum

from todobridge.core.config import MicrosoftConfig
from todobridge.core.exceptions import CredentialInvalid, RemoteError, TodoBridgeError
from todobridge.core.locks import KeyedLocks
from todobridge.core.models import Credential, LocalTask, SyncAction
from todobridge.core.translator import to_remote_create, to_remote_update
from todobridge.sources.mstodo.client import GraphClient
from todobridge.utils.datetime_utils import parse_graph_datetime, utc_now
from todobridge.utils.db import CredentialsDB, TasksDB

logger = logging.getLogger(__name__)


class PushResult(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


def push_watermark(remote: dict | None) -> datetime:
    """Later of now and the remote's own modification time after our write."""
    now = utc_now()
    modified = (remote or {}).get("lastModifiedDateTime")
    if not modified:
        return now
    try:
        return max(now, parse_graph_datetime(modified))
    except ValueError:
        return now


def candidate_order(task: LocalTask, preferred_user_id: str | None = None) -> list[str]:
    """
    Stable order in which linked users are considered as the push owner.

    Creator, assignee, co-assignees. The user whose list already holds the
    remote copy goes first; for a task never pushed, ``preferred_user_id``
    (the user running an initial sync) goes first instead.
    """
    order = task.linked_user_ids
    first = task.remote_owner_id if task.remote_task_id else preferred_user_id
    if first:
        order = [first] + [user_id for user_id in order if user_id != first]
    return order


class OutboundSync:
    """
    Pushes one local task to the To Do list of exactly one linked user.

    Only the first credentialed candidate is tried. If that push fails it is
    logged and left for the next natural trigger; other linked users are never
    used as a fallback, which would create duplicate remote copies.
    """

    def __init__(
        self,
        tasks_db: TasksDB,
        credentials_db: CredentialsDB,
        graph: GraphClient,
        config: MicrosoftConfig,
        user_locks: KeyedLocks,
        task_locks: KeyedLocks | None = None,
    ):
        self.tasks_db = tasks_db
        self.credentials_db = credentials_db
        self.graph = graph
        self.config = config
        self.user_locks = user_locks
        self.task_locks = task_locks or KeyedLocks()

    async def _choose_owner(self, task: LocalTask, preferred_user_id: str | None) -> Credential | None:
        order = candidate_order(task, preferred_user_id)
        credentials = await self.credentials_db.get_many(order)
        for user_id in order:
            if user_id in credentials:
                return credentials[user_id]
        return None

    async def push(
        self,
        task_id: str,
        action: SyncAction | str,
        snapshot: LocalTask | None = None,
        preferred_user_id: str | None = None,
    ) -> PushResult:
        """
        Push a local change.

        Args:
            task_id: Local task id
            action: create, update or delete
            snapshot: Last known state of a deleted task, if the row is gone
            preferred_user_id: Owner to prefer for a task that was never pushed

        Returns:
            What happened; failures are logged, never raised
        """
        action = SyncAction(action)

        async with self.task_locks.hold(task_id):
            # Reload inside the lock so a concurrent push's link is visible
            task = await self.tasks_db.get_task(task_id)
            if task is None and action == SyncAction.DELETE:
                task = snapshot
            if task is None:
                logger.debug(f"Task {task_id} not found, nothing to push")
                return PushResult.SKIPPED

            if action == SyncAction.DELETE and not task.remote_task_id:
                logger.debug(f"Task {task_id} was never pushed, nothing to delete")
                return PushResult.SKIPPED

            credential = await self._choose_owner(task, preferred_user_id)
            if credential is None:
                logger.debug(f"No linked user of task {task_id} has a Microsoft account")
                return PushResult.SKIPPED

            user_id = credential.user_id
            if credential.is_invalid:
                logger.warning(
                    f"Not pushing task {task_id}: Microsoft credential of user {user_id} "
                    "needs re-authorization"
                )
                return PushResult.SKIPPED

            async with self.user_locks.hold(user_id):
                try:
                    if action == SyncAction.DELETE:
                        return await self._delete(task, user_id)
                    if task.remote_task_id:
                        return await self._update(task, user_id)
                    return await self._create(task, user_id)
                except CredentialInvalid as e:
                    logger.warning(f"Push of task {task_id} skipped: {e}")
                    return PushResult.FAILED
                except RemoteError as e:
                    logger.error(f"Failed to push task {task_id} for user {user_id}: {e}")
                    return PushResult.FAILED
                except TodoBridgeError as e:
                    logger.error(f"Push of task {task_id} failed: {e}")
                    return PushResult.FAILED

    async def _create(self, task: LocalTask, user_id: str) -> PushResult:
        list_id = await self.graph.resolve_list(user_id, self.config.list_name)
        payload = to_remote_create(
            task,
            time_zone=self.config.time_zone,
            site_url=self.config.site_url,
            application_name=self.config.application_name,
        )
        created = await self.graph.create_task(user_id, list_id, payload)
        remote_id = created["id"]

        if await self.tasks_db.claim_remote_link(task.id, remote_id, user_id, push_watermark(created)):
            logger.info(f"Created remote task for '{task.title}' ({task.id}) in list of user {user_id}")
            return PushResult.CREATED

        # Lost the race: another push linked this task first
        logger.warning(f"Task {task.id} was linked concurrently, removing duplicate remote task {remote_id}")
        try:
            await self.graph.delete_task(user_id, list_id, remote_id)
        except TodoBridgeError as e:
            logger.error(f"Failed to remove duplicate remote task {remote_id}: {e}")
        return PushResult.SKIPPED

    async def _update(self, task: LocalTask, user_id: str) -> PushResult:
        list_id = await self.graph.resolve_list(user_id, self.config.list_name)
        payload = to_remote_update(task, time_zone=self.config.time_zone)
        updated = await self.graph.update_task(user_id, list_id, task.remote_task_id, payload)
        await self.tasks_db.mark_synced(task.id, push_watermark(updated), owner_id=user_id)
        logger.info(f"Updated remote task for '{task.title}' ({task.id})")
        return PushResult.UPDATED

    async def _delete(self, task: LocalTask, user_id: str) -> PushResult:
        list_id = await self.graph.resolve_list(user_id, self.config.list_name)
        if await self.graph.delete_task(user_id, list_id, task.remote_task_id):
            logger.info(f"Deleted remote task {task.remote_task_id} of task {task.id}")
        return PushResult.DELETED
