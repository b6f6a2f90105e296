"""Microsoft To Do sync engine facade."""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Coroutine

import httpx

from todobridge.core.config import AppConfig
from todobridge.core.exceptions import TodoBridgeError
from todobridge.core.locks import KeyedLocks
from todobridge.core.models import LocalTask, SyncAction
from todobridge.core.pull import InboundSync
from todobridge.core.push import OutboundSync, PushResult
from todobridge.core.tokens import TokenManager
from todobridge.core.webhooks import LeaseManager, Notification, WebhookIngestion
from todobridge.sources.mstodo.client import GraphClient
from todobridge.sources.mstodo.oauth import OAuthClient
from todobridge.utils.db import CredentialsDB, TasksDB

logger = logging.getLogger(__name__)


class TodoSyncEngine:
    """
    Orchestrates bidirectional sync between dashboard tasks and Microsoft To Do.

    Design:
    - Local mutations are pushed fire-and-forget to one owner's list
    - Pulls run per user on a schedule and on webhook hints
    - Last-write-wins conflict resolution against a per-task watermark
    - Passes for the same user are serialized, different users run in parallel

    Use ``create_engine`` rather than instantiating directly: it returns a
    DisabledSyncEngine when the integration is not configured.
    """

    enabled = True

    def __init__(
        self,
        config: AppConfig,
        credentials_db: CredentialsDB | None = None,
        tasks_db: TasksDB | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the sync engine.

        Args:
            config: Application configuration
            credentials_db: Credential store (defaults to the configured data dir)
            tasks_db: Task store adapter (defaults to the configured data dir)
            http_client: Shared HTTP client for the token endpoint and Graph
            retry_delay: Backoff before the first Graph retry
        """
        self.config = config
        ms = config.microsoft

        self.credentials_db = credentials_db or CredentialsDB(config.credentials_db_path)
        self.tasks_db = tasks_db or TasksDB(config.tasks_db_path)

        self.oauth = OAuthClient(ms, http_client=http_client)
        self.tokens = TokenManager(
            self.credentials_db,
            self.oauth,
            margin=timedelta(seconds=config.sync.token_refresh_margin_seconds),
        )
        self.graph = GraphClient(
            self.tokens,
            self.credentials_db,
            base_url=ms.graph_url,
            timeout=ms.request_timeout,
            max_retries=ms.max_retries,
            initial_delay=retry_delay,
            http_client=http_client,
        )
        self._owns_http_client = http_client is None

        self.user_locks = KeyedLocks()
        self.outbound = OutboundSync(
            self.tasks_db, self.credentials_db, self.graph, ms, self.user_locks
        )
        self.inbound = InboundSync(
            self.tasks_db, self.credentials_db, self.graph, ms, self.user_locks
        )
        self.webhooks = WebhookIngestion(
            self.credentials_db,
            self.tasks_db,
            self.inbound,
            self.user_locks,
            client_state_for=self.oauth.client_state_for,
        )
        self.leases = LeaseManager(
            self.credentials_db,
            self.graph,
            ms,
            lease_duration=timedelta(minutes=config.sync.lease_duration_minutes),
            client_state_for=self.oauth.client_state_for,
        )

        self._background: set[asyncio.Task] = set()

    async def initialize(self) -> None:
        """Create database schemas."""
        logger.debug("Initializing databases...")
        await self.credentials_db.initialize()
        await self.tasks_db.initialize()
        logger.info("Microsoft To Do sync engine initialized")

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_http_client:
            await self.oauth.aclose()
            await self.graph.aclose()

    # Background work

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background job {task.get_name()} failed: {error}")

    async def drain(self) -> None:
        """Wait for every fire-and-forget job started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Authorization

    def authorization_url(self, user_id: str) -> str | None:
        return self.oauth.authorization_url(user_id)

    async def complete_authorization(self, code: str, state: str) -> str | None:
        """
        Finish the consent round-trip.

        Verifies the state, redeems the code, stores the credential, resolves
        the list, subscribes to changes and starts the initial sync in the
        background.

        Returns:
            The local user id the account was linked to

        Raises:
            OAuthError: Bad state or rejected code
            RemoteTransient: The token endpoint was unreachable
        """
        user_id = self.oauth.verify_state(state)
        tokens = await self.oauth.exchange_code(code)
        email = await self.oauth.get_user_email(tokens.access_token)

        await self.credentials_db.upsert(
            user_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            scope=tokens.scope,
            email=email,
        )
        logger.info(f"Linked Microsoft account for user {user_id}")

        try:
            await self.graph.resolve_list(user_id, self.config.microsoft.list_name)
        except TodoBridgeError as e:
            logger.warning(f"Could not resolve To Do list for user {user_id}: {e}")
        await self.leases.ensure_subscription(user_id)

        self._spawn(self.initial_sync(user_id), name=f"initial-sync:{user_id}")
        return user_id

    async def disconnect(self, user_id: str) -> bool:
        """
        Drop the webhook lease (best effort), unlink the tasks held in this
        user's list and delete the credential.
        """
        await self.leases.delete_subscription(user_id)
        async with self.user_locks.hold(user_id):
            await self.tasks_db.release_remote_links(user_id)
            return await self.credentials_db.delete(user_id)

    # Task events

    def on_task_changed(self, task_id: str, action: SyncAction | str = SyncAction.UPDATE) -> None:
        """Fire-and-forget push of a created or updated task."""
        self._spawn(self.push_task(task_id, action), name=f"push:{task_id}")

    def on_task_deleted(self, task_id: str, snapshot: LocalTask | None = None) -> None:
        """Fire-and-forget removal of a deleted task's remote copy."""
        self._spawn(
            self.push_task(task_id, SyncAction.DELETE, snapshot=snapshot),
            name=f"delete:{task_id}",
        )

    async def push_task(
        self,
        task_id: str,
        action: SyncAction | str = SyncAction.UPDATE,
        snapshot: LocalTask | None = None,
        preferred_user_id: str | None = None,
    ) -> PushResult:
        return await self.outbound.push(
            task_id, action, snapshot=snapshot, preferred_user_id=preferred_user_id
        )

    # Sync passes

    async def pull_user(self, user_id: str) -> dict[str, int]:
        return await self.inbound.pull(user_id)

    async def _poll_user(self, user_id: str) -> dict[str, int] | str:
        try:
            await self.leases.ensure_subscription(user_id)
            return await self.inbound.pull(user_id)
        except TodoBridgeError as e:
            logger.warning(f"Pull for user {user_id} failed: {e}")
            return str(e)
        except Exception as e:
            logger.error(f"Unexpected error pulling user {user_id}: {e}")
            return str(e)

    async def sync_all_users(self) -> dict[str, dict[str, int] | str]:
        """
        Polling pass over every linked account.

        Recreates missing webhook subscriptions, then pulls. Users run
        concurrently and one user's failure never affects the others.

        Returns:
            User id -> pull stats, or the error message for failed users
        """
        credentials = [c for c in await self.credentials_db.get_all() if not c.is_invalid]
        if not credentials:
            return {}

        results = await asyncio.gather(*(self._poll_user(c.user_id) for c in credentials))
        summary = dict(zip((c.user_id for c in credentials), results))

        failed = sum(1 for result in results if isinstance(result, str))
        logger.info(f"Polled {len(credentials)} Microsoft account(s), {failed} failed")
        return summary

    async def renew_leases(self) -> dict[str, int]:
        return await self.leases.renew_all()

    async def initial_sync(self, user_id: str) -> dict[str, int]:
        """
        Push the user's existing tasks after they connect.

        Up to ``sync.initial_sync_limit`` unlinked, non-cancelled tasks the
        user created or is assigned to, newest first, preferring this user as
        the owner.
        """
        stats = {"pushed": 0, "skipped": 0, "failed": 0}
        tasks = await self.tasks_db.get_unsynced_tasks_for_user(
            user_id, self.config.sync.initial_sync_limit
        )
        logger.info(f"Initial sync for user {user_id}: {len(tasks)} task(s) to push")

        for task in tasks:
            try:
                result = await self.outbound.push(
                    task.id, SyncAction.CREATE, preferred_user_id=user_id
                )
            except Exception as e:
                logger.error(f"Initial sync of task {task.id} failed: {e}")
                stats["failed"] += 1
                continue

            if result in (PushResult.CREATED, PushResult.UPDATED):
                stats["pushed"] += 1
            elif result == PushResult.FAILED:
                stats["failed"] += 1
            else:
                stats["skipped"] += 1

        logger.info(
            f"Initial sync for user {user_id} complete: {stats['pushed']} pushed, "
            f"{stats['failed']} failed"
        )
        return stats

    def handle_notifications(self, payload: dict) -> int:
        """
        Accept a change-notification POST body and process it in the background.

        Returns:
            Number of notifications accepted
        """
        notifications = [Notification.from_payload(item) for item in payload.get("value", [])]
        if notifications:
            self._spawn(self.webhooks.handle_batch(notifications), name="webhook")
        return len(notifications)

    async def status(self, user_id: str) -> dict:
        """Integration status of one user, as shown by the product UI."""
        credential = await self.credentials_db.get(user_id)
        if credential is None:
            return {"enabled": True, "connected": False, "needs_reauth": False}
        return {
            "enabled": True,
            "connected": not credential.is_invalid,
            "needs_reauth": credential.is_invalid,
            "email": credential.email,
            "list_id": credential.remote_list_id,
            "webhook_expires_at": credential.webhook_expires_at,
        }


class DisabledSyncEngine:
    """
    Stand-in used when the integration is not configured.

    Every entry point is a safe no-op so callers never need their own
    "is Microsoft configured" checks.
    """

    enabled = False

    def __init__(self, reason: str = "Microsoft integration is not configured"):
        self.reason = reason

    async def initialize(self) -> None:
        logger.info(f"Microsoft To Do sync disabled: {self.reason}")

    async def aclose(self) -> None:
        pass

    async def drain(self) -> None:
        pass

    def authorization_url(self, user_id: str) -> str | None:
        return None

    async def complete_authorization(self, code: str, state: str) -> str | None:
        return None

    async def disconnect(self, user_id: str) -> bool:
        return False

    def on_task_changed(self, task_id: str, action: SyncAction | str = SyncAction.UPDATE) -> None:
        pass

    def on_task_deleted(self, task_id: str, snapshot: LocalTask | None = None) -> None:
        pass

    async def push_task(self, task_id: str, action=SyncAction.UPDATE, snapshot=None, preferred_user_id=None) -> PushResult:
        return PushResult.SKIPPED

    async def pull_user(self, user_id: str) -> dict[str, int]:
        return {}

    async def sync_all_users(self) -> dict:
        return {}

    async def renew_leases(self) -> dict[str, int]:
        return {}

    async def initial_sync(self, user_id: str) -> dict[str, int]:
        return {}

    def handle_notifications(self, payload: dict) -> int:
        return 0

    async def status(self, user_id: str) -> dict:
        return {"enabled": False, "connected": False, "needs_reauth": False}


def create_engine(config: AppConfig, **kwargs) -> TodoSyncEngine | DisabledSyncEngine:
    """Build the sync engine, or a disabled stand-in when it cannot run."""
    if not config.sync.enabled:
        return DisabledSyncEngine("sync disabled in configuration")
    if not config.microsoft.is_configured:
        return DisabledSyncEngine("Microsoft client id or secret missing")
    return TodoSyncEngine(config, **kwargs)
