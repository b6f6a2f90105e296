"""Graph change notifications: ingestion and subscription leases."""

import hmac
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from todobridge.core.config import MicrosoftConfig
from todobridge.core.exceptions import (
    RemoteNotFound,
    RemoteRejected,
    RemoteTransient,
    TodoBridgeError,
)
from todobridge.core.locks import KeyedLocks
from todobridge.core.models import Credential
from todobridge.core.pull import InboundSync
from todobridge.sources.mstodo.client import GraphClient
from todobridge.utils.datetime_utils import utc_now
from todobridge.utils.db import CredentialsDB, TasksDB
from todobridge.utils.logging import LEASE_CATEGORY, WEBHOOK_CATEGORY

logger = logging.getLogger(__name__)

# "me/todo/lists('AAA')/tasks('BBB')" or ".../tasks/BBB"
_RESOURCE_ID_RE = re.compile(r"tasks(?:\('([^']+)'\)|/([^/?]+))\s*$", re.IGNORECASE)


def resource_id_from_path(resource: str | None) -> str | None:
    """Task id at the end of a notification's resource path."""
    if not resource:
        return None
    match = _RESOURCE_ID_RE.search(resource.strip())
    if match:
        return match.group(1) or match.group(2)
    return None


@dataclass
class Notification:
    """One entry of a change-notification POST."""

    subscription_id: str
    change_type: str
    resource_id: str | None = None
    client_state: str | None = None
    resource: str | None = None

    @classmethod
    def from_payload(cls, item: dict) -> "Notification":
        resource_data = item.get("resourceData") or {}
        return cls(
            subscription_id=item.get("subscriptionId", ""),
            change_type=(item.get("changeType") or "").lower(),
            resource_id=resource_data.get("id"),
            client_state=item.get("clientState"),
            resource=item.get("resource"),
        )


class WebhookIngestion:
    """
    Turns change notifications into local effects.

    A notification is only a hint: ``deleted`` cancels the matching local
    task, anything else triggers a full pull for the subscription's owner.
    Notifications for unknown subscriptions or with a wrong clientState are
    dropped without raising, so Graph never sees errors for stale leases.
    """

    def __init__(
        self,
        credentials_db: CredentialsDB,
        tasks_db: TasksDB,
        inbound: InboundSync,
        user_locks: KeyedLocks,
        client_state_for: Callable[[str], str] | None = None,
    ):
        self.credentials_db = credentials_db
        self.tasks_db = tasks_db
        self.inbound = inbound
        self.user_locks = user_locks
        self.client_state_for = client_state_for

    async def _owner(self, subscription_id: str, client_state: str | None) -> Credential | None:
        credential = await self.credentials_db.get_by_subscription(subscription_id)
        if credential is None:
            logger.warning(
                f"Dropping notification for unknown subscription {subscription_id}",
                extra={"log_category": WEBHOOK_CATEGORY},
            )
            return None

        if self.client_state_for is not None:
            expected = self.client_state_for(credential.user_id)
            if not hmac.compare_digest(client_state or "", expected):
                logger.warning(
                    f"Dropping notification with bad clientState for subscription {subscription_id}",
                    extra={"log_category": WEBHOOK_CATEGORY},
                )
                return None
        return credential

    async def handle(
        self,
        subscription_id: str,
        change_type: str,
        resource_id: str | None,
        client_state: str | None = None,
        resource: str | None = None,
    ) -> str:
        """
        Process one notification.

        Returns:
            "dropped", "cancelled", "pulled" or "ignored"
        """
        credential = await self._owner(subscription_id, client_state)
        if credential is None:
            return "dropped"

        change_type = change_type.lower()
        if change_type == "deleted":
            remote_id = resource_id or resource_id_from_path(resource)
            return await self._cancel(credential.user_id, remote_id)

        if change_type in ("created", "updated"):
            await self.inbound.pull(credential.user_id)
            return "pulled"

        logger.debug(f"Ignoring notification with change type '{change_type}'")
        return "ignored"

    async def handle_batch(self, notifications: list[Notification]) -> dict[str, int]:
        """
        Process a notification POST, pulling each owning user at most once.

        Deletions are applied first so the pull that follows sees them.
        """
        stats = {"dropped": 0, "cancelled": 0, "pulled": 0, "ignored": 0, "errors": 0}
        to_pull: list[str] = []

        for notification in notifications:
            try:
                if notification.change_type in ("created", "updated"):
                    credential = await self._owner(notification.subscription_id, notification.client_state)
                    if credential is None:
                        stats["dropped"] += 1
                    elif credential.user_id not in to_pull:
                        to_pull.append(credential.user_id)
                    continue

                outcome = await self.handle(
                    notification.subscription_id,
                    notification.change_type,
                    notification.resource_id,
                    client_state=notification.client_state,
                    resource=notification.resource,
                )
                stats[outcome] += 1
            except Exception as e:
                logger.error(f"Failed to process notification for subscription {notification.subscription_id}: {e}")
                stats["errors"] += 1

        for user_id in to_pull:
            try:
                await self.inbound.pull(user_id)
                stats["pulled"] += 1
            except Exception as e:
                logger.error(f"Webhook-triggered pull failed for user {user_id}: {e}")
                stats["errors"] += 1

        return stats

    async def _cancel(self, user_id: str, remote_id: str | None) -> str:
        if not remote_id:
            logger.warning("Deletion notification without a task id")
            return "ignored"

        async with self.user_locks.hold(user_id):
            task = await self.tasks_db.get_task_by_remote_id(remote_id)
            if task is None:
                logger.debug(f"No local task linked to deleted remote task {remote_id}")
                return "ignored"
            if not await self.tasks_db.mark_cancelled(task.id, utc_now()):
                return "ignored"

        logger.info(f"Cancelled task {task.id} after its remote copy was deleted")
        return "cancelled"


class LeaseManager:
    """
    Creates, renews and removes the per-user change subscription.

    Leases are best effort: any failure degrades the user to polling and is
    never raised to the caller.
    """

    def __init__(
        self,
        credentials_db: CredentialsDB,
        graph: GraphClient,
        config: MicrosoftConfig,
        lease_duration: timedelta,
        client_state_for: Callable[[str], str],
    ):
        self.credentials_db = credentials_db
        self.graph = graph
        self.config = config
        self.lease_duration = lease_duration
        self.client_state_for = client_state_for

    def _new_expiry(self) -> datetime:
        return utc_now() + self.lease_duration

    async def ensure_subscription(self, user_id: str) -> bool:
        """
        Make sure the user holds a live subscription, creating one if needed.

        Returns:
            True if a live subscription exists afterwards
        """
        notification_url = self.config.webhook_url
        if not notification_url:
            return False

        credential = await self.credentials_db.get(user_id)
        if credential is None or credential.is_invalid:
            return False

        if credential.webhook_subscription_id:
            if credential.webhook_expires_at and credential.webhook_expires_at > utc_now():
                return True
            logger.info(f"Webhook lease of user {user_id} lapsed, recreating")
            await self.credentials_db.clear_webhook(user_id)

        try:
            list_id = credential.remote_list_id or await self.graph.resolve_list(
                user_id, self.config.list_name
            )
            subscription_id, expires_at = await self.graph.create_subscription(
                user_id,
                list_id=list_id,
                notification_url=notification_url,
                client_state=self.client_state_for(user_id),
                expires_at=self._new_expiry(),
            )
        except TodoBridgeError as e:
            logger.warning(f"Could not create webhook subscription for user {user_id}, polling only: {e}")
            return False

        await self.credentials_db.set_webhook(user_id, subscription_id, expires_at)
        logger.info(f"Created webhook subscription {subscription_id} for user {user_id}")
        return True

    async def renew_all(self) -> dict[str, int]:
        """
        Extend every held lease.

        A transient failure keeps the fields while the lease is still live, so
        the next run retries. A rejected renewal or a lapsed lease clears them
        and the next poll pass creates a fresh subscription.
        """
        stats = {"renewed": 0, "kept": 0, "cleared": 0}

        for credential in await self.credentials_db.get_with_webhooks():
            user_id = credential.user_id
            try:
                expires_at = await self.graph.renew_subscription(
                    user_id, credential.webhook_subscription_id, self._new_expiry()
                )
            except RemoteTransient as e:
                if credential.webhook_expires_at and credential.webhook_expires_at > utc_now():
                    logger.warning(
                        f"Lease renewal for user {user_id} failed, will retry: {e}",
                        extra={"log_category": LEASE_CATEGORY},
                    )
                    stats["kept"] += 1
                    continue
                logger.warning(f"Lease of user {user_id} lapsed during renewal failure: {e}")
            except (RemoteNotFound, RemoteRejected) as e:
                logger.warning(f"Lease renewal for user {user_id} rejected: {e}")
            except TodoBridgeError as e:
                logger.warning(f"Cannot renew lease for user {user_id}: {e}")
            else:
                await self.credentials_db.set_webhook(user_id, credential.webhook_subscription_id, expires_at)
                stats["renewed"] += 1
                continue

            await self.credentials_db.clear_webhook(user_id)
            stats["cleared"] += 1

        logger.info(
            f"Lease renewal: {stats['renewed']} renewed, {stats['kept']} kept, {stats['cleared']} cleared"
        )
        return stats

    async def delete_subscription(self, user_id: str) -> None:
        """Remove the user's subscription remotely (best effort) and locally."""
        credential = await self.credentials_db.get(user_id)
        if credential is None or not credential.webhook_subscription_id:
            return

        try:
            await self.graph.delete_subscription(user_id, credential.webhook_subscription_id)
        except TodoBridgeError as e:
            logger.warning(f"Failed to delete webhook subscription of user {user_id}: {e}")

        await self.credentials_db.clear_webhook(user_id)
