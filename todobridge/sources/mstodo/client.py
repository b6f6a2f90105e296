"""Microsoft Graph client for To Do lists, tasks and change subscriptions."""

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx

from todobridge.core.exceptions import (
    RemoteError,
    RemoteNotFound,
    RemoteTransient,
    RemoteUnauthorized,
    classify_status,
)
from todobridge.core.models import RemoteTaskSnapshot
from todobridge.core.tokens import TokenManager
from todobridge.utils.datetime_utils import parse_graph_datetime
from todobridge.utils.db import CredentialsDB

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
MAX_RETRY_AFTER = 30.0


class GraphClient:
    """
    Thin wrapper around the Graph REST API.

    Every call obtains its bearer token from the TokenManager. Throttling and
    server errors are retried a bounded number of times with exponential
    backoff; whatever still fails is raised as a RemoteError subclass and the
    caller decides whether to skip, abort or wait for the next trigger.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        credentials_db: CredentialsDB,
        *,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 30.0,
        max_retries: int = 2,
        initial_delay: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the Graph client.

        Args:
            token_manager: Source of valid access tokens
            credentials_db: Where resolved list ids are cached
            base_url: Graph API root
            timeout: Per-call timeout in seconds
            max_retries: Extra attempts for transient failures
            initial_delay: Backoff before the first retry, doubled each attempt
            http_client: Optional preconfigured client (tests inject a MockTransport)
        """
        self.token_manager = token_manager
        self.credentials_db = credentials_db
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        # @odata.nextLink values are already absolute
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path}"

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return min(float(value), MAX_RETRY_AFTER)
        except ValueError:
            return None

    async def _request(
        self,
        user_id: str,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
    ) -> httpx.Response:
        url = self._url(path)

        for attempt in range(self.max_retries + 1):
            token = await self.token_manager.get_valid_access_token(user_id)
            retry_after = None
            try:
                response = await self._client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.TimeoutException as e:
                error: RemoteError = RemoteTransient(f"{method} {path} timed out: {e}")
            except httpx.TransportError as e:
                error = RemoteTransient(f"{method} {path} failed: {e}")
            else:
                kind = classify_status(response.status_code)
                if kind is None:
                    return response
                error = kind(
                    f"{method} {path} failed: HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=response.text[:500],
                )
                if kind is RemoteUnauthorized:
                    await self.token_manager.invalidate(user_id)
                retry_after = self._retry_after(response)

            if not isinstance(error, RemoteTransient) or attempt == self.max_retries:
                raise error

            delay = retry_after if retry_after is not None else self.initial_delay * (2 ** attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{self.max_retries + 1} failed for {method} {path}: {error}. "
                f"Retrying in {delay:.2f} seconds..."
            )
            await asyncio.sleep(delay)

        raise AssertionError("unreachable")

    async def _paginate(self, user_id: str, path: str, params: dict | None = None) -> list[dict]:
        """Follow @odata.nextLink until exhausted and return every item."""
        items: list[dict] = []
        next_path: str | None = path
        next_params = params
        while next_path:
            response = await self._request(user_id, "GET", next_path, params=next_params)
            data = response.json()
            items.extend(data.get("value", []))
            next_path = data.get("@odata.nextLink")
            # The next link already embeds the query string
            next_params = None
        return items

    # Lists

    async def list_lists(self, user_id: str) -> list[dict]:
        return await self._paginate(user_id, "/me/todo/lists")

    async def create_list(self, user_id: str, display_name: str) -> dict:
        response = await self._request(
            user_id, "POST", "/me/todo/lists", json={"displayName": display_name}
        )
        return response.json()

    async def resolve_list(self, user_id: str, display_name: str) -> str:
        """
        Return the id of the user's list named ``display_name``.

        Uses the id cached on the credential when present; otherwise searches
        the user's lists (exact, case-sensitive match) and creates the list if
        absent, then caches the id.
        """
        credential = await self.credentials_db.get(user_id)
        if credential and credential.remote_list_id:
            return credential.remote_list_id

        list_id = None
        for todo_list in await self.list_lists(user_id):
            if todo_list.get("displayName") == display_name:
                list_id = todo_list["id"]
                logger.debug(f"Found To Do list '{display_name}' for user {user_id}")
                break

        if list_id is None:
            created = await self.create_list(user_id, display_name)
            list_id = created["id"]
            logger.info(f"Created To Do list '{display_name}' for user {user_id}")

        await self.credentials_db.set_remote_list(user_id, list_id)
        return list_id

    # Tasks

    async def create_task(self, user_id: str, list_id: str, payload: dict) -> dict:
        response = await self._request(
            user_id, "POST", f"/me/todo/lists/{list_id}/tasks", json=payload
        )
        return response.json()

    async def update_task(self, user_id: str, list_id: str, task_id: str, payload: dict) -> dict:
        response = await self._request(
            user_id, "PATCH", f"/me/todo/lists/{list_id}/tasks/{task_id}", json=payload
        )
        return response.json()

    async def delete_task(self, user_id: str, list_id: str, task_id: str) -> bool:
        """Delete a remote task. Returns False if it was already gone."""
        try:
            await self._request(user_id, "DELETE", f"/me/todo/lists/{list_id}/tasks/{task_id}")
        except RemoteNotFound:
            logger.debug(f"Remote task {task_id} already deleted")
            return False
        return True

    async def get_task(self, user_id: str, list_id: str, task_id: str) -> RemoteTaskSnapshot | None:
        try:
            response = await self._request(
                user_id, "GET", f"/me/todo/lists/{list_id}/tasks/{task_id}"
            )
        except RemoteNotFound:
            return None
        return RemoteTaskSnapshot.from_graph(response.json())

    async def list_tasks(self, user_id: str, list_id: str) -> list[RemoteTaskSnapshot]:
        """Every task in the list, across all pages."""
        items = await self._paginate(
            user_id, f"/me/todo/lists/{list_id}/tasks", params={"$top": PAGE_SIZE}
        )
        return [RemoteTaskSnapshot.from_graph(item) for item in items]

    # Subscriptions

    async def create_subscription(
        self,
        user_id: str,
        *,
        list_id: str,
        notification_url: str,
        client_state: str,
        expires_at: datetime,
    ) -> tuple[str, datetime]:
        """Subscribe to changes of the list's tasks. Returns (subscription id, expiry)."""
        response = await self._request(
            user_id,
            "POST",
            "/subscriptions",
            json={
                "changeType": "created,updated,deleted",
                "notificationUrl": notification_url,
                "resource": f"/me/todo/lists/{list_id}/tasks",
                "expirationDateTime": expires_at.isoformat(),
                "clientState": client_state,
            },
        )
        data = response.json()
        return data["id"], parse_graph_datetime(data["expirationDateTime"])

    async def renew_subscription(self, user_id: str, subscription_id: str, expires_at: datetime) -> datetime:
        response = await self._request(
            user_id,
            "PATCH",
            f"/subscriptions/{subscription_id}",
            json={"expirationDateTime": expires_at.isoformat()},
        )
        return parse_graph_datetime(response.json()["expirationDateTime"])

    async def delete_subscription(self, user_id: str, subscription_id: str) -> bool:
        try:
            await self._request(user_id, "DELETE", f"/subscriptions/{subscription_id}")
        except RemoteNotFound:
            return False
        return True
