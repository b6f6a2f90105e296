"""Tests for the Graph client: pagination, list resolution, error mapping and retries."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from tests.fakes import link_account
from todobridge.core.exceptions import (
    RemoteNotFound,
    RemoteRejected,
    RemoteTransient,
    RemoteUnauthorized,
)
from todobridge.sources.mstodo.client import GraphClient


@pytest.mark.asyncio
async def test_list_tasks_follows_next_links(engine, credentials_db, fake_ms):
    fake_ms.page_size = 2
    list_id = fake_ms.add_list("TodoBridge")
    for n in range(5):
        fake_ms.put_task(list_id, f"r{n}", title=f"Task {n}")
    await link_account(credentials_db, "alice")

    tasks = await engine.graph.list_tasks("alice", list_id)

    assert [t.id for t in tasks] == ["r0", "r1", "r2", "r3", "r4"]
    assert len(fake_ms.calls("GET", "/tasks")) == 3


@pytest.mark.asyncio
async def test_resolve_list_finds_exact_name_and_caches(engine, credentials_db, fake_ms):
    fake_ms.add_list("todobridge", list_id="wrong-case")
    fake_ms.add_list("TodoBridge", list_id="right")
    await link_account(credentials_db, "alice")

    assert await engine.graph.resolve_list("alice", "TodoBridge") == "right"
    assert (await credentials_db.get("alice")).remote_list_id == "right"

    # Cached: no second search
    assert await engine.graph.resolve_list("alice", "TodoBridge") == "right"
    assert len(fake_ms.calls("GET", "/me/todo/lists")) == 1


@pytest.mark.asyncio
async def test_resolve_list_creates_missing_list(engine, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")

    list_id = await engine.graph.resolve_list("alice", "TodoBridge")

    assert fake_ms.lists[list_id]["displayName"] == "TodoBridge"
    assert len(fake_ms.calls("POST", "/me/todo/lists")) == 1


@pytest.mark.asyncio
async def test_delete_of_missing_task_counts_as_done(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")

    assert await engine.graph.delete_task("alice", list_id, "gone") is False


@pytest.mark.asyncio
async def test_get_missing_task_returns_none(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")

    assert await engine.graph.get_task("alice", list_id, "gone") is None


@pytest.mark.asyncio
async def test_update_of_missing_task_raises_not_found(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")

    with pytest.raises(RemoteNotFound):
        await engine.graph.update_task("alice", list_id, "gone", {"title": "x"})


@pytest.mark.asyncio
async def test_throttling_is_retried_within_bound(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")
    fake_ms.fail("GET", "/tasks", 429, headers={"Retry-After": "0"})
    fake_ms.fail("GET", "/tasks", 503)

    assert await engine.graph.list_tasks("alice", list_id) == []
    assert len(fake_ms.calls("GET", "/tasks")) == 3


@pytest.mark.asyncio
async def test_persistent_server_error_becomes_transient(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")
    for _ in range(3):
        fake_ms.fail("GET", "/tasks", 500)

    with pytest.raises(RemoteTransient) as exc_info:
        await engine.graph.list_tasks("alice", list_id)

    assert exc_info.value.status_code == 500
    assert len(fake_ms.calls("GET", "/tasks")) == 3


@pytest.mark.asyncio
async def test_bad_request_is_rejected_without_retry(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")
    fake_ms.fail("POST", "/tasks", 400)

    with pytest.raises(RemoteRejected):
        await engine.graph.create_task("alice", list_id, {"title": "x"})
    assert len(fake_ms.calls("POST", "/tasks")) == 1


@pytest.mark.asyncio
async def test_unauthorized_expires_cached_token_and_retries(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")
    fake_ms.fail("GET", "/tasks", 401)

    await engine.graph.list_tasks("alice", list_id)

    # The retry ran with a refreshed token
    assert len(fake_ms.token_requests) == 1
    requests = fake_ms.calls("GET", "/tasks")
    assert requests[0].headers["Authorization"] == "Bearer token-alice"
    assert requests[1].headers["Authorization"].startswith("Bearer access-")


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    tokens = AsyncMock()
    tokens.get_valid_access_token.return_value = "tok"
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = GraphClient(tokens, AsyncMock(), max_retries=0, http_client=http)
        with pytest.raises(RemoteTransient):
            await client.get_task("alice", "list", "task")

    tokens.invalidate.assert_not_awaited()


@pytest.mark.asyncio
async def test_unauthorized_after_retries_surfaces_as_transient():
    tokens = AsyncMock()
    tokens.get_valid_access_token.return_value = "tok"
    transport = httpx.MockTransport(lambda request: httpx.Response(401))
    async with httpx.AsyncClient(transport=transport) as http:
        client = GraphClient(tokens, AsyncMock(), max_retries=0, http_client=http)
        with pytest.raises(RemoteUnauthorized) as exc_info:
            await client.list_tasks("alice", "list")

    assert isinstance(exc_info.value, RemoteTransient)
    tokens.invalidate.assert_awaited_once_with("alice")


@pytest.mark.asyncio
async def test_subscription_lifecycle(engine, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice")
    expires = datetime.now(timezone.utc) + timedelta(days=2)

    sub_id, expiry = await engine.graph.create_subscription(
        "alice",
        list_id=list_id,
        notification_url="https://hooks.example.com/api/integrations/microsoft/webhook",
        client_state="secret",
        expires_at=expires,
    )

    body = fake_ms.subscriptions[sub_id]
    assert body["changeType"] == "created,updated,deleted"
    assert body["resource"] == f"/me/todo/lists/{list_id}/tasks"
    assert body["clientState"] == "secret"
    assert abs((expiry - expires).total_seconds()) < 1

    renewed = await engine.graph.renew_subscription("alice", sub_id, expires + timedelta(days=1))
    assert renewed > expiry

    assert await engine.graph.delete_subscription("alice", sub_id) is True
    assert await engine.graph.delete_subscription("alice", sub_id) is False
