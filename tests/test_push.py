"""Tests for outbound sync (single-owner push)."""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import pytest

from tests.fakes import auth_user, link_account, make_task
from todobridge.core.models import SyncAction, TaskPriority, TaskStatus
from todobridge.core.push import PushResult, candidate_order


def created_bodies(fake_ms) -> list[dict]:
    return [json.loads(r.content) for r in fake_ms.calls("POST", "/tasks")]


def test_candidate_order_is_stable_and_prefers_current_owner():
    task = make_task(creator_id="alice", assignee_id="bob", co_assignee_ids=["carol", "alice"])
    assert candidate_order(task) == ["alice", "bob", "carol"]
    assert candidate_order(task, preferred_user_id="carol") == ["carol", "alice", "bob"]

    linked = make_task(
        creator_id="alice", assignee_id="bob", remote_task_id="r1", remote_owner_id="bob"
    )
    # The existing owner beats the preferred user
    assert candidate_order(linked, preferred_user_id="alice") == ["bob", "alice"]


@pytest.mark.asyncio
async def test_push_without_credentialed_user_is_noop(engine, tasks_db, fake_ms):
    await tasks_db.save_task(make_task(assignee_id="bob"))

    result = await engine.push_task("task-1", SyncAction.CREATE)

    assert result == PushResult.SKIPPED
    assert fake_ms.graph_calls() == []
    assert (await tasks_db.get_task("task-1")).remote_task_id is None


@pytest.mark.asyncio
async def test_first_push_creates_remote_task(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    await tasks_db.save_task(
        make_task(status=TaskStatus.TODO, priority=TaskPriority.HIGH, due_date=date(2024, 5, 1))
    )
    before = datetime.now(timezone.utc)

    result = await engine.push_task("task-1", SyncAction.CREATE)

    assert result == PushResult.CREATED
    [body] = created_bodies(fake_ms)
    assert body["status"] == "notStarted"
    assert body["importance"] == "high"
    assert body["dueDateTime"]["dateTime"] == "2024-05-01T00:00:00"
    assert body["linkedResources"][0]["webUrl"] == "https://dash.example.com/tasks?taskId=task-1"

    task = await tasks_db.get_task("task-1")
    assert task.remote_task_id is not None
    assert task.remote_owner_id == "alice"
    assert before - timedelta(seconds=1) <= task.last_synced_at <= datetime.now(timezone.utc) + timedelta(seconds=1)


@pytest.mark.asyncio
async def test_repeated_update_is_idempotent(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    await tasks_db.save_task(make_task(title="Call supplier"))
    await engine.push_task("task-1", SyncAction.CREATE)
    remote_id = (await tasks_db.get_task("task-1")).remote_task_id

    await engine.push_task("task-1", SyncAction.UPDATE)
    await engine.push_task("task-1", SyncAction.UPDATE)

    patches = fake_ms.calls("PATCH", "/tasks")
    assert len(patches) == 2
    assert json.loads(patches[0].content) == json.loads(patches[1].content)
    assert patches[0].url.path.endswith(f"/tasks/{remote_id}")
    assert (await tasks_db.get_task("task-1")).remote_task_id == remote_id
    assert len(created_bodies(fake_ms)) == 1


@pytest.mark.asyncio
async def test_push_uses_first_credentialed_user_only(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "bob")
    await link_account(credentials_db, "carol")
    await tasks_db.save_task(make_task(creator_id="alice", assignee_id="bob", co_assignee_ids=["carol"]))

    await engine.push_task("task-1", SyncAction.CREATE)

    [request] = fake_ms.calls("POST", "/tasks")
    assert auth_user(request) == "bob"
    assert (await tasks_db.get_task("task-1")).remote_owner_id == "bob"


@pytest.mark.asyncio
async def test_failure_does_not_fall_through_to_other_users(engine, tasks_db, credentials_db, fake_ms):
    list_id = fake_ms.add_list("TodoBridge")
    await link_account(credentials_db, "alice", list_id=list_id)
    await link_account(credentials_db, "bob", list_id=list_id)
    await tasks_db.save_task(make_task(creator_id="alice", assignee_id="bob"))
    fake_ms.fail("POST", "/tasks", 400)

    result = await engine.push_task("task-1", SyncAction.CREATE)

    assert result == PushResult.FAILED
    assert [auth_user(r) for r in fake_ms.calls("POST", "/tasks")] == ["alice"]
    assert (await tasks_db.get_task("task-1")).remote_task_id is None


@pytest.mark.asyncio
async def test_concurrent_pushes_create_exactly_one_remote_task(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    await link_account(credentials_db, "bob")
    await tasks_db.save_task(make_task(creator_id="alice", assignee_id="bob"))

    await asyncio.gather(
        engine.push_task("task-1", SyncAction.CREATE),
        engine.push_task("task-1", SyncAction.UPDATE),
        engine.push_task("task-1", SyncAction.UPDATE, preferred_user_id="bob"),
    )

    assert len(created_bodies(fake_ms)) == 1
    assert sum(len(tasks) for tasks in fake_ms.tasks.values()) == 1


@pytest.mark.asyncio
async def test_lost_link_race_deletes_duplicate(engine, tasks_db, credentials_db, fake_ms, monkeypatch):
    await link_account(credentials_db, "alice")
    await tasks_db.save_task(make_task())

    async def claim_lost(*args, **kwargs):
        return False

    monkeypatch.setattr(tasks_db, "claim_remote_link", claim_lost)

    result = await engine.push_task("task-1", SyncAction.CREATE)

    assert result == PushResult.SKIPPED
    assert len(fake_ms.calls("DELETE", "/tasks")) == 1
    assert sum(len(tasks) for tasks in fake_ms.tasks.values()) == 0


@pytest.mark.asyncio
async def test_delete_targets_owner_list(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    await link_account(credentials_db, "bob")
    await tasks_db.save_task(make_task(creator_id="alice", assignee_id="bob"))
    await engine.push_task("task-1", SyncAction.CREATE, preferred_user_id="bob")
    snapshot = await tasks_db.get_task("task-1")

    result = await engine.push_task("missing-row", SyncAction.DELETE, snapshot=snapshot)

    assert result == PushResult.DELETED
    [request] = fake_ms.calls("DELETE", "/tasks")
    assert auth_user(request) == "bob"
    assert request.url.path.endswith(f"/tasks/{snapshot.remote_task_id}")


@pytest.mark.asyncio
async def test_delete_of_unlinked_task_makes_no_remote_call(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    await tasks_db.save_task(make_task())

    result = await engine.push_task("task-1", SyncAction.DELETE)

    assert result == PushResult.SKIPPED
    assert fake_ms.graph_calls() == []


@pytest.mark.asyncio
async def test_push_short_circuits_for_invalid_credential(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice", expires_in=timedelta(seconds=-10))
    await tasks_db.save_task(make_task())
    fake_ms.token_status = 400

    # First attempt fails the refresh and marks the credential invalid
    assert await engine.push_task("task-1", SyncAction.CREATE) == PushResult.FAILED
    requests_after_first = len(fake_ms.requests)

    assert await engine.push_task("task-1", SyncAction.CREATE) == PushResult.SKIPPED
    assert len(fake_ms.requests) == requests_after_first


@pytest.mark.asyncio
async def test_push_does_not_touch_updated_at(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    edited = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await tasks_db.save_task(make_task(updated_at=edited))

    await engine.push_task("task-1", SyncAction.CREATE)

    assert (await tasks_db.get_task("task-1")).updated_at == edited


@pytest.mark.asyncio
async def test_task_events_are_fire_and_forget(engine, tasks_db, credentials_db, fake_ms):
    await link_account(credentials_db, "alice")
    await tasks_db.save_task(make_task())

    engine.on_task_changed("task-1", SyncAction.CREATE)
    await engine.drain()

    assert (await tasks_db.get_task("task-1")).remote_task_id is not None
