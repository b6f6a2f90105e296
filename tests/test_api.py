"""Tests for the FastAPI routes, with the sync engine mocked out."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from todobridge import __version__
from todobridge.api.app import create_app
from todobridge.api.scheduler import LEASE_JOB_ID, POLL_JOB_ID, SchedulerManager
from todobridge.core.engine import DisabledSyncEngine
from todobridge.core.exceptions import CredentialInvalid, OAuthError, RemoteTransient
from todobridge.core.models import LocalTask, SyncAction


@pytest.fixture
def mock_engine() -> MagicMock:
    engine = MagicMock()
    engine.enabled = True
    engine.initialize = AsyncMock()
    engine.aclose = AsyncMock()
    engine.complete_authorization = AsyncMock(return_value="alice")
    engine.disconnect = AsyncMock(return_value=True)
    engine.pull_user = AsyncMock(return_value={"fetched": 2, "updated": 1})
    engine.status = AsyncMock(
        return_value={"enabled": True, "connected": True, "needs_reauth": False, "email": "a@example.com"}
    )
    engine.authorization_url.return_value = "https://login.microsoftonline.com/consumers/oauth2/v2.0/authorize?x=1"
    engine.handle_notifications.return_value = 1
    return engine


@pytest.fixture
def client(config, mock_engine):
    app = create_app(config, engine=mock_engine, start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


def test_health_and_version(client):
    assert client.get("/api/health").json()["status"] == "healthy"
    assert client.get("/api/version").json()["version"] == __version__
    assert client.get("/").json()["health"] == "/api/health"


def test_status_reports_scheduler_state(client):
    body = client.get("/api/status").json()
    assert body == {"sync_enabled": True, "scheduler_running": False, "jobs": {}}


def test_connect_redirects_to_consent_screen(client, mock_engine):
    response = client.get("/api/integrations/microsoft/connect", params={"user_id": "alice"}, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"].startswith("https://login.microsoftonline.com/")
    mock_engine.authorization_url.assert_called_once_with("alice")


def test_connect_when_disabled(config):
    app = create_app(config, engine=DisabledSyncEngine(), start_scheduler=False)
    with TestClient(app) as client:
        response = client.get("/api/integrations/microsoft/connect", params={"user_id": "alice"})
    assert response.status_code == 503


def test_callback_success_redirects_to_settings(client, mock_engine):
    response = client.get(
        "/api/integrations/microsoft/callback",
        params={"code": "abc", "state": "signed"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://dash.example.com/settings?microsoft=connected"
    mock_engine.complete_authorization.assert_awaited_once_with("abc", "signed")


@pytest.mark.parametrize(
    "params, side_effect, reason",
    [
        ({"error": "access_denied"}, None, "access_denied"),
        ({"state": "signed"}, None, "missing_code"),
        ({"code": "abc", "state": "bad"}, OAuthError("bad state", reason="invalid_state"), "invalid_state"),
        ({"code": "abc", "state": "signed"}, RemoteTransient("token endpoint down"), "temporarily_unavailable"),
    ],
)
def test_callback_failures_redirect_with_reason(client, mock_engine, params, side_effect, reason):
    mock_engine.complete_authorization.side_effect = side_effect

    response = client.get("/api/integrations/microsoft/callback", params=params, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == f"https://dash.example.com/settings?microsoft=error&reason={reason}"


def test_webhook_validation_echoes_token(client, mock_engine):
    response = client.post(
        "/api/integrations/microsoft/webhook", params={"validationToken": "Validation: token 123"}
    )

    assert response.status_code == 200
    assert response.text == "Validation: token 123"
    assert response.headers["content-type"].startswith("text/plain")
    mock_engine.handle_notifications.assert_not_called()


def test_webhook_notifications_are_acknowledged(client, mock_engine):
    payload = {"value": [{"subscriptionId": "sub-1", "changeType": "updated", "clientState": "s"}]}

    response = client.post("/api/integrations/microsoft/webhook", json=payload)

    assert response.status_code == 202
    mock_engine.handle_notifications.assert_called_once_with(payload)


def test_webhook_rejects_malformed_body(client):
    response = client.post(
        "/api/integrations/microsoft/webhook",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_task_update_event_queues_push(client, mock_engine):
    response = client.post("/api/tasks/events", json={"task_id": "task-1", "action": "create"})

    assert response.status_code == 202
    assert response.json() == {"accepted": True, "sync_enabled": True}
    mock_engine.on_task_changed.assert_called_once_with("task-1", SyncAction.CREATE)


def test_task_delete_event_carries_snapshot(client, mock_engine):
    response = client.post(
        "/api/tasks/events",
        json={
            "task_id": "task-1",
            "action": "delete",
            "snapshot": {
                "title": "Prepare quarterly report",
                "creator_id": "alice",
                "remote_task_id": "r1",
                "remote_owner_id": "alice",
            },
        },
    )

    assert response.status_code == 202
    args, kwargs = mock_engine.on_task_deleted.call_args
    assert args == ("task-1",)
    snapshot = kwargs["snapshot"]
    assert isinstance(snapshot, LocalTask)
    assert snapshot.remote_task_id == "r1"


def test_task_event_validation(client):
    response = client.post("/api/tasks/events", json={"task_id": "task-1", "action": "archive"})
    assert response.status_code == 422


def test_integration_status_and_disconnect(client, mock_engine):
    status = client.get("/api/integrations/microsoft/status/alice").json()
    assert status["connected"] is True
    assert status["email"] == "a@example.com"

    assert client.post("/api/integrations/microsoft/disconnect/alice").json() == {"disconnected": True}
    mock_engine.disconnect.assert_awaited_once_with("alice")


def test_on_demand_sync(client, mock_engine):
    response = client.post("/api/integrations/microsoft/sync/alice")

    assert response.json() == {"user_id": "alice", "stats": {"fetched": 2, "updated": 1}}


@pytest.mark.parametrize(
    "error, status_code, code",
    [
        (CredentialInvalid("alice"), 409, "credential_invalid"),
        (RemoteTransient("Graph unavailable", status_code=503), 503, "remote_unavailable"),
    ],
)
def test_engine_errors_map_to_json(client, mock_engine, error, status_code, code):
    mock_engine.pull_user.side_effect = error

    response = client.post("/api/integrations/microsoft/sync/alice")

    assert response.status_code == status_code
    assert response.json()["error"] == code


def test_unhandled_errors_are_hidden(config, mock_engine):
    mock_engine.pull_user.side_effect = RuntimeError("boom")
    app = create_app(config, engine=mock_engine, start_scheduler=False)

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.post("/api/integrations/microsoft/sync/alice")

    assert response.status_code == 500
    assert response.json() == {"error": "internal_error", "detail": "Internal server error"}


class TestSchedulerManager:
    @pytest.mark.asyncio
    async def test_start_registers_both_jobs(self, config, mock_engine):
        scheduler = SchedulerManager(mock_engine, config)

        await scheduler.start()
        try:
            assert scheduler.is_running
            assert set(scheduler.next_run_times()) == {POLL_JOB_ID, LEASE_JOB_ID}
        finally:
            await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_disabled_engine_is_not_scheduled(self, config):
        scheduler = SchedulerManager(DisabledSyncEngine(), config)

        await scheduler.start()

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_job_errors_are_contained(self, config, mock_engine):
        mock_engine.sync_all_users = AsyncMock(side_effect=RuntimeError("boom"))
        mock_engine.renew_leases = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = SchedulerManager(mock_engine, config)

        await scheduler._run_poll()
        await scheduler._run_lease_renewal()

        mock_engine.sync_all_users.assert_awaited_once()
