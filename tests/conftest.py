"""Shared fixtures: fake Microsoft backend, temp databases and a wired engine."""

import httpx
import pytest
import pytest_asyncio

from tests.fakes import FakeMicrosoft
from todobridge.core.config import AppConfig
from todobridge.core.engine import TodoSyncEngine
from todobridge.utils.db import CredentialsDB, TasksDB


@pytest.fixture(autouse=True)
def no_keyring(monkeypatch):
    """Keep tests away from the real system keyring."""
    monkeypatch.setattr("todobridge.utils.credentials.keyring.get_password", lambda *a: None)


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        general={"data_dir": tmp_path},
        microsoft={
            "client_id": "app-id",
            "client_secret": "app-secret",
            "site_url": "https://dash.example.com",
            "webhook_base_url": "https://hooks.example.com",
            "state_secret": "test-state-secret-0123456789abcdef",
            "time_zone": "Europe/Rome",
        },
    )


@pytest.fixture
def fake_ms() -> FakeMicrosoft:
    return FakeMicrosoft()


@pytest_asyncio.fixture
async def http_client(fake_ms):
    async with httpx.AsyncClient(transport=fake_ms.transport()) as client:
        yield client


@pytest_asyncio.fixture
async def credentials_db(tmp_path) -> CredentialsDB:
    db = CredentialsDB(tmp_path / "credentials.db")
    await db.initialize()
    return db


@pytest_asyncio.fixture
async def tasks_db(tmp_path) -> TasksDB:
    db = TasksDB(tmp_path / "tasks.db")
    await db.initialize()
    return db


@pytest_asyncio.fixture
async def engine(config, credentials_db, tasks_db, http_client):
    sync_engine = TodoSyncEngine(
        config,
        credentials_db=credentials_db,
        tasks_db=tasks_db,
        http_client=http_client,
        retry_delay=0,
    )
    await sync_engine.initialize()
    yield sync_engine
    await sync_engine.aclose()
