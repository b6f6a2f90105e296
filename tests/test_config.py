"""Tests for configuration loading, validation and persistence."""

import pytest
from pydantic import ValidationError

from todobridge.core.config import AppConfig, MicrosoftConfig, SyncConfig, load_config


def test_defaults(tmp_path):
    config = AppConfig(general={"data_dir": tmp_path})

    assert config.microsoft.tenant == "consumers"
    assert config.microsoft.list_name == "TodoBridge"
    assert "offline_access" in config.microsoft.scopes
    assert config.sync.lease_duration_minutes <= 4230
    assert config.credentials_db_path == tmp_path / "credentials.db"
    assert config.microsoft.webhook_url is None


def test_derived_urls():
    ms = MicrosoftConfig(
        site_url="https://dash.example.com/",
        webhook_base_url="https://hooks.example.com",
    )

    assert ms.site_url == "https://dash.example.com"
    assert ms.token_url == "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    assert ms.effective_redirect_uri == "https://dash.example.com/api/integrations/microsoft/callback"
    assert ms.webhook_url == "https://hooks.example.com/api/integrations/microsoft/webhook"


def test_explicit_redirect_uri_wins():
    ms = MicrosoftConfig(redirect_uri="https://api.example.com/oauth/callback")
    assert ms.effective_redirect_uri == "https://api.example.com/oauth/callback"


@pytest.mark.parametrize(
    "factory",
    [
        lambda: MicrosoftConfig(site_url="dash.example.com"),
        lambda: MicrosoftConfig(max_retries=-1),
        lambda: SyncConfig(lease_duration_minutes=5000),
        lambda: SyncConfig(poll_interval_minutes=0),
        lambda: AppConfig(general={"log_level": "LOUD"}),
    ],
)
def test_invalid_values_are_rejected(factory):
    with pytest.raises(ValidationError):
        factory()


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("TODOBRIDGE_MICROSOFT__CLIENT_ID", "env-client")
    monkeypatch.setenv("TODOBRIDGE_SYNC__POLL_INTERVAL_MINUTES", "15")

    config = AppConfig(general={"data_dir": tmp_path})

    assert config.microsoft.client_id == "env-client"
    assert config.sync.poll_interval_minutes == 15


def test_client_secret_from_config(config):
    assert config.microsoft.get_client_secret() == "app-secret"
    assert config.microsoft.is_configured


def test_client_secret_prefers_keyring(config, monkeypatch):
    monkeypatch.setattr(
        "todobridge.utils.credentials.keyring.get_password", lambda service, user: "keyring-secret"
    )
    assert config.microsoft.get_client_secret() == "keyring-secret"


def test_missing_client_id_is_not_configured():
    assert not MicrosoftConfig(client_secret="s").is_configured


def test_save_and_load_round_trip(config, tmp_path):
    path = tmp_path / "config.toml"
    config.sync.initial_sync_limit = 50
    config.save_to_file(path)

    loaded = load_config(path)

    assert loaded.microsoft.client_id == "app-id"
    assert loaded.microsoft.time_zone == "Europe/Rome"
    assert loaded.sync.initial_sync_limit == 50
    assert loaded.general.config_file == path


def test_load_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))

    config = load_config(tmp_path / "missing.toml")

    assert config.microsoft.client_id is None
    assert config.general.data_dir == (tmp_path / ".todobridge").resolve()
