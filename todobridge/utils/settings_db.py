"""Tiny key/value store remembering runtime settings across invocations."""

import sqlite3
from pathlib import Path

CONFIG_PATH_KEY = "config_file_path"


class SettingsDB:
    """Persistent key/value settings in SQLite (synchronous, used at startup)."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or Path.home() / ".todobridge_settings.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS settings (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def set(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def get(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))


_settings_db: SettingsDB | None = None


def get_settings_db() -> SettingsDB:
    global _settings_db
    if _settings_db is None:
        _settings_db = SettingsDB()
    return _settings_db


def get_config_path() -> Path | None:
    """Config file used by the last `todobridge config --init`, if any."""
    value = get_settings_db().get(CONFIG_PATH_KEY)
    return Path(value) if value else None


def set_config_path(path: Path) -> None:
    get_settings_db().set(CONFIG_PATH_KEY, str(path))
