"""Dependency injection for FastAPI endpoints."""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request

from todobridge.core.config import AppConfig, load_config
from todobridge.core.engine import DisabledSyncEngine, TodoSyncEngine

logger = logging.getLogger(__name__)


@lru_cache
def get_config() -> AppConfig:
    """Get the application configuration.

    Cached to avoid reloading config on every request.
    """
    from todobridge.utils.settings_db import get_config_path

    return load_config(get_config_path())


def get_app_config(request: Request) -> AppConfig:
    """The configuration the running app was started with."""
    config = getattr(request.app.state, "config", None)
    return config if config is not None else get_config()


def get_engine(request: Request) -> TodoSyncEngine | DisabledSyncEngine:
    """The engine built during application startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        # Lifespan did not run (e.g. a bare TestClient without context manager)
        return DisabledSyncEngine("engine not started")
    return engine


def get_scheduler(request: Request):
    return getattr(request.app.state, "scheduler", None)


# Type aliases for dependency injection
ConfigDep = Annotated[AppConfig, Depends(get_app_config)]
EngineDep = Annotated[TodoSyncEngine | DisabledSyncEngine, Depends(get_engine)]
