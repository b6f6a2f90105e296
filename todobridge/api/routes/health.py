"""Health check and status endpoints."""

import logging
import sys
from datetime import datetime

from fastapi import APIRouter, Depends

from todobridge import __version__
from todobridge.api.dependencies import EngineDep, get_scheduler
from todobridge.api.models import HealthResponse, StatusResponse, VersionResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now().isoformat(),
    )


@router.get("/version", response_model=VersionResponse)
async def get_version():
    """Current TodoBridge and Python versions."""
    return VersionResponse(
        version=__version__,
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(engine: EngineDep, scheduler=Depends(get_scheduler)):
    """Whether sync is enabled and when the periodic jobs run next."""
    running = bool(scheduler and scheduler.is_running)
    return StatusResponse(
        sync_enabled=engine.enabled,
        scheduler_running=running,
        jobs=scheduler.next_run_times() if running else {},
    )
