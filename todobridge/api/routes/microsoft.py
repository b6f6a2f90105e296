"""Microsoft To Do integration endpoints: OAuth, webhook and per-user sync."""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, RedirectResponse, Response

from todobridge.api.dependencies import ConfigDep, EngineDep
from todobridge.api.models import DisconnectResponse, IntegrationStatusResponse, PullResponse
from todobridge.core.exceptions import OAuthError, RemoteError

logger = logging.getLogger(__name__)

router = APIRouter()


def _settings_redirect(site_url: str, reason: str | None = None) -> RedirectResponse:
    params = {"microsoft": "error", "reason": reason} if reason else {"microsoft": "connected"}
    query = urlencode(params)
    return RedirectResponse(f"{site_url}/settings?{query}", status_code=status.HTTP_302_FOUND)


@router.get("/connect")
async def connect(engine: EngineDep, user_id: str = Query(..., description="Local user id")):
    """Redirect the user to the Microsoft consent screen."""
    url = engine.authorization_url(user_id)
    if url is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Microsoft integration is not configured",
        )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/callback")
async def callback(
    engine: EngineDep,
    config: ConfigDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """OAuth redirect target: link the account and send the user back to settings."""
    site_url = config.microsoft.site_url

    if error:
        logger.warning(f"Microsoft authorization returned error: {error}")
        return _settings_redirect(site_url, reason=error)
    if not code or not state:
        return _settings_redirect(site_url, reason="missing_code")

    try:
        user_id = await engine.complete_authorization(code, state)
    except OAuthError as e:
        logger.warning(f"Microsoft authorization failed: {e}")
        return _settings_redirect(site_url, reason=e.reason)
    except RemoteError as e:
        logger.error(f"Microsoft authorization failed: {e}")
        return _settings_redirect(site_url, reason="temporarily_unavailable")

    if user_id is None:
        return _settings_redirect(site_url, reason="not_configured")
    return _settings_redirect(site_url)


@router.post("/webhook")
async def webhook(request: Request, engine: EngineDep, validationToken: str | None = None):
    """
    Graph change-notification endpoint.

    Answers the subscription validation handshake by echoing the token, and
    acknowledges notifications immediately; processing happens in the background.
    """
    if validationToken is not None:
        return PlainTextResponse(validationToken)

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    accepted = engine.handle_notifications(payload if isinstance(payload, dict) else {})
    logger.debug(f"Accepted {accepted} change notification(s)")
    return Response(status_code=status.HTTP_202_ACCEPTED)


@router.post("/disconnect/{user_id}", response_model=DisconnectResponse)
async def disconnect(user_id: str, engine: EngineDep):
    """Unlink the user's Microsoft account."""
    return DisconnectResponse(disconnected=await engine.disconnect(user_id))


@router.get("/status/{user_id}", response_model=IntegrationStatusResponse)
async def integration_status(user_id: str, engine: EngineDep):
    """Connection state of the user's Microsoft account."""
    return IntegrationStatusResponse(**await engine.status(user_id))


@router.post("/sync/{user_id}", response_model=PullResponse)
async def sync_user(user_id: str, engine: EngineDep):
    """Pull the user's remote changes now."""
    stats = await engine.pull_user(user_id)
    return PullResponse(user_id=user_id, stats=stats)
