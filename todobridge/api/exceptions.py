"""Exception handlers mapping engine errors to JSON responses."""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from todobridge.core.exceptions import (
    CredentialInvalid,
    CredentialMissing,
    OAuthError,
    RemoteNotFound,
    RemoteRejected,
    RemoteTransient,
    TodoBridgeError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[TodoBridgeError], int, str]] = [
    (CredentialMissing, status.HTTP_404_NOT_FOUND, "credential_missing"),
    (CredentialInvalid, status.HTTP_409_CONFLICT, "credential_invalid"),
    (OAuthError, status.HTTP_400_BAD_REQUEST, "oauth_error"),
    (RemoteTransient, status.HTTP_503_SERVICE_UNAVAILABLE, "remote_unavailable"),
    (RemoteNotFound, status.HTTP_502_BAD_GATEWAY, "remote_not_found"),
    (RemoteRejected, status.HTTP_502_BAD_GATEWAY, "remote_rejected"),
]


def status_for(exc: TodoBridgeError) -> tuple[int, str]:
    for error_type, status_code, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"


async def todobridge_exception_handler(request: Request, exc: TodoBridgeError) -> JSONResponse:
    """Render a TodoBridgeError as ``{"error": code, "detail": message}``."""
    status_code, code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status_code, content={"error": code, "detail": str(exc)})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error"},
    )
