"""OAuth2 client for the Microsoft identity platform.

Covers the authorization-code and refresh-token grants, plus the signed
``state`` round-tripped through the consent screen and the per-user
``clientState`` attached to webhook subscriptions.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

import httpx
import jwt

from todobridge.core.config import MicrosoftConfig
from todobridge.core.exceptions import OAuthError, RemoteRejected, RemoteTransient
from todobridge.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

STATE_PURPOSE = "microsoft_oauth"
STATE_TTL = timedelta(minutes=10)


@dataclass
class TokenResponse:
    """Token pair returned by the token endpoint."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str

    @classmethod
    def from_payload(
        cls,
        payload: dict,
        *,
        previous_refresh_token: str = "",
        previous_scope: str = "",
    ) -> "TokenResponse":
        # Microsoft may omit refresh_token/scope on refresh; keep the old ones then
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=utc_now() + timedelta(seconds=int(payload.get("expires_in", 3600))),
            scope=payload.get("scope") or previous_scope,
        )


class OAuthClient:
    """Talks to the Microsoft token endpoint on behalf of the configured app."""

    def __init__(self, config: MicrosoftConfig, http_client: httpx.AsyncClient | None = None):
        """
        Initialize the OAuth client.

        Args:
            config: Microsoft integration settings
            http_client: Optional preconfigured client (tests inject a MockTransport)
        """
        self.config = config
        self.client_id = config.client_id or ""
        self.client_secret = config.get_client_secret() or ""
        self._client = http_client or httpx.AsyncClient(timeout=config.request_timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    # State handling

    def sign_state(self, user_id: str) -> str:
        """Signed, short-lived state binding the consent round-trip to a user."""
        now = utc_now()
        payload = {
            "sub": user_id,
            "purpose": STATE_PURPOSE,
            "iat": now,
            "exp": now + STATE_TTL,
        }
        return jwt.encode(payload, self.config.state_secret, algorithm="HS256")

    def verify_state(self, state: str) -> str:
        """Return the user id carried by a state token.

        Raises:
            OAuthError: If the token is forged, expired or not meant for this flow
        """
        try:
            payload = jwt.decode(state, self.config.state_secret, algorithms=["HS256"])
        except jwt.PyJWTError as e:
            raise OAuthError(f"Invalid OAuth state: {e}", reason="invalid_state") from e

        if payload.get("purpose") != STATE_PURPOSE or not payload.get("sub"):
            raise OAuthError("OAuth state has wrong purpose", reason="invalid_state")
        return payload["sub"]

    def client_state_for(self, user_id: str) -> str:
        """Secret echoed by Graph in every change notification for this user."""
        digest = hmac.new(
            self.config.state_secret.encode(), user_id.encode(), hashlib.sha256
        ).hexdigest()
        return digest[:64]

    # Grants

    def authorization_url(self, user_id: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.config.effective_redirect_uri,
            "scope": " ".join(self.config.scopes),
            "response_mode": "query",
            "state": self.sign_state(user_id),
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def _token_request(self, data: dict) -> httpx.Response:
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": " ".join(self.config.scopes),
            **data,
        }
        try:
            return await self._client.post(self.config.token_url, data=form)
        except httpx.TimeoutException as e:
            raise RemoteTransient(f"Token endpoint timed out: {e}") from e
        except httpx.TransportError as e:
            raise RemoteTransient(f"Token endpoint unreachable: {e}") from e

    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Redeem an authorization code.

        Raises:
            OAuthError: If Microsoft rejects the code
            RemoteTransient: On network errors or server-side failures
        """
        response = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.effective_redirect_uri,
            }
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise RemoteTransient(
                f"Token exchange failed: HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        if response.status_code != 200:
            logger.error(f"Microsoft token exchange failed: HTTP {response.status_code}")
            raise OAuthError(f"Microsoft token exchange failed: {response.text}")

        return TokenResponse.from_payload(response.json())

    async def refresh(self, refresh_token: str, *, scope: str = "") -> TokenResponse:
        """
        Run a refresh-token grant.

        Raises:
            RemoteRejected: If Microsoft answers with an error (the grant is dead)
            RemoteTransient: On network errors, throttling or server-side failures
        """
        response = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise RemoteTransient(
                f"Token refresh failed: HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        if response.status_code != 200:
            raise RemoteRejected(
                f"Token refresh rejected: HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        return TokenResponse.from_payload(
            response.json(), previous_refresh_token=refresh_token, previous_scope=scope
        )

    async def get_user_email(self, access_token: str) -> str | None:
        """Address of the signed-in Microsoft account, None if unavailable."""
        try:
            response = await self._client.get(
                f"{self.config.graph_url}/me",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Could not fetch Microsoft account profile: {e}")
            return None
        if response.status_code != 200:
            return None
        data = response.json()
        return data.get("mail") or data.get("userPrincipalName")
