"""Access-token lifecycle for linked Microsoft accounts."""

import logging
from datetime import timedelta

from todobridge.core.exceptions import (
    CredentialInvalid,
    CredentialMissing,
    RemoteRejected,
)
from todobridge.core.locks import KeyedLocks
from todobridge.core.models import Credential
from todobridge.sources.mstodo.oauth import OAuthClient
from todobridge.utils.datetime_utils import utc_now
from todobridge.utils.db import CredentialsDB

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Hands out access tokens that are valid for at least ``margin``.

    Refreshes are single-flight per user: concurrent callers queue on the
    user's lock and reuse whatever the first one stored. A rejected refresh
    marks the credential invalid, and every later call short-circuits with
    CredentialInvalid until the user authorizes again.
    """

    def __init__(
        self,
        credentials_db: CredentialsDB,
        oauth: OAuthClient,
        margin: timedelta = timedelta(minutes=5),
    ):
        self.credentials_db = credentials_db
        self.oauth = oauth
        self.margin = margin
        self._locks = KeyedLocks()

    def _is_fresh(self, credential: Credential) -> bool:
        return credential.expires_at > utc_now() + self.margin

    async def _load(self, user_id: str) -> Credential:
        credential = await self.credentials_db.get(user_id)
        if credential is None:
            raise CredentialMissing(user_id)
        if credential.is_invalid:
            raise CredentialInvalid(user_id, "awaiting re-authorization")
        return credential

    async def get_valid_access_token(self, user_id: str) -> str:
        """
        Return an access token for the user, refreshing it if needed.

        Raises:
            CredentialMissing: The user never linked an account
            CredentialInvalid: The refresh token was rejected (now or earlier)
            RemoteTransient: The token endpoint could not be reached
        """
        credential = await self._load(user_id)
        if self._is_fresh(credential):
            return credential.access_token

        async with self._locks.hold(user_id):
            # Another caller may have refreshed while we waited
            credential = await self._load(user_id)
            if self._is_fresh(credential):
                return credential.access_token

            logger.debug(f"Refreshing Microsoft access token for user {user_id}")
            try:
                tokens = await self.oauth.refresh(credential.refresh_token, scope=credential.scope)
            except RemoteRejected as e:
                logger.error(
                    f"Token refresh failed for user {user_id} (HTTP {e.status_code}); "
                    "re-authorization required"
                )
                await self.credentials_db.mark_invalid(user_id)
                raise CredentialInvalid(user_id, f"HTTP {e.status_code}") from e

            await self.credentials_db.update_tokens(
                user_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
                scope=tokens.scope,
            )
            logger.info(f"Refreshed Microsoft access token for user {user_id}")
            return tokens.access_token

    async def invalidate(self, user_id: str) -> None:
        """Drop the cached access token after Graph rejected it with 401."""
        await self.credentials_db.expire_access_token(user_id)
