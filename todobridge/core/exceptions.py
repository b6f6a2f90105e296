"""Exception hierarchy for the sync engine."""


class TodoBridgeError(Exception):
    """Base class for all TodoBridge errors."""


class CredentialMissing(TodoBridgeError):
    """The user has no linked Microsoft account."""

    def __init__(self, user_id: str):
        super().__init__(f"No Microsoft credential for user {user_id}")
        self.user_id = user_id


class CredentialInvalid(TodoBridgeError):
    """The refresh token was rejected; the user must authorize again."""

    def __init__(self, user_id: str, reason: str = "refresh failed"):
        super().__init__(f"Microsoft credential for user {user_id} is invalid: {reason}")
        self.user_id = user_id
        self.reason = reason


class OAuthError(TodoBridgeError):
    """Authorization-code exchange or state verification failed."""

    def __init__(self, message: str, reason: str = "token_exchange"):
        super().__init__(message)
        self.reason = reason


class RemoteError(TodoBridgeError):
    """A Microsoft Graph call failed."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteTransient(RemoteError):
    """Network error, timeout, throttling or server error. Retry on the next trigger."""


class RemoteUnauthorized(RemoteTransient):
    """Graph answered 401; the cached access token is discarded."""


class RemoteNotFound(RemoteError):
    """Graph answered 404."""


class RemoteRejected(RemoteError):
    """Graph rejected the request (4xx other than 401/404). Not retried."""


def classify_status(status_code: int) -> type[RemoteError] | None:
    """Map an HTTP status code to the error kind it represents (None for 2xx)."""
    if 200 <= status_code < 300:
        return None
    if status_code == 401:
        return RemoteUnauthorized
    if status_code == 404:
        return RemoteNotFound
    if status_code == 429 or status_code >= 500:
        return RemoteTransient
    if 400 <= status_code < 500:
        return RemoteRejected
    return RemoteTransient
