"""Session and token-lifecycle errors.

Every error here is terminal for the request that raised it. The API layer
collapses them into coarse client-facing codes; the specific kind is only
logged server side.
"""


class AuthError(Exception):
    """Base class for authentication failures."""

    code = "auth_failed"


class OAuthExchangeError(AuthError):
    """The GitHub authorization code could not be exchanged for a token."""

    code = "oauth_exchange_failed"

    def __init__(self, message: str, *, provider_unavailable: bool = False, provider_error: str | None = None):
        super().__init__(message)
        self.provider_unavailable = provider_unavailable
        self.provider_error = provider_error


class IdentityResolutionError(AuthError):
    """The GitHub user behind a freshly exchanged token could not be resolved."""

    code = "identity_resolution_failed"

    def __init__(self, message: str, *, provider_unavailable: bool = False):
        super().__init__(message)
        self.provider_unavailable = provider_unavailable


class InvalidTokenError(AuthError):
    """Malformed token, bad signature, wrong token type or missing claims."""

    code = "invalid_token"


class ExpiredTokenError(AuthError):
    """Token (or the session behind it) is past its expiry."""

    code = "expired_token"


class SessionNotFoundError(AuthError):
    """No session record exists for the presented session id."""

    code = "session_not_found"


class ReplayDetectedError(AuthError):
    """A superseded or revoked refresh token was presented again."""

    code = "replay_detected"


class GitHubAPIError(Exception):
    """A GitHub REST API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def provider_unavailable(self) -> bool:
        # No status means the request never got an answer.
        return self.status_code is None or self.status_code >= 500
