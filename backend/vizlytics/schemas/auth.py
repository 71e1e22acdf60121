"""Authentication schemas."""
from pydantic import BaseModel

from vizlytics.schemas.github import GitHubUser


class Token(BaseModel):
    """Token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str | None = None  # Only echoed when the client sent it in the body


class TokenRefresh(BaseModel):
    """Token refresh request."""

    refresh_token: str | None = None


class SessionUser(BaseModel):
    """Profile snapshot returned by the session bootstrap."""

    id: str
    login: str
    name: str | None = None
    email: str | None = None
    avatar_url: str | None = None


class SessionBootstrapResponse(BaseModel):
    """Session bootstrap response; only `success` is set on failure."""

    success: bool
    token: str | None = None
    user: SessionUser | None = None


class SessionInfo(BaseModel):
    """Active session listing entry. Never carries token material."""

    id: str
    issued_at: str
    last_used_at: str | None = None
    refresh_expires_at: str
    issuing_ip: str | None = None
    issuing_user_agent: str | None = None
    current: bool = False


class CurrentUserResponse(BaseModel):
    """Fresh GitHub profile of the authenticated user."""

    user: GitHubUser


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
