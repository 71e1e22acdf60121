"""GitHub API payload schemas."""
from pydantic import BaseModel


class GitHubUser(BaseModel):
    """Subset of the GitHub `/user` payload the dashboard uses."""

    id: int
    login: str
    name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    company: str | None = None
    location: str | None = None
    blog: str | None = None
    twitter_username: str | None = None
    public_repos: int = 0
    followers: int = 0
    following: int = 0
    created_at: str | None = None
    updated_at: str | None = None
