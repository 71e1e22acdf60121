import os
import sys

import httpx
import pytest
import respx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("JWT_SECRET", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "fedcba9876543210fedcba9876543210fedcba9876543210fedcba9876543210")
os.environ.setdefault("GITHUB_CLIENT_ID", "test-client-id")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SESSION_STORE", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CLIENT_URL", "http://localhost:3000")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from vizlytics.config import get_settings
from vizlytics.database import Base
from vizlytics.models.auth import AuthSession  # noqa: F401
from vizlytics.services.github import GitHubClient
from vizlytics.services.session_store import InMemorySessionStore, SqlSessionStore
from vizlytics.services.sessions import SessionService
from vizlytics.services.tokens import TokenIssuer

GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
UPSTREAM_TOKEN = "gho_upstream_token"

GITHUB_USER = {
    "id": 4242,
    "login": "octocat",
    "name": "The Octocat",
    "email": "octocat@example.com",
    "avatar_url": "https://avatars.example.com/u/4242",
    "public_repos": 8,
    "followers": 20,
    "following": 1,
}


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def github_api():
    with respx.mock(assert_all_called=False) as mock:
        mock.post(GITHUB_TOKEN_URL, name="github_token").mock(
            return_value=httpx.Response(200, json={"access_token": UPSTREAM_TOKEN, "token_type": "bearer"})
        )
        mock.get(GITHUB_USER_URL, name="github_user").mock(
            return_value=httpx.Response(200, json=GITHUB_USER)
        )
        yield mock


@pytest.fixture
def github_client(settings):
    client = GitHubClient(settings)
    yield client
    client.close()


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture(params=["memory", "database"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemorySessionStore()
        return

    engine = create_engine(
        f"sqlite:///{tmp_path / 'sessions.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    sql_store = SqlSessionStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    yield sql_store
    sql_store.close()


@pytest.fixture
def service(store, issuer, github_client):
    return SessionService(store, issuer, github_client)
