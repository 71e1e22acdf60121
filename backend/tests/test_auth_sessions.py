from datetime import timedelta
import logging
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from conftest import UPSTREAM_TOKEN
from vizlytics.api import deps
from vizlytics.api.auth import router as auth_router
from vizlytics.services.ratelimit import RateLimiter
from vizlytics.services.tokens import TokenIssuer


def _cookie_values(response) -> dict[str, str]:
    values = {}
    for header in response.headers.get_list("set-cookie"):
        name, value = header.split(";", 1)[0].split("=", 1)
        values[name] = value.strip('"')
    return values


def _set_cookie_header(response, cookie_name: str) -> str:
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{cookie_name}="):
            return header
    raise AssertionError(f"{cookie_name} not set")


@pytest.fixture
def client(store, github_client):
    app = FastAPI()
    app.include_router(auth_router, prefix="/api")
    app.state.session_store = store
    app.state.github_client = github_client
    app.state.rate_limiter = RateLimiter()
    return TestClient(app)


def _login(client: TestClient, state: str = "state-123", extra_cookies: str = "", user_agent: str = "pytest"):
    response = client.get(
        f"/api/auth/github/callback?code=code-abc&state={state}",
        headers={"Cookie": f"oauth_state={state}{extra_cookies}", "User-Agent": user_agent},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return response


def _bearer(response) -> dict[str, str]:
    return {"Authorization": f"Bearer {_cookie_values(response)['access_token']}"}


def test_initiate_redirects_to_github_with_state_cookie(client):
    response = client.get("/api/auth/github?redirect_uri=/dashboard", follow_redirects=False)

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == "github.com"
    cookies = _cookie_values(response)
    assert parse_qs(location.query)["state"] == [cookies["oauth_state"]]
    assert cookies["auth_redirect"] == "/dashboard"
    assert "HttpOnly" in _set_cookie_header(response, "oauth_state")


def test_initiate_ignores_off_origin_redirect(client):
    response = client.get(
        "/api/auth/github?redirect_uri=https://evil.example.com/steal",
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert "auth_redirect" not in _cookie_values(response)


def test_rejected_redirect_is_logged_on_one_bounded_line(client, caplog):
    forged = "https://evil.example.com/\n2024-01-01 INFO [vizlytics] admin logged in" + "x" * 1000

    with caplog.at_level(logging.WARNING, logger="vizlytics.api.auth"):
        client.get("/api/auth/github", params={"redirect_uri": forged}, follow_redirects=False)

    [message] = [r.getMessage() for r in caplog.records if "off-origin" in r.getMessage()]
    assert "\n" not in message
    assert len(message) < 300

def test_callback_sets_secure_httponly_cookies(client, store, github_api):
    response = _login(client)

    assert response.headers["location"] == "http://localhost:3000/login?auth=success"
    cookies = _cookie_values(response)
    assert cookies["access_token"]
    assert cookies["refresh_token"]
    for name in ("access_token", "refresh_token"):
        set_cookie = _set_cookie_header(response, name)
        assert "HttpOnly" in set_cookie
        assert "Secure" in set_cookie
        assert "samesite=lax" in set_cookie.lower()
    assert len(store.list_active_for_user("4242")) == 1


def test_callback_honours_stored_redirect(client, github_api):
    response = _login(client, extra_cookies="; auth_redirect=/dashboard")

    assert response.headers["location"] == "http://localhost:3000/dashboard?auth=success"


def test_callback_rejects_state_mismatch(client, store, github_api):
    response = client.get(
        "/api/auth/github/callback?code=code-abc&state=forged",
        headers={"Cookie": "oauth_state=expected"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == "http://localhost:3000/login?error=invalid_state"
    assert not github_api.routes["github_token"].called
    assert store.list_active_for_user("4242") == []


def test_callback_reports_provider_error_coarsely(client):
    response = client.get(
        "/api/auth/github/callback?error=access_denied&error_description=The+user+denied",
        follow_redirects=False,
    )

    assert response.headers["location"] == "http://localhost:3000/login?error=github_oauth_error"


def test_callback_rejected_code(client, github_api):
    github_api.routes["github_token"].return_value = httpx.Response(
        200, json={"error": "bad_verification_code", "error_description": "The code passed is incorrect"}
    )

    response = _login(client)

    assert response.headers["location"] == "http://localhost:3000/login?error=auth_failed"
    assert "incorrect" not in response.headers["location"]
    assert "access_token" not in _cookie_values(response)


def test_callback_provider_outage(client, github_api):
    github_api.routes["github_token"].return_value = httpx.Response(503)

    response = _login(client)

    assert response.headers["location"] == "http://localhost:3000/login?error=github_unavailable"


def test_session_bootstrap_echoes_cookie_token(client, github_api):
    login = _login(client)
    access_token = _cookie_values(login)["access_token"]

    response = client.get("/api/auth/session", headers={"Cookie": f"access_token={access_token}"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["token"] == access_token
    assert data["user"] == {
        "id": "4242",
        "login": "octocat",
        "name": "The Octocat",
        "email": "octocat@example.com",
        "avatar_url": "https://avatars.example.com/u/4242",
    }


def test_session_bootstrap_without_session(client):
    assert client.get("/api/auth/session").json() == {"success": False}
    assert client.get(
        "/api/auth/session", headers={"Cookie": "access_token=not-a-jwt"}
    ).json() == {"success": False}


def test_session_bootstrap_after_logout(client, github_api):
    login = _login(client)
    access_token = _cookie_values(login)["access_token"]
    client.post("/api/auth/logout", headers=_bearer(login))

    response = client.get("/api/auth/session", headers={"Cookie": f"access_token={access_token}"})

    assert response.json() == {"success": False}


def test_refresh_rotates_session_and_rejects_replay(client, store, github_api):
    login = _login(client)
    old_cookie = _cookie_values(login)["refresh_token"]

    refresh_response = client.post(
        "/api/auth/refresh",
        headers={"Cookie": f"refresh_token={old_cookie}"},
    )
    assert refresh_response.status_code == 200
    body = refresh_response.json()
    assert body["access_token"]
    assert body["token_type"] == "bearer"
    assert "refresh_token" not in body
    new_cookie = _cookie_values(refresh_response)["refresh_token"]
    assert new_cookie != old_cookie

    replay_response = client.post(
        "/api/auth/refresh",
        headers={"Cookie": f"refresh_token={old_cookie}"},
    )
    assert replay_response.status_code == 401
    assert replay_response.json() == {"detail": "auth_failed"}
    assert _cookie_values(replay_response)["refresh_token"] == ""

    after_replay = client.post(
        "/api/auth/refresh",
        headers={"Cookie": f"refresh_token={new_cookie}"},
    )
    assert after_replay.status_code == 401
    assert store.list_active_for_user("4242") == []


def test_refresh_via_body_returns_new_refresh_token(client, github_api):
    login = _login(client)
    refresh_token = _cookie_values(login)["refresh_token"]

    response = client.post("/api/auth/refresh", json={"refresh_token": refresh_token})

    assert response.status_code == 200
    body = response.json()
    assert body["refresh_token"] != refresh_token
    assert body["refresh_token"] == _cookie_values(response)["refresh_token"]


def test_refresh_ignores_forwarded_for_from_untrusted_peer(client, store, github_api):
    login = _login(client)
    refresh_token = _cookie_values(login)["refresh_token"]

    response = client.post(
        "/api/auth/refresh",
        headers={"Cookie": f"refresh_token={refresh_token}", "X-Forwarded-For": "5.6.7.8"},
    )

    assert response.status_code == 200
    [record] = store.list_active_for_user("4242")
    assert record.issuing_ip == "testclient"


def test_refresh_without_token(client):
    response = client.post("/api/auth/refresh")

    assert response.status_code == 401


def test_refresh_is_rate_limited(client, settings):
    statuses = [client.post("/api/auth/refresh").status_code for _ in range(settings.refresh_rate_limit + 1)]

    assert statuses[:-1] == [401] * settings.refresh_rate_limit
    assert statuses[-1] == 429


def test_refresh_rate_limit_not_reset_by_forwarded_for(client, settings):
    statuses = [
        client.post("/api/auth/refresh", headers={"X-Forwarded-For": f"10.0.0.{i}"}).status_code
        for i in range(3 * settings.refresh_rate_limit)
    ]

    assert statuses[: settings.refresh_rate_limit] == [401] * settings.refresh_rate_limit
    assert set(statuses[settings.refresh_rate_limit:]) == {429}
    assert len(client.app.state.rate_limiter) == 1


def _request(peer: str, forwarded_for: str | None = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded_for.encode())] if forwarded_for else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "client": (peer, 4321)})


def test_request_ip_uses_forwarded_for_only_behind_trusted_proxy(settings, monkeypatch):
    behind_proxy = settings.model_copy(update={"trusted_proxies": "10.0.0.0/8, 127.0.0.1"})
    monkeypatch.setattr(deps, "get_settings", lambda: behind_proxy)

    assert deps.get_request_ip(_request("10.1.2.3", "5.6.7.8, 10.1.2.3")) == "5.6.7.8"
    assert deps.get_request_ip(_request("127.0.0.1", "5.6.7.8")) == "5.6.7.8"
    assert deps.get_request_ip(_request("203.0.113.9", "5.6.7.8")) == "203.0.113.9"
    assert deps.get_request_ip(_request("10.1.2.3", "not-an-ip")) == "10.1.2.3"
    assert deps.get_request_ip(_request("10.1.2.3")) == "10.1.2.3"


def test_request_ip_ignores_forwarded_for_by_default(settings):
    assert settings.trusted_proxies == ""
    assert deps.get_request_ip(_request("10.1.2.3", "5.6.7.8")) == "10.1.2.3"


def test_logout_is_idempotent_and_clears_cookies(client, store, github_api):
    login = _login(client)
    headers = _bearer(login)
    refresh_cookie = _cookie_values(login)["refresh_token"]

    first = client.post("/api/auth/logout", headers=headers)
    second = client.post("/api/auth/logout", headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert _cookie_values(first)["access_token"] == ""
    assert _cookie_values(first)["refresh_token"] == ""
    assert store.list_active_for_user("4242") == []

    refresh = client.post("/api/auth/refresh", headers={"Cookie": f"refresh_token={refresh_cookie}"})
    assert refresh.status_code == 401


def test_logout_without_credentials_still_succeeds(client):
    response = client.post("/api/auth/logout")

    assert response.status_code == 200


def test_logout_revokes_session_from_refresh_cookie(client, store, github_api):
    login = _login(client)
    refresh_cookie = _cookie_values(login)["refresh_token"]

    response = client.post("/api/auth/logout", headers={"Cookie": f"refresh_token={refresh_cookie}"})

    assert response.status_code == 200
    assert store.list_active_for_user("4242") == []


def test_logout_all_requires_authentication(client):
    response = client.post("/api/auth/logout-all")

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_logout_all_revokes_every_session(client, store, github_api):
    first = _login(client, user_agent="laptop")
    _login(client, user_agent="phone")
    assert len(store.list_active_for_user("4242")) == 2

    response = client.post("/api/auth/logout-all", headers=_bearer(first))

    assert response.status_code == 200
    assert store.list_active_for_user("4242") == []


def test_sessions_listing_marks_current_and_hides_tokens(client, github_api):
    first = _login(client, user_agent="laptop")
    _login(client, user_agent="phone")

    response = client.get("/api/auth/sessions", headers=_bearer(first))

    assert response.status_code == 200
    sessions = response.json()
    assert len(sessions) == 2
    assert [s["current"] for s in sessions].count(True) == 1
    current = next(s for s in sessions if s["current"])
    assert current["issuing_user_agent"] == "laptop"
    assert UPSTREAM_TOKEN not in response.text


def test_access_cookie_authenticates_without_bearer(client, github_api):
    login = _login(client)
    access_token = _cookie_values(login)["access_token"]

    response = client.get("/api/auth/sessions", headers={"Cookie": f"access_token={access_token}"})

    assert response.status_code == 200


def test_expired_access_token_is_rejected(client, store, settings, github_api):
    _login(client)
    [record] = store.list_active_for_user("4242")
    record.access_expires_at = record.issued_at - timedelta(minutes=1)
    expired_token, _ = TokenIssuer(settings).issue_access_token(record)

    response = client.get("/api/auth/sessions", headers={"Authorization": f"Bearer {expired_token}"})

    assert response.status_code == 401
    assert response.json() == {"detail": "auth_failed"}


def test_revoked_session_access_token_still_valid_until_expiry(client, github_api):
    login = _login(client)
    headers = _bearer(login)
    client.post("/api/auth/logout", headers=headers)

    response = client.get("/api/auth/sessions", headers=headers)

    assert response.status_code == 200


def test_strict_mode_rejects_revoked_session(client, settings, monkeypatch, github_api):
    strict = settings.model_copy(update={"strict_session_check": True})
    monkeypatch.setattr(deps, "get_settings", lambda: strict)
    login = _login(client)
    headers = _bearer(login)
    assert client.get("/api/auth/sessions", headers=headers).status_code == 200

    client.post("/api/auth/logout", headers=headers)

    assert client.get("/api/auth/sessions", headers=headers).status_code == 401


def test_me_returns_fresh_github_profile(client, github_api):
    login = _login(client)

    response = client.get("/api/auth/me", headers=_bearer(login))

    assert response.status_code == 200
    assert response.json()["user"]["login"] == "octocat"
    assert github_api.routes["github_user"].calls.last.request.headers["authorization"] == f"Bearer {UPSTREAM_TOKEN}"


def test_me_reports_github_outage(client, github_api):
    login = _login(client)
    github_api.routes["github_user"].return_value = httpx.Response(500)

    response = client.get("/api/auth/me", headers=_bearer(login))

    assert response.status_code == 502
