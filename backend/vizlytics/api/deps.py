"""Shared API dependencies and the request authenticator."""
from dataclasses import dataclass, field
import ipaddress
import logging

from fastapi import Depends, HTTPException, Request, status

from vizlytics.config import get_settings
from vizlytics.exceptions import AuthError, InvalidTokenError
from vizlytics.services.github import GitHubClient
from vizlytics.services.ratelimit import RateLimiter
from vizlytics.services.session_store import SessionStore
from vizlytics.services.sessions import SessionService
from vizlytics.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


@dataclass(frozen=True)
class Identity:
    """Decoded caller identity attached to authenticated requests."""

    user_id: str
    login: str
    session_id: str
    upstream_token: str = field(repr=False)


def get_session_store(request: Request) -> SessionStore:
    store = getattr(request.app.state, "session_store", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Session store not initialized")
    return store


def get_github_client(request: Request) -> GitHubClient:
    client = getattr(request.app.state, "github_client", None)
    if client is None:
        raise HTTPException(status_code=500, detail="GitHub client not initialized")
    return client


def get_token_issuer() -> TokenIssuer:
    return TokenIssuer(get_settings())


def get_session_service(
    store: SessionStore = Depends(get_session_store),
    issuer: TokenIssuer = Depends(get_token_issuer),
    github: GitHubClient = Depends(get_github_client),
) -> SessionService:
    return SessionService(store, issuer, github)


def get_limiter(request: Request) -> RateLimiter:
    rl = getattr(request.app.state, "rate_limiter", None)
    if rl is None:
        rl = RateLimiter()
        request.app.state.rate_limiter = rl
    return rl


def _parse_networks(spec: str) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    nets = []
    for item in spec.replace(",", " ").split():
        try:
            nets.append(ipaddress.ip_network(item, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid TRUSTED_PROXIES entry: {item!r}")
    return nets


def _parse_ip(value: str | None) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address((value or "").strip())
    except ValueError:
        return None


def get_request_ip(request: Request) -> str | None:
    """Client IP for session metadata and rate limiting.

    The first X-Forwarded-For hop is used only when the direct peer is a
    configured trusted proxy; otherwise the peer address is returned.
    """
    peer = request.client.host if request.client else None
    peer_ip = _parse_ip(peer)
    if peer_ip is not None:
        trusted = _parse_networks(get_settings().trusted_proxies)
        if any(peer_ip in net for net in trusted):
            forwarded = _parse_ip(request.headers.get("x-forwarded-for", "").split(",", 1)[0])
            if forwarded is not None:
                return str(forwarded)
    return peer


def extract_access_token(request: Request) -> str | None:
    """Bearer header first, then the httpOnly access-token cookie."""
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip() or None
    return request.cookies.get(ACCESS_COOKIE) or None


def authenticate_token(
    token: str | None,
    issuer: TokenIssuer,
    store: SessionStore | None = None,
) -> Identity:
    """Verify an access token and return the identity it carries.

    Only signature and expiry are checked unless a store is passed, in which
    case the session must also still exist and be live.
    """
    if not token:
        raise InvalidTokenError("Access token required")
    claims = issuer.decode_access_token(token)
    if store is not None:
        record = store.get(claims.session_id)
        if record.revoked:
            raise InvalidTokenError(f"Session {claims.session_id} is revoked")
    return Identity(
        user_id=claims.user_id,
        login=claims.login,
        session_id=claims.session_id,
        upstream_token=claims.upstream_token,
    )


def authenticate(request: Request, issuer: TokenIssuer, store: SessionStore | None = None) -> Identity:
    return authenticate_token(extract_access_token(request), issuer, store)


def _strict_store(request: Request) -> SessionStore | None:
    if not get_settings().strict_session_check:
        return None
    return get_session_store(request)


def get_current_identity(
    request: Request,
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> Identity:
    """Require a valid access token; attach the identity to `request.state`."""
    try:
        identity = authenticate(request, issuer, _strict_store(request))
    except AuthError as exc:
        logger.info(f"Rejected request to {request.url.path}: {exc.code} ({exc})")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="auth_failed",
            headers={"WWW-Authenticate": "Bearer"},
        )
    request.state.identity = identity
    return identity


def get_optional_identity(
    request: Request,
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> Identity | None:
    """Identity if a valid access token is present, otherwise None."""
    try:
        return authenticate(request, issuer, _strict_store(request))
    except AuthError as exc:
        logger.debug(f"No usable access token on {request.url.path}: {exc.code}")
        return None


def rate_limit(*, bucket: str, limit: int, per_seconds: int):
    def dep(request: Request, rl: RateLimiter = Depends(get_limiter)) -> None:
        key = f"{bucket}:{get_request_ip(request) or 'unknown'}"
        if not rl.allow(key, limit=limit, per_seconds=per_seconds):
            logger.warning(f"Rate limit exceeded for {key}")
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")

    return dep
