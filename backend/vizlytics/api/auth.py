"""Authentication API endpoints."""
import logging
import secrets
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from vizlytics.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    Identity,
    authenticate_token,
    get_current_identity,
    get_github_client,
    get_optional_identity,
    get_request_ip,
    get_session_service,
    get_session_store,
    get_token_issuer,
    rate_limit,
)
from vizlytics.config import get_settings
from vizlytics.exceptions import (
    AuthError,
    GitHubAPIError,
    IdentityResolutionError,
    OAuthExchangeError,
)
from vizlytics.schemas.auth import (
    CurrentUserResponse,
    MessageResponse,
    SessionBootstrapResponse,
    SessionInfo,
    SessionUser,
    Token,
    TokenRefresh,
)
from vizlytics.services.github import GitHubClient, new_oauth_state
from vizlytics.services.session_store import SessionStore
from vizlytics.services.sessions import IssuedTokens, SessionService
from vizlytics.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()

STATE_COOKIE = "oauth_state"
REDIRECT_COOKIE = "auth_redirect"
FLOW_COOKIE_MAX_AGE = 10 * 60
DEFAULT_REDIRECT = "/login"


def set_auth_cookies(response: Response, tokens: IssuedTokens) -> None:
    """Issue secure HttpOnly access and refresh cookies."""
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
        max_age=tokens.access_expires_in,
    )
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
    )


def clear_auth_cookies(response: Response) -> None:
    """Clear access and refresh cookies."""
    for key in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            key=key,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def clear_flow_cookies(response: Response) -> None:
    for key in (STATE_COOKIE, REDIRECT_COOKIE):
        response.delete_cookie(key=key, path="/", secure=settings.cookie_secure, httponly=True)


def safe_redirect_target(redirect_uri: str | None) -> str | None:
    """Accept relative paths or URLs on the client origin; reject everything else."""
    if not redirect_uri:
        return None
    if redirect_uri.startswith("/") and not redirect_uri.startswith("//"):
        return redirect_uri
    parsed = urlparse(redirect_uri)
    client = urlparse(settings.client_url)
    if (parsed.scheme, parsed.netloc) == (client.scheme, client.netloc):
        return urlunparse(("", "", parsed.path or "/", parsed.params, parsed.query, ""))
    return None


def build_success_url(redirect_target: str | None) -> str:
    target = urlparse(urljoin(settings.client_url + "/", redirect_target or DEFAULT_REDIRECT))
    query = [(k, v) for k, v in parse_qsl(target.query) if k != "auth"]
    query.append(("auth", "success"))
    return urlunparse(target._replace(query=urlencode(query)))


def login_error_redirect(code: str) -> RedirectResponse:
    response = RedirectResponse(
        url=f"{settings.client_url}/login?{urlencode({'error': code})}",
        status_code=status.HTTP_302_FOUND,
    )
    clear_flow_cookies(response)
    return response


def auth_failed_response() -> JSONResponse:
    response = JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": "auth_failed"},
        headers={"WWW-Authenticate": "Bearer"},
    )
    clear_auth_cookies(response)
    return response


@router.get("/github")
def initiate_github_auth(
    redirect_uri: str | None = None,
    github: GitHubClient = Depends(get_github_client),
):
    """Redirect the browser to the GitHub consent page."""
    state = new_oauth_state()
    response = RedirectResponse(
        url=github.generate_authorization_url(state),
        status_code=status.HTTP_302_FOUND,
    )
    response.set_cookie(
        key=STATE_COOKIE,
        value=state,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
        max_age=FLOW_COOKIE_MAX_AGE,
    )

    redirect_target = safe_redirect_target(redirect_uri)
    if redirect_target:
        response.set_cookie(
            key=REDIRECT_COOKIE,
            value=redirect_target,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            path="/",
            max_age=FLOW_COOKIE_MAX_AGE,
        )
    elif redirect_uri:
        logger.warning(f"Ignoring off-origin redirect_uri: {redirect_uri[:200]!r}")

    return response


@router.get("/github/callback")
def github_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    github: GitHubClient = Depends(get_github_client),
    service: SessionService = Depends(get_session_service),
):
    """Finish the OAuth flow: exchange the code, open a session, set cookies."""
    if error:
        logger.error(f"GitHub OAuth error: {error} ({request.query_params.get('error_description')})")
        return login_error_redirect("github_oauth_error")

    if not code:
        logger.error("No authorization code received")
        return login_error_redirect("missing_code")

    expected_state = request.cookies.get(STATE_COOKIE)
    if not expected_state or not state or not secrets.compare_digest(expected_state.encode(), state.encode()):
        logger.warning("OAuth state mismatch on callback")
        return login_error_redirect("invalid_state")

    try:
        upstream_token = github.exchange_code_for_upstream_token(code, state)
        tokens = service.create_session(
            upstream_token,
            get_request_ip(request),
            request.headers.get("user-agent"),
        )
    except (OAuthExchangeError, IdentityResolutionError) as exc:
        if exc.provider_unavailable:
            logger.error(f"GitHub unavailable during login: {exc}")
            return login_error_redirect("github_unavailable")
        logger.warning(f"Login rejected: {exc.code} ({exc})")
        return login_error_redirect("auth_failed")

    response = RedirectResponse(
        url=build_success_url(safe_redirect_target(request.cookies.get(REDIRECT_COOKIE))),
        status_code=status.HTTP_302_FOUND,
    )
    set_auth_cookies(response, tokens)
    clear_flow_cookies(response)
    return response


@router.get("/session", response_model=SessionBootstrapResponse, response_model_exclude_none=True)
def get_session(
    request: Request,
    issuer: TokenIssuer = Depends(get_token_issuer),
    store: SessionStore = Depends(get_session_store),
):
    """Hand the cookie-held access token to client-side code.

    Performs the same verification as any authenticated request; it only
    echoes a token the browser already holds.
    """
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        return SessionBootstrapResponse(success=False)

    try:
        identity = authenticate_token(token, issuer)
        record = store.get(identity.session_id)
    except AuthError as exc:
        logger.info(f"Session bootstrap rejected: {exc.code}")
        return SessionBootstrapResponse(success=False)

    if record.revoked:
        logger.info(f"Session bootstrap rejected: session {record.session_id} revoked")
        return SessionBootstrapResponse(success=False)

    return SessionBootstrapResponse(
        success=True,
        token=token,
        user=SessionUser(
            id=identity.user_id,
            login=identity.login,
            name=record.name,
            email=record.email,
            avatar_url=record.avatar_url,
        ),
    )


@router.post(
    "/refresh",
    response_model=Token,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit(bucket="auth_refresh", limit=settings.refresh_rate_limit, per_seconds=60))],
)
def refresh_tokens(
    request: Request,
    response: Response,
    payload: TokenRefresh | None = None,
    service: SessionService = Depends(get_session_service),
):
    """Rotate the refresh token and issue a new access token."""
    body_token = payload.refresh_token if payload else None
    presented = request.cookies.get(REFRESH_COOKIE) or body_token
    if not presented:
        return auth_failed_response()

    try:
        tokens = service.rotate(presented, get_request_ip(request), request.headers.get("user-agent"))
    except AuthError as exc:
        logger.info(f"Token refresh rejected: {exc.code} ({exc})")
        return auth_failed_response()

    set_auth_cookies(response, tokens)
    return Token(
        access_token=tokens.access_token,
        expires_in=tokens.access_expires_in,
        refresh_token=tokens.refresh_token if presented == body_token else None,
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    identity: Identity | None = Depends(get_optional_identity),
    issuer: TokenIssuer = Depends(get_token_issuer),
    service: SessionService = Depends(get_session_service),
):
    """Revoke the current session and clear cookies. Always succeeds."""
    if identity:
        service.logout(identity.session_id)

    refresh_cookie = request.cookies.get(REFRESH_COOKIE)
    if refresh_cookie:
        try:
            service.logout(issuer.decode_refresh_token(refresh_cookie).session_id)
        except AuthError as exc:
            logger.debug(f"Ignoring unusable refresh cookie on logout: {exc.code}")

    clear_auth_cookies(response)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=MessageResponse)
def logout_all(
    response: Response,
    identity: Identity = Depends(get_current_identity),
    service: SessionService = Depends(get_session_service),
):
    """Revoke every session of the current user."""
    revoked = service.logout_all(identity.user_id)
    clear_auth_cookies(response)
    return MessageResponse(message=f"Logged out from {revoked} session(s)")


@router.get("/sessions", response_model=list[SessionInfo])
def list_sessions(
    identity: Identity = Depends(get_current_identity),
    service: SessionService = Depends(get_session_service),
):
    """List the current user's live sessions."""
    return [
        SessionInfo(
            id=record.session_id,
            issued_at=record.issued_at.isoformat(),
            last_used_at=record.last_used_at.isoformat() if record.last_used_at else None,
            refresh_expires_at=record.refresh_expires_at.isoformat(),
            issuing_ip=record.issuing_ip,
            issuing_user_agent=record.issuing_user_agent,
            current=record.session_id == identity.session_id,
        )
        for record in service.list_sessions(identity.user_id)
    ]


@router.get("/me", response_model=CurrentUserResponse)
def get_current_user(
    identity: Identity = Depends(get_current_identity),
    github: GitHubClient = Depends(get_github_client),
):
    """Fetch the current user's profile fresh from GitHub."""
    try:
        user = github.get_user(identity.upstream_token)
    except GitHubAPIError as exc:
        logger.error(f"Get current user error for {identity.login}: {exc}")
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="auth_failed")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to get current user")
    return CurrentUserResponse(user=user)
