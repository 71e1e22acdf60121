"""GitHub OAuth code exchange and REST identity lookups."""
import logging
import secrets
from urllib.parse import urlencode

import httpx

from vizlytics.config import Settings
from vizlytics.exceptions import GitHubAPIError, OAuthExchangeError
from vizlytics.schemas.github import GitHubUser

logger = logging.getLogger(__name__)


def new_oauth_state() -> str:
    """Generate an unguessable OAuth `state` nonce."""
    return secrets.token_hex(16)


class GitHubClient:
    """Thin synchronous client for the GitHub OAuth and REST endpoints.

    Every call has a finite timeout and fails closed. Nothing is retried:
    authorization codes are single-use, so a failed exchange must surface
    immediately and the user restarts the login flow.
    """

    def __init__(self, settings: Settings, http_client: httpx.Client | None = None):
        self.settings = settings
        self._http = http_client or httpx.Client(
            timeout=settings.github_timeout_seconds,
            headers={"User-Agent": settings.app_name},
        )

    def close(self) -> None:
        self._http.close()

    def generate_authorization_url(self, state: str) -> str:
        """Build the GitHub consent URL that embeds `state`."""
        params = {
            "client_id": self.settings.github_client_id,
            "redirect_uri": self.settings.github_callback_url,
            "scope": self.settings.github_oauth_scope,
            "state": state,
        }
        return f"{self.settings.github_authorize_url}?{urlencode(params)}"

    def exchange_code_for_upstream_token(self, code: str, state: str | None = None) -> str:
        """Exchange an authorization code for a GitHub access token."""
        logger.info(f"Exchanging authorization code {code[:6]}... with GitHub")
        try:
            response = self._http.post(
                self.settings.github_token_url,
                json={
                    "client_id": self.settings.github_client_id,
                    "client_secret": self.settings.github_client_secret,
                    "code": code,
                    "state": state,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise OAuthExchangeError("GitHub token endpoint timed out", provider_unavailable=True) from exc
        except httpx.HTTPError as exc:
            raise OAuthExchangeError(f"GitHub token endpoint unreachable: {exc}", provider_unavailable=True) from exc

        if response.status_code >= 500:
            raise OAuthExchangeError(
                f"GitHub token endpoint returned {response.status_code}",
                provider_unavailable=True,
            )
        if response.is_error:
            raise OAuthExchangeError(f"GitHub token endpoint returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise OAuthExchangeError("GitHub token endpoint returned a non-JSON body", provider_unavailable=True) from exc

        if data.get("error"):
            raise OAuthExchangeError(
                f"GitHub rejected the authorization code: {data.get('error_description') or data['error']}",
                provider_error=data["error"],
            )

        access_token = data.get("access_token")
        if not access_token:
            raise OAuthExchangeError("No access token received from GitHub")

        return access_token

    def get_user(self, upstream_token: str) -> GitHubUser:
        """Fetch the profile of the user owning `upstream_token`."""
        try:
            response = self._http.get(
                f"{self.settings.github_api_url}/user",
                headers={
                    "Accept": "application/vnd.github+json",
                    "Authorization": f"Bearer {upstream_token}",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            )
        except httpx.HTTPError as exc:
            raise GitHubAPIError(f"GitHub user lookup failed: {exc}") from exc

        if response.is_error:
            raise GitHubAPIError(
                f"GitHub user lookup returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return GitHubUser.model_validate(response.json())
        except ValueError as exc:
            raise GitHubAPIError("GitHub user lookup returned an unexpected body", status_code=response.status_code) from exc
