"""Session issuance, refresh-token rotation and revocation."""
from dataclasses import dataclass
import logging
import uuid

from vizlytics.exceptions import (
    ExpiredTokenError,
    GitHubAPIError,
    IdentityResolutionError,
    ReplayDetectedError,
)
from vizlytics.services.github import GitHubClient
from vizlytics.services.session_store import SessionRecord, SessionStore, utcnow
from vizlytics.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_in: int
    session: SessionRecord


class SessionService:
    """Turns an upstream GitHub token into a revocable application session."""

    def __init__(self, store: SessionStore, issuer: TokenIssuer, github: GitHubClient):
        self.store = store
        self.issuer = issuer
        self.github = github

    def create_session(self, upstream_token: str, ip: str | None, user_agent: str | None) -> IssuedTokens:
        """Resolve the GitHub identity, persist a new session and issue its first token pair.

        No record is written if the identity lookup fails.
        """
        try:
            user = self.github.get_user(upstream_token)
        except GitHubAPIError as exc:
            raise IdentityResolutionError(
                f"Failed to get user information from GitHub: {exc}",
                provider_unavailable=exc.provider_unavailable,
            ) from exc

        now = utcnow()
        record = SessionRecord(
            session_id=str(uuid.uuid4()),
            user_id=str(user.id),
            login=user.login,
            upstream_token=upstream_token,
            issued_at=now,
            access_expires_at=self.issuer.access_expiry(now),
            refresh_expires_at=self.issuer.refresh_expiry(now),
            issuing_ip=ip,
            issuing_user_agent=user_agent,
            name=user.name,
            email=user.email,
            avatar_url=user.avatar_url,
            last_used_at=now,
        )
        self.store.put(record)
        logger.info(f"Created session {record.session_id} for {record.login}")
        return self._issue(record)

    def rotate(self, presented_refresh_token: str, ip: str | None, user_agent: str | None) -> IssuedTokens:
        """Exchange a live refresh token for a new pair and kill the presented one.

        A refresh token that is revoked or belongs to an earlier generation is
        a replay: the whole session is revoked and ReplayDetectedError raised.
        """
        claims = self.issuer.decode_refresh_token(presented_refresh_token)
        record = self.store.get(claims.session_id)

        now = utcnow()
        if record.refresh_expires_at <= now and not record.revoked:
            raise ExpiredTokenError(f"Session {record.session_id} expired")

        if record.revoked or claims.generation != record.generation:
            raise self._replay_detected(record.session_id, claims.generation, record.generation)

        rotated = self.store.advance_generation(
            record.session_id,
            claims.generation,
            access_expires_at=self.issuer.access_expiry(now),
            refresh_expires_at=self.issuer.refresh_expiry(now),
            ip=ip,
            user_agent=user_agent,
        )
        if rotated is None:
            # Lost the compare-and-set to a concurrent rotation or logout.
            raise self._replay_detected(record.session_id, claims.generation, None)

        if (record.issuing_ip, record.issuing_user_agent) != (ip, user_agent):
            logger.info(
                f"Session {rotated.session_id} rotated from a new client "
                f"(ip {record.issuing_ip} -> {ip})"
            )
        return self._issue(rotated)

    def logout(self, session_id: str) -> None:
        """Revoke a session. Safe to call repeatedly."""
        if self.store.revoke(session_id):
            logger.info(f"Session {session_id} logged out")

    def logout_all(self, user_id: str) -> int:
        """Revoke every live session of a user."""
        revoked = self.store.revoke_all_for_user(user_id)
        logger.info(f"User {user_id} logged out from {revoked} session(s)")
        return revoked

    def list_sessions(self, user_id: str) -> list[SessionRecord]:
        return self.store.list_active_for_user(user_id)

    def _issue(self, record: SessionRecord) -> IssuedTokens:
        access_token, expires_in = self.issuer.issue_access_token(record)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=self.issuer.issue_refresh_token(record),
            access_expires_in=expires_in,
            session=record,
        )

    def _replay_detected(
        self, session_id: str, presented_generation: int, current_generation: int | None
    ) -> ReplayDetectedError:
        self.store.revoke(session_id)
        logger.warning(
            f"Refresh token replay on session {session_id} "
            f"(presented generation {presented_generation}, current {current_generation}); session revoked"
        )
        return ReplayDetectedError(f"Refresh token for session {session_id} was already used or revoked")
