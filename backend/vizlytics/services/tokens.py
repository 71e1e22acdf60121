"""Access and refresh token signing."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import uuid

from jose import ExpiredSignatureError, JWTError, jwt

from vizlytics.config import Settings
from vizlytics.exceptions import ExpiredTokenError, InvalidTokenError
from vizlytics.services.session_store import SessionRecord, utcnow


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    login: str
    session_id: str
    upstream_token: str = field(repr=False)
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    session_id: str
    generation: int
    expires_at: datetime


class TokenIssuer:
    """Signs and verifies the two token families.

    Access and refresh tokens use independent secrets, so a leaked access
    key cannot forge refresh tokens and vice versa.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def access_expiry(self, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + timedelta(minutes=self.settings.access_token_expire_minutes)

    def refresh_expiry(self, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + timedelta(days=self.settings.refresh_token_expire_days)

    def issue_access_token(self, record: SessionRecord) -> tuple[str, int]:
        """Create a JWT access token. Returns the token and its lifetime in seconds."""
        now = utcnow()
        to_encode = {
            "sub": record.user_id,
            "login": record.login,
            "sid": record.session_id,
            "gh": record.upstream_token,
            "iat": now,
            "exp": record.access_expires_at,
            "type": "access",
        }
        token = jwt.encode(to_encode, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        expires_in = max(int((record.access_expires_at - now).total_seconds()), 0)
        return token, expires_in

    def issue_refresh_token(self, record: SessionRecord) -> str:
        """Create a JWT refresh token bound to the record's current generation."""
        to_encode = {
            "sid": record.session_id,
            "gen": record.generation,
            "jti": str(uuid.uuid4()),
            "iat": utcnow(),
            "exp": record.refresh_expires_at,
            "type": "refresh",
        }
        return jwt.encode(to_encode, self.settings.jwt_refresh_secret, algorithm=self.settings.jwt_algorithm)

    def decode_access_token(self, token: str) -> AccessClaims:
        payload = self._decode(token, self.settings.jwt_secret, "access")
        user_id = payload.get("sub")
        login = payload.get("login")
        session_id = payload.get("sid")
        upstream_token = payload.get("gh")
        if not user_id or not login or not session_id or not upstream_token:
            raise InvalidTokenError("Access token is missing claims")
        return AccessClaims(
            user_id=user_id,
            login=login,
            session_id=session_id,
            upstream_token=upstream_token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def decode_refresh_token(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self.settings.jwt_refresh_secret, "refresh")
        session_id = payload.get("sid")
        generation = payload.get("gen")
        if not session_id or not isinstance(generation, int):
            raise InvalidTokenError("Refresh token is missing claims")
        return RefreshClaims(
            session_id=session_id,
            generation=generation,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        if not token:
            raise InvalidTokenError("Missing token")
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.settings.jwt_algorithm],
                options={"require_exp": True},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredTokenError(f"{expected_type.capitalize()} token expired") from exc
        except JWTError as exc:
            raise InvalidTokenError(f"Invalid {expected_type} token: {exc}") from exc

        if payload.get("type") != expected_type:
            raise InvalidTokenError("Invalid token type")
        return payload
