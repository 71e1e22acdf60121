"""Session records and the stores that persist them."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
import threading

from sqlalchemy.orm import sessionmaker

from vizlytics.config import Settings
from vizlytics.database import get_db_context
from vizlytics.exceptions import SessionNotFoundError
from vizlytics.models.auth import AuthSession

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    """Server-side record binding a user, an upstream credential and a refresh generation."""

    session_id: str
    user_id: str
    login: str
    upstream_token: str = field(repr=False)
    issued_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
    issuing_ip: str | None = None
    issuing_user_agent: str | None = None
    name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    generation: int = 0
    revoked: bool = False
    revoked_at: datetime | None = None
    last_used_at: datetime | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.revoked and self.refresh_expires_at > (now or utcnow())


class SessionStore(ABC):
    """Keyed session storage.

    Implementations only need single-record atomicity: rotation touches one
    session at a time, through `advance_generation`.
    """

    @abstractmethod
    def put(self, record: SessionRecord) -> None:
        """Insert or replace a session record."""

    @abstractmethod
    def get(self, session_id: str) -> SessionRecord:
        """Return a copy of the record, or raise SessionNotFoundError."""

    @abstractmethod
    def revoke(self, session_id: str) -> bool:
        """Mark a session revoked. Returns True if this call revoked it."""

    @abstractmethod
    def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every live session of a user. Returns how many were revoked."""

    @abstractmethod
    def advance_generation(
        self,
        session_id: str,
        expected_generation: int,
        *,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
        ip: str | None,
        user_agent: str | None,
    ) -> SessionRecord | None:
        """Compare-and-set the refresh generation.

        Returns the updated record, or None when the session is revoked or
        its generation is no longer `expected_generation`.
        """

    @abstractmethod
    def list_active_for_user(self, user_id: str) -> list[SessionRecord]:
        """Live (non-revoked, non-expired) sessions of a user, newest first."""

    @abstractmethod
    def purge_expired(self, now: datetime | None = None) -> int:
        """Drop records whose refresh expiry has passed."""

    def close(self) -> None:
        """Release any resources held by the store."""


class InMemorySessionStore(SessionStore):
    """Process-lifetime store backed by a dict."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: SessionRecord) -> None:
        with self._lock:
            self._records[record.session_id] = replace(record)

    def get(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            return replace(record)

    def revoke(self, session_id: str) -> bool:
        with self._lock:
            record = self._records.get(session_id)
            if record is None or record.revoked:
                return False
            now = utcnow()
            record.revoked = True
            record.revoked_at = now
            record.last_used_at = now
            return True

    def revoke_all_for_user(self, user_id: str) -> int:
        now = utcnow()
        revoked = 0
        with self._lock:
            for record in self._records.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    record.last_used_at = now
                    revoked += 1
        return revoked

    def advance_generation(
        self,
        session_id: str,
        expected_generation: int,
        *,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
        ip: str | None,
        user_agent: str | None,
    ) -> SessionRecord | None:
        with self._lock:
            record = self._records.get(session_id)
            if record is None or record.revoked or record.generation != expected_generation:
                return None
            record.generation += 1
            record.access_expires_at = access_expires_at
            record.refresh_expires_at = refresh_expires_at
            record.issuing_ip = ip
            record.issuing_user_agent = user_agent
            record.last_used_at = utcnow()
            return replace(record)

    def list_active_for_user(self, user_id: str) -> list[SessionRecord]:
        now = utcnow()
        with self._lock:
            records = [replace(r) for r in self._records.values() if r.user_id == user_id and r.is_active(now)]
        return sorted(records, key=lambda r: r.issued_at, reverse=True)

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self._lock:
            expired = [sid for sid, r in self._records.items() if r.refresh_expires_at <= now]
            for sid in expired:
                del self._records[sid]
        return len(expired)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _record_from_row(row: AuthSession) -> SessionRecord:
    return SessionRecord(
        session_id=row.id,
        user_id=row.user_id,
        login=row.login,
        upstream_token=row.upstream_token,
        issued_at=_from_iso(row.issued_at),
        access_expires_at=_from_iso(row.access_expires_at),
        refresh_expires_at=_from_iso(row.refresh_expires_at),
        issuing_ip=row.issuing_ip,
        issuing_user_agent=row.issuing_user_agent,
        name=row.name,
        email=row.email,
        avatar_url=row.avatar_url,
        generation=row.generation,
        revoked=bool(row.revoked),
        revoked_at=_from_iso(row.revoked_at),
        last_used_at=_from_iso(row.last_used_at),
    )


class SqlSessionStore(SessionStore):
    """SQLAlchemy-backed store using the `auth_sessions` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def close(self) -> None:
        engine = self._session_factory.kw.get("bind")
        if engine is not None:
            engine.dispose()

    def put(self, record: SessionRecord) -> None:
        with get_db_context(self._session_factory) as db:
            db.merge(AuthSession(
                id=record.session_id,
                user_id=record.user_id,
                login=record.login,
                name=record.name,
                email=record.email,
                avatar_url=record.avatar_url,
                upstream_token=record.upstream_token,
                generation=record.generation,
                issued_at=_to_iso(record.issued_at),
                access_expires_at=_to_iso(record.access_expires_at),
                refresh_expires_at=_to_iso(record.refresh_expires_at),
                revoked=record.revoked,
                revoked_at=_to_iso(record.revoked_at),
                last_used_at=_to_iso(record.last_used_at),
                issuing_ip=record.issuing_ip,
                issuing_user_agent=record.issuing_user_agent,
            ))

    def get(self, session_id: str) -> SessionRecord:
        with get_db_context(self._session_factory) as db:
            row = db.query(AuthSession).filter(AuthSession.id == session_id).first()
            if row is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            return _record_from_row(row)

    def revoke(self, session_id: str) -> bool:
        now = _to_iso(utcnow())
        with get_db_context(self._session_factory) as db:
            updated = db.query(AuthSession).filter(
                AuthSession.id == session_id,
                AuthSession.revoked.is_(False),
            ).update(
                {"revoked": True, "revoked_at": now, "last_used_at": now},
                synchronize_session=False,
            )
        return updated == 1

    def revoke_all_for_user(self, user_id: str) -> int:
        now = _to_iso(utcnow())
        with get_db_context(self._session_factory) as db:
            return db.query(AuthSession).filter(
                AuthSession.user_id == user_id,
                AuthSession.revoked.is_(False),
            ).update(
                {"revoked": True, "revoked_at": now, "last_used_at": now},
                synchronize_session=False,
            )

    def advance_generation(
        self,
        session_id: str,
        expected_generation: int,
        *,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
        ip: str | None,
        user_agent: str | None,
    ) -> SessionRecord | None:
        with get_db_context(self._session_factory) as db:
            # Single conditional UPDATE; the row count decides the race.
            updated = db.query(AuthSession).filter(
                AuthSession.id == session_id,
                AuthSession.generation == expected_generation,
                AuthSession.revoked.is_(False),
            ).update(
                {
                    "generation": AuthSession.generation + 1,
                    "access_expires_at": _to_iso(access_expires_at),
                    "refresh_expires_at": _to_iso(refresh_expires_at),
                    "issuing_ip": ip,
                    "issuing_user_agent": user_agent,
                    "last_used_at": _to_iso(utcnow()),
                },
                synchronize_session=False,
            )
            if updated != 1:
                return None
            row = db.query(AuthSession).filter(AuthSession.id == session_id).one()
            return _record_from_row(row)

    def list_active_for_user(self, user_id: str) -> list[SessionRecord]:
        now = utcnow()
        with get_db_context(self._session_factory) as db:
            rows = db.query(AuthSession).filter(
                AuthSession.user_id == user_id,
                AuthSession.revoked.is_(False),
            ).all()
            records = [_record_from_row(row) for row in rows]
        return sorted(
            (r for r in records if r.is_active(now)),
            key=lambda r: r.issued_at,
            reverse=True,
        )

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = _to_iso(now or utcnow())
        with get_db_context(self._session_factory) as db:
            return db.query(AuthSession).filter(
                AuthSession.refresh_expires_at <= cutoff,
            ).delete(synchronize_session=False)


def create_session_store(settings: Settings) -> SessionStore:
    """Build the configured session store backend."""
    if settings.session_store == "memory":
        logger.info("Using in-memory session store")
        return InMemorySessionStore()

    from vizlytics.database import Base, SessionLocal, engine, ensure_sqlite_directory

    # Import all models so they're registered with Base
    from vizlytics import models  # noqa: F401

    ensure_sqlite_directory(settings.database_url)
    Base.metadata.create_all(bind=engine)
    logger.info("Using database session store")
    return SqlSessionStore(SessionLocal)
