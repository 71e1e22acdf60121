"""SQLAlchemy models package."""
from vizlytics.models.auth import AuthSession

__all__ = [
    "AuthSession",
]
