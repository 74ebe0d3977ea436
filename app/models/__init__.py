"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all` / Alembic).
"""

from app.models.base import Base, UUIDPrimaryKeyMixin
from app.models.session import UserSession

__all__ = [
    "Base",
    "UUIDPrimaryKeyMixin",
    "UserSession",
]
