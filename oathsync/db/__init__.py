"""Database layer for oathsync with async SQLAlchemy."""

from oathsync.db.connection import get_session, get_session_factory, init_db
from oathsync.db.models import Base, ClientModel, SummonsModel, SyncStatusModel

__all__ = [
    "Base",
    "ClientModel",
    "SummonsModel",
    "SyncStatusModel",
    "get_session",
    "get_session_factory",
    "init_db",
]
