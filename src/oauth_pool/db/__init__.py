"""Database package for SQLite persistence."""

from oauth_pool.db.engine import close_db, get_engine, get_session, init_db
from oauth_pool.db.models import OAuthAccountRecord


__all__ = [
    "OAuthAccountRecord",
    "close_db",
    "get_engine",
    "get_session",
    "init_db",
]
