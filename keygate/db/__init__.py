"""Database package exports."""

from keygate.db.base import Base
from keygate.db.session import dispose_engine, get_db_session, get_engine, get_session_factory

__all__ = ["Base", "dispose_engine", "get_db_session", "get_engine", "get_session_factory"]
