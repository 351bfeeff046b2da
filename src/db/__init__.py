"""Database package."""

from src.db.base import Base
from src.db.session import SessionLocal, get_db, get_engine, get_session_factory

__all__ = ["Base", "SessionLocal", "get_db", "get_engine", "get_session_factory"]
