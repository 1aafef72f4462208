"""Database package for BackerStore"""

from database.base import Base
from database.session import SessionLocal, engine, get_db_sync

__all__ = ["Base", "get_db_sync", "SessionLocal", "engine"]
