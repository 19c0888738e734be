"""Database module for taskowner.

Exports:
- Base: SQLAlchemy declarative base
- session helpers: engine/session factory management
"""

from taskowner.db.models import Base
from taskowner.db.session import db_session, get_session_factory, init_db

__all__ = ["Base", "db_session", "get_session_factory", "init_db"]
