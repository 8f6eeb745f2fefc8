"""Database module for persistent entity storage."""

from database.models import Base, EntityRecordModel
from database.session import (
    drop_db,
    get_engine,
    get_session,
    init_db,
    reset_engine,
    session_scope,
)
from database.store import DatabaseMutationExecutor

__all__ = [
    "Base",
    "EntityRecordModel",
    "DatabaseMutationExecutor",
    "drop_db",
    "get_engine",
    "get_session",
    "init_db",
    "reset_engine",
    "session_scope",
]
