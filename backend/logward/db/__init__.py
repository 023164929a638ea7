"""Persistence: engine and sessions, ORM models, repositories."""

from .engine import (
    Base,
    async_session_factory,
    create_engine_for,
    dispose_db,
    get_db,
    init_db,
    session_factory_for,
)

__all__ = [
    "Base",
    "async_session_factory",
    "create_engine_for",
    "dispose_db",
    "get_db",
    "init_db",
    "session_factory_for",
]
