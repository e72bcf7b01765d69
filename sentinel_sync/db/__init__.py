"""Database package."""

from .engine import (
    Base,
    async_session_factory,
    create_engine_for,
    create_session_factory,
    dispose_db,
    engine,
    get_db,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "get_db",
    "get_session_factory",
    "init_db",
    "dispose_db",
    "engine",
    "async_session_factory",
    "create_engine_for",
    "create_session_factory",
]
