"""Database package."""

from .engine import (
    Base,
    async_session_factory,
    dispose_db,
    engine,
    get_db,
    init_db,
    reader_engine,
)

__all__ = [
    "Base",
    "async_session_factory",
    "dispose_db",
    "engine",
    "get_db",
    "init_db",
    "reader_engine",
]
