"""Database module."""
from src.db.base import (
    Base,
    UUIDMixin,
    CreatedAtMixin,
    JSONType,
    utcnow,
    get_engine,
    get_session_maker,
    init_models,
    dispose_engine,
)

__all__ = [
    "Base",
    "UUIDMixin",
    "CreatedAtMixin",
    "JSONType",
    "utcnow",
    "get_engine",
    "get_session_maker",
    "init_models",
    "dispose_engine",
]
