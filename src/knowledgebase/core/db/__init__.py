"""Database models and helpers."""

from . import models, session
from .session import create_engine_from_settings, init_db, session_factory, session_scope

__all__ = [
    "models",
    "session",
    "create_engine_from_settings",
    "init_db",
    "session_factory",
    "session_scope",
]
