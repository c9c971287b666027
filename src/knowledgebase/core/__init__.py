"""Core configuration, logging, errors and persistence building blocks."""

from . import config, errors, logging
from .config import AppSettings
from .context import RequestContext
from .logging import configure_logging, get_logger

__all__ = [
    "config",
    "errors",
    "logging",
    "AppSettings",
    "RequestContext",
    "configure_logging",
    "get_logger",
]
