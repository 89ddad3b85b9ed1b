"""Server - lock service API and configuration."""

from .config import Settings, configure_logging

__all__ = [
    "Settings",
    "configure_logging",
]
