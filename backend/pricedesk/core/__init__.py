"""Core module for configuration and utilities."""

from pricedesk.core.config import settings
from pricedesk.core.database import Base, async_session_maker, get_session

__all__ = [
    "settings",
    "Base",
    "async_session_maker",
    "get_session",
]
