"""Core utilities and configuration for BackerStore"""
from core.config import settings
from core.exceptions import BackerStoreError, NotFoundError, ValidationError
from core.logging import get_logger

__all__ = [
    "settings",
    "get_logger",
    "BackerStoreError",
    "ValidationError",
    "NotFoundError",
]
