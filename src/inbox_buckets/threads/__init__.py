"""Conversation grouping and thread-level mailbox transitions."""

from .engine import (
    INBOX_TARGET,
    ThreadEngine,
    ThreadNotFoundError,
    ThreadOperationError,
    ThreadScope,
)
from .keys import ThreadKeyResolver

__all__ = [
    "INBOX_TARGET",
    "ThreadEngine",
    "ThreadKeyResolver",
    "ThreadNotFoundError",
    "ThreadOperationError",
    "ThreadScope",
]
