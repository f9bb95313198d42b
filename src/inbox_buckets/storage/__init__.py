"""Persistence adapters for the local mailbox cache."""

from .sqlite import ANNOTATION_FIELDS, MessageQuery, SqliteMessageStore

__all__ = ["ANNOTATION_FIELDS", "MessageQuery", "SqliteMessageStore"]
