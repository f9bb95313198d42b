"""Thread key resolution for cached messages."""

from __future__ import annotations

import logging

from ..core.models import MessageRecord
from ..core.subjects import is_groupable, normalize_subject
from ..storage.sqlite import SqliteMessageStore

LOGGER = logging.getLogger(__name__)


class ThreadKeyResolver:
    """Derive a stable conversation key for a message.

    Header chains win over subjects: a References entry already known
    locally, then In-Reply-To, then a normalized subject shared with a row in
    the same location, and finally the message's own identity.
    """

    def __init__(self, store: SqliteMessageStore) -> None:
        """Bind the resolver to the cache it looks keys up in."""
        self._store = store

    def resolve(self, record: MessageRecord) -> str:
        """Return the thread key ``record`` should carry."""
        for reference in record.references:
            if reference == record.identity:
                continue
            key = self._store.thread_key_for_identity(reference)
            if key:
                return key

        if record.in_reply_to and record.in_reply_to != record.identity:
            key = self._store.thread_key_for_identity(record.in_reply_to)
            if key:
                return key

        normalized = record.normalized_subject or normalize_subject(record.subject)
        if is_groupable(normalized):
            key = self._store.find_thread_key_by_subject(
                normalized,
                record.location,
                exclude_identity=record.identity,
            )
            if key:
                LOGGER.debug(
                    "Joined %s to thread %s by subject %r",
                    record.identity,
                    key,
                    normalized,
                )
                return key

        return record.identity


__all__ = ["ThreadKeyResolver"]
