"""Shared fixtures: an in-memory mailbox gateway and a temporary cache."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

import pytest

from inbox_buckets.core.config import AppSettings, StorageSettings, SyncSettings
from inbox_buckets.core.markers import (
    ARCHIVED_MARKER,
    BUCKETED_MARKER,
    is_bucket_marker,
    is_category_marker,
    sanitize_marker,
)
from inbox_buckets.core.models import (
    DraftRecord,
    FetchedBody,
    MessageLocationHint,
    MessageSummary,
)
from inbox_buckets.storage import SqliteMessageStore
from inbox_buckets.threads import ThreadEngine
from inbox_buckets.transport import MessageNotFoundError

INBOX = "INBOX"
ARCHIVE = "Archives"
SENT = "Sent"
DRAFTS = "Drafts"


def make_summary(
    identity: str,
    subject: str | None = "Hello",
    *,
    folder: str = INBOX,
    uid: int | None = 1,
    sent_at: datetime | None = None,
    sender: str = "alice@example.com",
    flags: Sequence[str] = (),
    in_reply_to: str | None = None,
    references: Sequence[str] = (),
) -> MessageSummary:
    """Build a summary with sensible defaults for tests."""
    return MessageSummary(
        identity=identity,
        uid=uid,
        folder=folder,
        subject=subject,
        sender_name="Alice",
        sender_address=sender,
        sent_at=sent_at or datetime(2025, 7, 1, 9, 0, tzinfo=UTC),
        flags=frozenset(flags),
        in_reply_to=in_reply_to,
        references=tuple(references),
    )


@dataclass(slots=True)
class FakeMessage:
    """A message held by :class:`FakeGateway`."""

    summary: MessageSummary
    body: str = "Body text"


class FakeGateway:
    """In-memory stand-in for the IMAP gateway with failure injection."""

    def __init__(self) -> None:
        self.folders: dict[str, dict[str, FakeMessage]] = {
            INBOX: {},
            ARCHIVE: {},
            SENT: {},
            DRAFTS: {},
        }
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self._next_uid = 100

    # Test helpers ------------------------------------------------------------
    def add(self, summary: MessageSummary, body: str = "Body text") -> MessageSummary:
        """Place ``summary`` in its folder with a fresh UID."""
        self._next_uid += 1
        stored = replace(summary, uid=self._next_uid)
        self.folders.setdefault(summary.folder, {})[summary.identity or ""] = FakeMessage(
            stored, body
        )
        return stored

    def flags_of(self, identity: str) -> frozenset[str]:
        """Return the flags of ``identity`` wherever it lives."""
        folder, message = self._locate(identity)
        assert folder is not None and message is not None
        return message.summary.flags

    def folder_of(self, identity: str) -> str | None:
        """Return the folder holding ``identity``."""
        folder, _ = self._locate(identity)
        return folder

    # Listing -----------------------------------------------------------------
    def list_inbox_summaries(
        self, cutoff: datetime, include_flagged: bool
    ) -> list[MessageSummary]:
        results = []
        for message in self.folders[INBOX].values():
            summary = message.summary
            lowered = {flag.lower() for flag in summary.flags}
            if BUCKETED_MARKER in lowered or ARCHIVED_MARKER in lowered:
                continue
            in_window = summary.sent_at is not None and summary.sent_at >= cutoff
            if in_window or (include_flagged and summary.flagged):
                results.append(summary)
        return results

    def list_inbox_identities(self, cutoff: datetime, include_flagged: bool) -> set[str]:
        return {
            summary.identity
            for summary in self.list_inbox_summaries(cutoff, include_flagged)
            if summary.identity
        }

    def list_folder_summaries(
        self, folder: str, cutoff: datetime | None = None
    ) -> list[MessageSummary]:
        return [message.summary for message in self.folders.get(folder, {}).values()]

    def list_marker_summaries(self, marker: str) -> list[MessageSummary]:
        keyword = sanitize_marker(marker)
        return [
            message.summary
            for message in self.folders[INBOX].values()
            if keyword in message.summary.flags
            and ARCHIVED_MARKER not in message.summary.flags
        ]

    def count_matching_marker(self, marker: str) -> int:
        return len(self.list_marker_summaries(marker))

    def discover_category_markers(self) -> set[str]:
        return {
            flag
            for message in self.folders[INBOX].values()
            for flag in message.summary.flags
            if is_bucket_marker(flag)
        }

    # Bodies ------------------------------------------------------------------
    def fetch_body(
        self, identity: str, location_hint: MessageLocationHint | None = None
    ) -> FetchedBody:
        self.calls.append(("fetch_body", identity))
        folder, message = self._locate(identity)
        if message is None:
            return FetchedBody.not_found(identity)
        return FetchedBody(identity=identity, html=None, text=message.body, folder=folder)

    # Mutations ---------------------------------------------------------------
    def set_category_markers(self, identity: str, markers: Sequence[str]) -> None:
        self._record("set_category_markers", identity)
        message = self.folders[INBOX].get(identity)
        if message is None:
            raise MessageNotFoundError(identity, INBOX)
        kept = {flag for flag in message.summary.flags if not is_category_marker(flag)}
        requested = {sanitize_marker(marker) for marker in markers}
        if requested:
            requested.add(BUCKETED_MARKER)
        message.summary = replace(message.summary, flags=frozenset(kept | requested))

    def move_to_archive_folder(self, identity: str) -> None:
        self._record("move_to_archive_folder", identity)
        message = self.folders[INBOX].pop(identity, None)
        if message is None:
            raise MessageNotFoundError(identity, INBOX)
        flags = message.summary.flags | {ARCHIVED_MARKER}
        message.summary = replace(message.summary, folder=ARCHIVE, flags=flags)
        self.folders[ARCHIVE][identity] = message

    def move_from_archive(
        self,
        identity: str,
        target_folder: str | None = None,
        markers: Sequence[str] = (),
    ) -> None:
        self._record("move_from_archive", identity)
        message = self.folders[ARCHIVE].pop(identity, None)
        if message is None:
            raise MessageNotFoundError(identity, ARCHIVE)
        target = target_folder or INBOX
        kept = {flag for flag in message.summary.flags if not is_category_marker(flag)}
        kept.discard(ARCHIVED_MARKER)
        requested = {sanitize_marker(marker) for marker in markers}
        if requested:
            requested.add(BUCKETED_MARKER)
        message.summary = replace(
            message.summary, folder=target, flags=frozenset(kept | requested)
        )
        self.folders[target][identity] = message

    def mark_seen(
        self, identity: str, location_hint: MessageLocationHint | None = None
    ) -> None:
        self._record("mark_seen", identity)
        _, message = self._locate(identity)
        if message is None:
            raise MessageNotFoundError(identity, INBOX)
        message.summary = replace(
            message.summary, flags=message.summary.flags | {"\\Seen"}
        )

    def append_draft(self, draft: DraftRecord, sender: str | None) -> int | None:
        self._record("append_draft", draft.subject)
        identity = draft.message_id or f"<draft-{self._next_uid}@example.com>"
        draft.message_id = identity
        stored = self.add(
            make_summary(identity, draft.subject, folder=DRAFTS, flags=("\\Draft",))
        )
        return stored.uid

    def delete_draft(self, uid: int) -> None:
        self._record("delete_draft", str(uid))
        drafts = self.folders[DRAFTS]
        for identity, message in list(drafts.items()):
            if message.summary.uid == uid:
                del drafts[identity]

    def append_sent_copy(self, payload: bytes) -> int | None:
        self._record("append_sent_copy", "")
        self._next_uid += 1
        return self._next_uid

    def close(self) -> None:
        self.calls.append(("close", ""))

    # Internal helpers --------------------------------------------------------
    def _record(self, operation: str, identity: str) -> None:
        self.calls.append((operation, identity))
        failure = self.failures.get(identity)
        if failure is not None:
            raise failure

    def _locate(self, identity: str) -> tuple[str | None, FakeMessage | None]:
        for folder, messages in self.folders.items():
            if identity in messages:
                return folder, messages[identity]
        return None, None


@pytest.fixture()
def settings(tmp_path: Path) -> AppSettings:
    """Settings pointing the cache at a temporary database."""
    return AppSettings(
        storage=StorageSettings(db_path=tmp_path / "cache.db"),
        sync=SyncSettings(bucket_refresh_seconds=30, orphan_sample_size=10),
    )


@pytest.fixture()
def store(settings: AppSettings) -> Iterator[SqliteMessageStore]:
    """A migrated SQLite cache that is closed after the test."""
    repository = SqliteMessageStore(settings.storage)
    yield repository
    repository.close()


@pytest.fixture()
def gateway() -> FakeGateway:
    """An empty in-memory mailbox."""
    return FakeGateway()


@pytest.fixture()
def engine(store: SqliteMessageStore, gateway: FakeGateway) -> ThreadEngine:
    """A thread engine bound to the fake mailbox and the temporary cache."""
    return ThreadEngine(store, gateway, inbox_folder=INBOX, archive_folder=ARCHIVE)

