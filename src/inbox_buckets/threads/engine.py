"""Conversation membership and atomic multi-message transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from enum import Enum

from ..core.datetime_utils import utc_now
from ..core.interfaces import MailboxGateway
from ..core.markers import canonical_bucket_id
from ..core.models import (
    LocationKind,
    MessageRecord,
    ThreadGroup,
    ThreadOperationResult,
)
from ..core.subjects import is_groupable, normalize_subject
from ..storage.sqlite import MessageQuery, SqliteMessageStore
from ..transport.session import ImapError
from .keys import ThreadKeyResolver

LOGGER = logging.getLogger(__name__)

INBOX_TARGET = "inbox"


class ThreadOperationError(RuntimeError):
    """Raised when any member of a thread failed its remote mutation."""

    def __init__(
        self,
        operation: str,
        thread_key: str,
        failures: dict[str, Exception],
        total: int,
    ) -> None:
        self.operation = operation
        self.thread_key = thread_key
        self.failures = failures
        self.failed = len(failures)
        self.total = total
        super().__init__(
            f"{operation} aborted for thread {thread_key}: {self.failed}/{total} failed"
        )


class ThreadNotFoundError(LookupError):
    """Raised when a thread id matches neither a message nor a thread key."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"No cached message or thread matches '{thread_id}'")
        self.thread_id = thread_id


class ThreadScope(Enum):
    """Which members of a conversation an operation acts on."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    BUCKETED = "bucketed"
    LOCATION = "location"


class ThreadEngine:
    """Compute thread membership and run remote-first thread transitions.

    Each transition mutates every member remotely first, collecting
    failures. Any failure aborts before the cache is touched; otherwise the
    cache is updated with a single batched statement.
    """

    def __init__(
        self,
        store: SqliteMessageStore,
        gateway: MailboxGateway,
        *,
        inbox_folder: str = "INBOX",
        archive_folder: str = "Archives",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Bind the engine to its cache, gateway and folder names."""
        self._store = store
        self._gateway = gateway
        self._inbox_folder = inbox_folder
        self._archive_folder = archive_folder
        self._clock = clock
        self._resolver = ThreadKeyResolver(store)

    # Thread identity ---------------------------------------------------------
    def resolve_thread_key(self, record: MessageRecord) -> str:
        """Return the key ``record`` belongs to without persisting it."""
        return self._resolver.resolve(record)

    def backfill_thread_keys(self) -> int:
        """Assign thread keys to every cached row that lacks one, oldest first."""
        pending = self._store.query(MessageQuery(missing_thread_key=True, oldest_first=True))
        for record in pending:
            self._ensure_key(record)
        if pending:
            LOGGER.info("Backfilled thread keys for %d message(s)", len(pending))
        return len(pending)

    def thread_members(
        self, thread_id: str, scope: ThreadScope = ThreadScope.LOCATION
    ) -> tuple[str, list[MessageRecord]]:
        """Return the thread key and the non-outgoing members within ``scope``."""
        trigger = self._trigger(thread_id)
        return self._members(trigger, scope)

    # Two-phase transitions ---------------------------------------------------
    def move_thread_to_bucket(
        self, thread_id: str, bucket_id: str
    ) -> ThreadOperationResult:
        """File every unarchived member of the thread under ``bucket_id``."""
        if not bucket_id:
            raise ValueError("bucket_id is required")
        bucket_id = canonical_bucket_id(bucket_id)
        key, members = self.thread_members(thread_id, ThreadScope.ACTIVE)
        previous = _buckets_of(members)

        result = self._run_two_phase(
            "move to bucket",
            key,
            members,
            remote=lambda member: self._gateway.set_category_markers(
                member.identity, [bucket_id]
            ),
            local=lambda identities: self._store.move_to_bucket_batch(
                identities, bucket_id, thread_key=key
            ),
        )
        self._recount({bucket_id, *previous})
        return result

    def archive_thread(self, thread_id: str) -> ThreadOperationResult:
        """Archive every unarchived member of the thread."""
        key, members = self.thread_members(thread_id, ThreadScope.ACTIVE)
        archived_at = self._clock()

        result = self._run_two_phase(
            "archive",
            key,
            members,
            remote=lambda member: self._gateway.move_to_archive_folder(member.identity),
            local=lambda identities: self._store.archive_batch(
                identities,
                archived_at,
                archive_folder=self._archive_folder,
                thread_key=key,
            ),
        )
        self._recount(_buckets_of(members))
        return result

    def unarchive_thread(
        self, thread_id: str, target: str | None = INBOX_TARGET
    ) -> ThreadOperationResult:
        """Restore archived members to the inbox or to bucket ``target``."""
        bucket_id = (
            None if not target or target == INBOX_TARGET else canonical_bucket_id(target)
        )
        key, members = self.thread_members(thread_id, ThreadScope.ARCHIVED)
        markers = [bucket_id] if bucket_id else []

        result = self._run_two_phase(
            "unarchive",
            key,
            members,
            remote=lambda member: self._gateway.move_from_archive(
                member.identity, self._inbox_folder, markers
            ),
            local=lambda identities: self._store.move_to_bucket_batch(
                identities,
                bucket_id,
                folder=self._inbox_folder,
                thread_key=key,
            ),
        )
        if bucket_id:
            self._recount({bucket_id})
        return result

    def unbucket_thread(self, thread_id: str) -> ThreadOperationResult:
        """Return every bucketed, unarchived member of the thread to the inbox."""
        key, members = self.thread_members(thread_id, ThreadScope.BUCKETED)
        previous = _buckets_of(members)

        result = self._run_two_phase(
            "unbucket",
            key,
            members,
            remote=lambda member: self._gateway.set_category_markers(member.identity, []),
            local=lambda identities: self._store.move_to_bucket_batch(
                identities, None, thread_key=key
            ),
        )
        self._recount(previous)
        return result

    # Maintenance -------------------------------------------------------------
    def auto_consolidate_threads(self) -> int:
        """Pull archived or bucketed messages back next to their inbox replies.

        Best effort: a failing message is logged and skipped.
        """
        inbox_rows = self._store.query(
            MessageQuery(bucketed=False, archived=False, include_outgoing=False)
        )
        subject_keys: dict[str, str] = {}
        inbox_keys: set[str] = set()
        for row in inbox_rows:
            normalized = row.normalized_subject or normalize_subject(row.subject)
            key = row.thread_key or row.identity
            inbox_keys.add(key)
            if is_groupable(normalized):
                subject_keys.setdefault(normalized, key)
        if not inbox_keys:
            return 0

        candidates = [
            *self._store.query(MessageQuery(archived=True, include_outgoing=False)),
            *self._store.query(
                MessageQuery(bucketed=True, archived=False, include_outgoing=False)
            ),
        ]
        moved = 0
        touched_buckets: set[str] = set()
        for candidate in candidates:
            target_key = _consolidation_key(candidate, subject_keys, inbox_keys)
            if target_key is None:
                continue
            try:
                if candidate.archived_at is not None:
                    self._gateway.move_from_archive(candidate.identity, self._inbox_folder)
                    self._store.move_to_bucket_batch(
                        [candidate.identity],
                        None,
                        folder=self._inbox_folder,
                        thread_key=target_key,
                    )
                else:
                    self._gateway.set_category_markers(candidate.identity, [])
                    self._store.move_to_bucket_batch(
                        [candidate.identity], None, thread_key=target_key
                    )
            except ImapError as exc:
                LOGGER.warning(
                    "Could not consolidate %s into thread %s: %s",
                    candidate.identity,
                    target_key,
                    exc,
                )
                continue
            if candidate.assigned_bucket:
                touched_buckets.add(candidate.assigned_bucket)
            moved += 1

        self._recount(touched_buckets)
        if moved:
            LOGGER.info("Consolidated %d message(s) back into the inbox", moved)
        return moved

    # Listings ----------------------------------------------------------------
    def get_inbox_threads(self) -> list[ThreadGroup]:
        """Group unbucketed, unarchived messages into conversations."""
        return _group(
            self._store.query(
                MessageQuery(bucketed=False, archived=False, include_outgoing=False)
            )
        )

    def get_bucket_threads(self, bucket_id: str) -> list[ThreadGroup]:
        """Group the unarchived messages filed under ``bucket_id``."""
        return _group(
            self._store.query(
                MessageQuery(bucket_id=bucket_id, archived=False, include_outgoing=False)
            )
        )

    def get_archive_threads(self) -> list[ThreadGroup]:
        """Group archived messages into conversations."""
        return _group(
            self._store.query(MessageQuery(archived=True, include_outgoing=False))
        )

    def get_thread_messages(self, thread_id: str) -> list[MessageRecord]:
        """Return every cached message of a conversation, sent copies included."""
        trigger = self._trigger(thread_id)
        key = self._ensure_key(trigger)
        normalized = trigger.normalized_subject or normalize_subject(trigger.subject)
        return self._store.query(
            MessageQuery(
                thread_key=key,
                normalized_subject=normalized if is_groupable(normalized) else None,
                oldest_first=True,
            )
        )

    # Internal helpers ---------------------------------------------------------
    def _trigger(self, thread_id: str) -> MessageRecord:
        trigger = self._store.find_thread_trigger(thread_id)
        if trigger is None:
            raise ThreadNotFoundError(thread_id)
        return trigger

    def _ensure_key(self, record: MessageRecord) -> str:
        if record.thread_key:
            return record.thread_key
        normalized = record.normalized_subject or normalize_subject(record.subject)
        key = self._resolver.resolve(record)
        self._store.set_thread_key(record.identity, key, normalized or None)
        record.thread_key = key
        return key

    def _members(
        self, trigger: MessageRecord, scope: ThreadScope
    ) -> tuple[str, list[MessageRecord]]:
        key = self._ensure_key(trigger)
        normalized = trigger.normalized_subject or normalize_subject(trigger.subject)
        query = MessageQuery(
            thread_key=key,
            normalized_subject=normalized if is_groupable(normalized) else None,
            include_outgoing=False,
            oldest_first=True,
        )
        if scope is ThreadScope.ACTIVE:
            query.archived = False
        elif scope is ThreadScope.ARCHIVED:
            query.archived = True
        elif scope is ThreadScope.BUCKETED:
            query.archived = False
            query.bucketed = True
        else:
            location = trigger.location
            if location.kind is LocationKind.ARCHIVED:
                query.archived = True
            elif location.kind is LocationKind.BUCKET:
                query.archived = False
                query.bucket_id = location.bucket_id
            else:
                query.archived = False
                query.bucketed = False
        return key, self._store.query(query)

    def _run_two_phase(
        self,
        operation: str,
        thread_key: str,
        members: Sequence[MessageRecord],
        *,
        remote: Callable[[MessageRecord], None],
        local: Callable[[Sequence[str]], int],
    ) -> ThreadOperationResult:
        identities = tuple(member.identity for member in members)
        if not members:
            LOGGER.info("No messages to %s in thread %s", operation, thread_key)
            return ThreadOperationResult(operation, thread_key, identities)

        failures: dict[str, Exception] = {}
        for member in members:
            try:
                remote(member)
            except ImapError as exc:
                LOGGER.warning(
                    "Remote %s failed for %s in thread %s: %s",
                    operation,
                    member.identity,
                    thread_key,
                    exc,
                )
                failures[member.identity] = exc

        if failures:
            raise ThreadOperationError(operation, thread_key, failures, len(members))

        updated = local(identities)
        LOGGER.info(
            "Completed %s for thread %s (%d of %d row(s) updated)",
            operation,
            thread_key,
            updated,
            len(identities),
        )
        return ThreadOperationResult(operation, thread_key, identities)

    def _recount(self, bucket_ids: Iterable[str]) -> None:
        for bucket_id in {bucket_id for bucket_id in bucket_ids if bucket_id}:
            self._store.recount_bucket(bucket_id)


def _buckets_of(members: Iterable[MessageRecord]) -> set[str]:
    return {member.assigned_bucket for member in members if member.assigned_bucket}


def _consolidation_key(
    candidate: MessageRecord, subject_keys: dict[str, str], inbox_keys: set[str]
) -> str | None:
    normalized = candidate.normalized_subject or normalize_subject(candidate.subject)
    if is_groupable(normalized) and normalized in subject_keys:
        return subject_keys[normalized]
    if candidate.thread_key and candidate.thread_key in inbox_keys:
        return candidate.thread_key
    return None


def _group(rows: Sequence[MessageRecord]) -> list[ThreadGroup]:
    """Group rows (newest first) by thread key, keeping that order."""
    grouped: dict[str, list[MessageRecord]] = {}
    for row in rows:
        grouped.setdefault(row.thread_key or row.identity, []).append(row)
    return [
        ThreadGroup(
            thread_key=key,
            count=len(members),
            latest=members[0],
            location=members[0].location,
            identities=tuple(member.identity for member in members),
        )
        for key, members in grouped.items()
    ]


__all__ = [
    "INBOX_TARGET",
    "ThreadEngine",
    "ThreadNotFoundError",
    "ThreadOperationError",
    "ThreadScope",
]
