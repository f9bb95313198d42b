"""Application facade combining the gateway, cache, engine and worker."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date
from typing import Any

from .core.config import AppSettings
from .core.interfaces import MailboxGateway
from .core.markers import (
    bucket_id_for_marker,
    canonical_bucket_id,
    color_for_index,
    label_for_marker,
)
from .core.models import (
    Bucket,
    ConflictPolicy,
    DraftRecord,
    FetchedBody,
    MessageLocationHint,
    MessageRecord,
    MessageSummary,
    ThreadGroup,
    ThreadOperationResult,
)
from .ingestion.parser import EmailParser, build_preview
from .ingestion.state import BucketRefreshThrottle, InFlightFetches
from .ingestion.tasks import DetachedTaskRunner
from .ingestion.worker import SyncWorker
from .storage.sqlite import SqliteMessageStore
from .threads.engine import INBOX_TARGET, ThreadEngine
from .transport.session import ImapError

LOGGER = logging.getLogger(__name__)


class MailboxService:
    """Read and write paths used by the command line and any outer surface."""

    def __init__(
        self,
        gateway: MailboxGateway,
        store: SqliteMessageStore,
        engine: ThreadEngine,
        settings: AppSettings,
        *,
        tasks: DetachedTaskRunner | None = None,
        worker: SyncWorker | None = None,
    ) -> None:
        # pylint: disable=too-many-arguments
        """Wire collaborators; the worker is created when not supplied."""
        self._gateway = gateway
        self._store = store
        self._engine = engine
        self._settings = settings
        self._tasks = tasks or DetachedTaskRunner()
        self._worker = worker or SyncWorker(
            gateway,
            store,
            engine,
            settings.sync,
            inbox_folder=settings.imap.inbox_folder,
            archive_folder=settings.imap.archive_folder,
            sent_folder=settings.imap.sent_folder,
            tasks=self._tasks,
        )
        self._throttle = BucketRefreshThrottle(settings.sync.bucket_refresh_seconds)
        self._in_flight = InFlightFetches()
        self._parser = EmailParser()

    @property
    def worker(self) -> SyncWorker:
        """Return the background worker."""
        return self._worker

    # Read path ---------------------------------------------------------------
    def refresh_inbox(self) -> list[ThreadGroup]:
        """Pull the inbox, backfill keys, reunite threads and list inbox threads."""
        self._worker.pull_inbox()
        self._engine.backfill_thread_keys()
        if self._settings.sync.auto_consolidate:
            self._engine.auto_consolidate_threads()
        return self._engine.get_inbox_threads()

    def get_inbox(self) -> list[ThreadGroup]:
        """List inbox threads from the cache only."""
        return self._engine.get_inbox_threads()

    def get_bucket(self, bucket_id: str, *, force: bool = False) -> list[ThreadGroup]:
        """List a bucket's threads, refreshing from the server at most once per window."""
        if force or self._throttle.should_refresh(bucket_id):
            try:
                self._worker.refresh_bucket(bucket_id)
                self._engine.backfill_thread_keys()
            except ImapError as exc:
                LOGGER.warning("Serving cached bucket %s; refresh failed: %s", bucket_id, exc)
                self._throttle.reset(bucket_id)
        return self._engine.get_bucket_threads(bucket_id)

    def get_archive(self) -> list[ThreadGroup]:
        """List archived threads."""
        return self._engine.get_archive_threads()

    def get_thread(self, thread_id: str) -> list[MessageRecord]:
        """Return every cached message of a conversation, oldest first."""
        return self._engine.get_thread_messages(thread_id)

    def fetch_body(self, identity: str) -> FetchedBody:
        """Return body content from the cache, fetching it remotely once on a miss."""
        cached = self._store.fetch_cached_body(identity)
        if cached is not None:
            return FetchedBody(
                identity=identity,
                html=cached.html,
                text=cached.text,
                attachments=cached.attachments,
            )
        return self._in_flight.run(identity, lambda: self._load_body(identity))

    # Write path --------------------------------------------------------------
    def assign_bucket(self, identity: str, bucket_id: str | None) -> MessageRecord | None:
        """File a single message under ``bucket_id``, or clear its bucket."""
        bucket_id = canonical_bucket_id(bucket_id) if bucket_id else None
        record = self._store.fetch_message(identity)
        previous = record.assigned_bucket if record else None
        self._gateway.set_category_markers(identity, [bucket_id] if bucket_id else [])

        summary = MessageSummary(
            identity=identity,
            uid=None,
            folder=self._settings.imap.inbox_folder,
            subject=None,
            sender_name=None,
            sender_address=None,
            sent_at=None,
        )
        self._store.upsert_message(summary, ConflictPolicy.USER_ASSIGN, bucket_id=bucket_id)
        for affected in {previous, bucket_id} - {None}:
            self._store.recount_bucket(affected)
        LOGGER.info("Assigned %s to %s", identity, bucket_id or "the inbox")
        return self._store.fetch_message(identity)

    def mark_read(self, identity: str) -> None:
        """Set the seen flag remotely without waiting for the result."""
        record = self._store.fetch_message(identity)
        hint = _location_hint(record)
        self._tasks.submit(
            "mark read",
            lambda: self._gateway.mark_seen(identity, hint),
            identity,
        )

    def update_annotations(self, identity: str, **fields: Any) -> MessageRecord | None:
        """Set local notes, due date or preview; None when ``identity`` is not cached."""
        if not self._store.update_annotations(identity, **fields):
            return None
        return self._store.fetch_message(identity)

    def set_note(
        self, identity: str, notes: str | None, due_date: date | None = None
    ) -> MessageRecord | None:
        """Convenience wrapper for the two user-editable annotations."""
        return self.update_annotations(identity, notes=notes, due_date=due_date)

    # Thread operations -------------------------------------------------------
    def move_thread_to_bucket(self, thread_id: str, bucket_id: str) -> ThreadOperationResult:
        """Move a whole conversation into a bucket."""
        return self._engine.move_thread_to_bucket(thread_id, bucket_id)

    def archive_thread(self, thread_id: str) -> ThreadOperationResult:
        """Archive a whole conversation."""
        return self._engine.archive_thread(thread_id)

    def unarchive_thread(
        self, thread_id: str, target: str | None = INBOX_TARGET
    ) -> ThreadOperationResult:
        """Restore a conversation to the inbox or to a bucket."""
        return self._engine.unarchive_thread(thread_id, target)

    def unbucket_thread(self, thread_id: str) -> ThreadOperationResult:
        """Return a bucketed conversation to the inbox."""
        return self._engine.unbucket_thread(thread_id)

    def consolidate_threads(self) -> int:
        """Run best-effort thread consolidation."""
        return self._engine.auto_consolidate_threads()

    def backfill_thread_keys(self) -> int:
        """Assign missing thread keys."""
        return self._engine.backfill_thread_keys()

    # Buckets -----------------------------------------------------------------
    def list_buckets(self) -> list[Bucket]:
        """Return buckets in display order."""
        return self._store.list_buckets()

    def discover_buckets(self) -> list[Bucket]:
        """Create local buckets for remote category markers not yet known."""
        markers = self._gateway.discover_category_markers()
        known = {bucket.id for bucket in self._store.list_buckets()}
        created: list[Bucket] = []
        index = len(known)
        for marker in sorted(markers, key=str.lower):
            bucket_id = bucket_id_for_marker(marker)
            if bucket_id in known:
                continue
            bucket = Bucket(
                id=bucket_id,
                label=label_for_marker(marker),
                color=color_for_index(index),
                sort_order=self._store.next_sort_order(),
            )
            self._store.create_bucket(bucket)
            known.add(bucket_id)
            created.append(bucket)
            index += 1
        LOGGER.info("Discovered %d new bucket(s)", len(created))
        return created

    def create_bucket(self, label: str, color: str | None = None) -> Bucket:
        """Create a bucket whose id is the marker derived from ``label``."""
        bucket_id = canonical_bucket_id(label.strip().replace(" ", "_"))
        bucket = Bucket(
            id=bucket_id,
            label=label.strip(),
            color=color or color_for_index(len(self._store.list_buckets())),
            sort_order=self._store.next_sort_order(),
        )
        return self._store.create_bucket(bucket)

    def update_bucket(
        self,
        bucket_id: str,
        *,
        label: str | None = None,
        color: str | None = None,
    ) -> Bucket | None:
        """Rename or recolor a bucket; the remote marker is unchanged."""
        return self._store.update_bucket(bucket_id, label=label, color=color)

    def delete_bucket(self, bucket_id: str) -> bool:
        """Delete a bucket definition."""
        return self._store.delete_bucket(bucket_id)

    def reorder_buckets(self, bucket_ids: Sequence[str]) -> list[Bucket]:
        """Persist a new display order and return the buckets in it."""
        self._store.reorder_buckets(bucket_ids)
        return self._store.list_buckets()

    def refresh_bucket_counts(self, *, remote: bool = False) -> dict[str, int]:
        """Recompute every bucket count from the cache, or from the server."""
        counts: dict[str, int] = {}
        for bucket in self._store.list_buckets():
            if remote:
                count = self._gateway.count_matching_marker(bucket.id)
                self._store.set_bucket_count(bucket.id, count)
            else:
                count = self._store.recount_bucket(bucket.id)
            counts[bucket.id] = count
        return counts

    # Drafts and sent copies --------------------------------------------------
    def list_drafts(self) -> list[DraftRecord]:
        """Return stored drafts, newest first."""
        return self._store.list_drafts()

    def save_draft(self, draft: DraftRecord) -> DraftRecord:
        """Store ``draft`` locally and replace its copy in the drafts folder."""
        stored = self._store.save_draft(draft)
        if stored.remote_uid is not None:
            try:
                self._gateway.delete_draft(stored.remote_uid)
            except ImapError as exc:
                LOGGER.warning(
                    "Could not delete previous remote copy of draft %s: %s", stored.id, exc
                )
        stored.remote_uid = self._gateway.append_draft(stored, self._settings.imap.username)
        return self._store.save_draft(stored)

    def delete_draft(self, draft_id: int) -> bool:
        """Delete a draft locally and from the drafts folder."""
        draft = self._store.fetch_draft(draft_id)
        if draft is None:
            return False
        if draft.remote_uid is not None:
            self._gateway.delete_draft(draft.remote_uid)
        return self._store.delete_draft(draft_id)

    def record_sent_copy(self, payload: bytes) -> MessageRecord | None:
        """Append a sent message to the sent folder and cache it as manually sent."""
        uid = self._gateway.append_sent_copy(payload)
        summary = self._parser.parse_summary(
            uid, payload, self._settings.imap.sent_folder or "", ("\\Seen",)
        )
        if not summary.identity:
            LOGGER.warning("Sent copy has no Message-ID; not caching it")
            return None
        self._store.upsert_message(summary, ConflictPolicy.MANUAL_SEND)
        self._engine.backfill_thread_keys()
        return self._store.fetch_message(summary.identity)

    def close(self) -> None:
        """Stop the worker and wait for detached tasks."""
        self._worker.stop()
        self._tasks.close()

    # Internal helpers --------------------------------------------------------
    def _load_body(self, identity: str) -> FetchedBody:
        record = self._store.fetch_message(identity)
        body = self._gateway.fetch_body(identity, _location_hint(record))
        if body.found:
            self._store.cache_body(identity, body, build_preview(body))
        return body


def _location_hint(record: MessageRecord | None) -> MessageLocationHint | None:
    if record is None or not record.folder:
        return None
    return MessageLocationHint(folder=record.folder, uid=record.uid)


__all__ = ["MailboxService"]
