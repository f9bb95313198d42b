"""Background reconciliation of the local cache against the remote mailbox."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from ..core.config import SyncSettings
from ..core.datetime_utils import cutoff_from_date, utc_now
from ..core.interfaces import MailboxGateway
from ..core.markers import sanitize_marker
from ..core.models import ConflictPolicy, MessageSummary, SyncReport
from ..storage.sqlite import MessageQuery, SqliteMessageStore
from .tasks import DetachedTaskRunner

if TYPE_CHECKING:
    from ..threads.engine import ThreadEngine

LOGGER = logging.getLogger(__name__)

REPLAY_ATTEMPTS = 3


class SyncWorker:
    """Periodic, non-overlapping mailbox reconciliation.

    A run pulls the inbox, removes orphaned rows, pulls the sent folder,
    reconciles the archive folder, refreshes every bucket and backfills
    thread keys. Each phase fails on its own without aborting the rest of the
    run.

    Location reconciliation follows the remote side, so a thread operation
    whose remote phase completed without its local phase is healed here:
    inbox listings restore locally archived rows, archive listings archive
    rows the cache still shows elsewhere, and bucket listings release rows
    that lost their marker.
    """

    def __init__(
        self,
        gateway: MailboxGateway,
        store: SqliteMessageStore,
        engine: ThreadEngine,
        settings: SyncSettings,
        *,
        inbox_folder: str = "INBOX",
        archive_folder: str | None = None,
        sent_folder: str | None = None,
        tasks: DetachedTaskRunner | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        # pylint: disable=too-many-arguments
        """Initialise the worker; nothing runs until ``run_once`` or ``start``."""
        self._gateway = gateway
        self._store = store
        self._engine = engine
        self._settings = settings
        self._inbox_folder = inbox_folder
        self._archive_folder = archive_folder
        self._sent_folder = sent_folder
        self._tasks = tasks
        self._clock = clock
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._scheduler: threading.Thread | None = None

    # Properties --------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        """Return True while a reconciliation run is in progress."""
        return self._run_lock.locked()

    @property
    def cutoff(self) -> datetime:
        """Start of the sync window."""
        return cutoff_from_date(self._settings.start_date)

    # Runs --------------------------------------------------------------------
    def run_once(self) -> SyncReport | None:
        """Execute one full run, or return None when a run is already active."""
        if not self._run_lock.acquire(blocking=False):
            LOGGER.info("Skipping sync run; another run is in progress")
            return None
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def pull_inbox(self) -> int:
        """Upsert the current inbox listing with the conservative inbox policy."""
        summaries = self._gateway.list_inbox_summaries(
            self.cutoff, self._settings.import_starred
        )
        self._restore_unarchived(summaries)
        return self._store.upsert_summaries(summaries, ConflictPolicy.INBOX_SCAN)

    def cleanup_orphans(self) -> int:
        """Delete sampled unsynced rows that the inbox no longer lists."""
        cutoff = self.cutoff
        candidates = self._store.find_orphan_candidates(
            cutoff, self._settings.orphan_sample_size
        )
        if not candidates:
            return 0

        remote = self._gateway.list_inbox_identities(
            cutoff, self._settings.import_starred
        )
        if not remote:
            # An empty listing is indistinguishable from a failed one.
            LOGGER.warning(
                "Inbox listing is empty; skipping orphan check of %d row(s)",
                len(candidates),
            )
            return 0

        orphans = [row.identity for row in candidates if row.identity not in remote]
        if not orphans:
            return 0
        for identity in orphans:
            LOGGER.info("Removing orphaned cache entry %s", identity)
        return self._store.delete_messages(orphans)

    def pull_sent(self) -> int:
        """Upsert the sent folder listing with sent provenance rules."""
        if not self._sent_folder:
            return 0
        summaries = self._gateway.list_folder_summaries(self._sent_folder, self.cutoff)
        return self._store.upsert_summaries(summaries, ConflictPolicy.SENT_SCAN)

    def reconcile_archive(self) -> int:
        """Archive cached rows that the archive folder already holds."""
        if not self._archive_folder:
            return 0
        summaries = self._gateway.list_folder_summaries(self._archive_folder, self.cutoff)
        stale = self._store.query(
            MessageQuery(
                identities=_identities(summaries),
                archived=False,
                include_outgoing=False,
            )
        )
        if not stale:
            return 0
        archived = self._store.archive_batch(
            [row.identity for row in stale],
            self._clock(),
            archive_folder=self._archive_folder,
        )
        LOGGER.info("Marked %d message(s) archived to match the server", archived)
        for bucket_id in {row.assigned_bucket for row in stale} - {None}:
            self._store.recount_bucket(bucket_id)
        return archived

    def refresh_bucket(self, bucket_id: str) -> int:
        """Mirror one bucket's marker listing and store its remote count."""
        summaries = self._gateway.list_marker_summaries(sanitize_marker(bucket_id))
        self._store.upsert_summaries(
            summaries, ConflictPolicy.BUCKET_SCAN, bucket_id=bucket_id
        )
        self._store.release_bucket_members(bucket_id, _identities(summaries))
        self._store.set_bucket_count(bucket_id, len(summaries))
        return len(summaries)

    # Scheduling --------------------------------------------------------------
    def start(self) -> None:
        """Start the periodic scheduler thread."""
        if self._scheduler is not None and self._scheduler.is_alive():
            LOGGER.info("Sync worker already running")
            return
        self._stop_event.clear()
        self._scheduler = threading.Thread(
            target=self._schedule, name="sync-scheduler", daemon=True
        )
        self._scheduler.start()
        LOGGER.info(
            "Started sync worker (interval: %.0fs)", self._settings.interval_seconds
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop scheduling new runs, waiting up to ``timeout`` for an active one."""
        self._stop_event.set()
        scheduler = self._scheduler
        self._scheduler = None
        if scheduler is not None and scheduler is not threading.current_thread():
            scheduler.join(timeout)
            LOGGER.info("Sync worker stopped")

    def close(self) -> None:
        """Alias for :meth:`stop` used by the service container."""
        self.stop()

    # Internal helpers --------------------------------------------------------
    def _schedule(self) -> None:
        if self._stop_event.wait(self._settings.initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            # Runs inline; a tick that finds a manual run active is skipped.
            self.run_once()
            if self._stop_event.wait(self._settings.interval_seconds):
                return

    def _restore_unarchived(self, summaries: Sequence[MessageSummary]) -> int:
        restored = self._store.query(
            MessageQuery(
                identities=_identities(summaries),
                archived=True,
                include_outgoing=False,
            )
        )
        if not restored:
            return 0
        count = self._store.move_to_bucket_batch(
            [row.identity for row in restored], None, folder=self._inbox_folder
        )
        LOGGER.info("Restored %d archived message(s) the inbox still lists", count)
        for bucket_id in {row.assigned_bucket for row in restored} - {None}:
            self._store.recount_bucket(bucket_id)
        return count

    def _run(self) -> SyncReport:
        report = SyncReport(started_at=self._clock())
        LOGGER.info("Starting sync run")

        tasks = self._tasks
        if tasks is not None:
            report.tasks_replayed = (
                self._phase(report, "replay", lambda: tasks.replay_failures(REPLAY_ATTEMPTS))
                or 0
            )
        report.inbox_upserted = self._phase(report, "inbox", self.pull_inbox) or 0
        report.orphans_removed = self._phase(report, "orphans", self.cleanup_orphans) or 0
        report.sent_upserted = self._phase(report, "sent", self.pull_sent) or 0
        report.archive_reconciled = (
            self._phase(report, "archive", self.reconcile_archive) or 0
        )

        for bucket in self._store.list_buckets():
            count = self._phase(
                report,
                f"bucket:{bucket.id}",
                lambda bucket_id=bucket.id: self.refresh_bucket(bucket_id),
            )
            if count is not None:
                report.bucket_counts[bucket.id] = count

        report.thread_keys_assigned = (
            self._phase(report, "backfill", self._engine.backfill_thread_keys) or 0
        )

        report.finished_at = self._clock()
        LOGGER.info(
            "Sync run complete: inbox=%d orphans=%d sent=%d archived=%d buckets=%d "
            "threads=%d failed=%s",
            report.inbox_upserted,
            report.orphans_removed,
            report.sent_upserted,
            report.archive_reconciled,
            len(report.bucket_counts),
            report.thread_keys_assigned,
            ",".join(report.failed_phases) or "none",
        )
        return report

    @staticmethod
    def _phase(
        report: SyncReport, name: str, action: Callable[[], int]
    ) -> int | None:
        try:
            return action()
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Sync phase %s failed", name)
            report.failed_phases.append(name)
            return None


def _identities(summaries: Sequence[MessageSummary]) -> list[str]:
    return [summary.identity for summary in summaries if summary.identity]


__all__ = ["REPLAY_ATTEMPTS", "SyncWorker"]
