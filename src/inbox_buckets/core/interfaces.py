"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from .models import (
    Bucket,
    DraftRecord,
    FetchedBody,
    MessageLocationHint,
    MessageSummary,
)


class MailboxGateway(Protocol):
    """Remote mailbox operations consumed by the engine and the worker."""

    def list_inbox_summaries(
        self, cutoff: datetime, include_flagged: bool
    ) -> list[MessageSummary]:
        """Return unbucketed, unarchived inbox messages inside the window."""
        raise NotImplementedError

    def list_inbox_identities(
        self, cutoff: datetime, include_flagged: bool
    ) -> set[str]:
        """Return the identities currently listed by the inbox scan."""
        raise NotImplementedError

    def list_folder_summaries(
        self, folder: str, cutoff: datetime | None = None
    ) -> list[MessageSummary]:
        """Return summaries for every message in ``folder``."""
        raise NotImplementedError

    def list_marker_summaries(self, marker: str) -> list[MessageSummary]:
        """Return inbox messages carrying ``marker``."""
        raise NotImplementedError

    def fetch_body(
        self, identity: str, location_hint: MessageLocationHint | None = None
    ) -> FetchedBody:
        """Resolve the body of ``identity`` or a not-found placeholder."""
        raise NotImplementedError

    def set_category_markers(self, identity: str, markers: Sequence[str]) -> None:
        """Replace the category markers of ``identity``."""
        raise NotImplementedError

    def move_to_archive_folder(self, identity: str) -> None:
        """Mark ``identity`` archived and move it into the archive folder."""
        raise NotImplementedError

    def move_from_archive(
        self,
        identity: str,
        target_folder: str | None = None,
        markers: Sequence[str] = (),
    ) -> None:
        """Move ``identity`` out of the archive folder, optionally re-bucketing it."""
        raise NotImplementedError

    def mark_seen(
        self, identity: str, location_hint: MessageLocationHint | None = None
    ) -> None:
        """Set the ``\\Seen`` flag on ``identity``."""
        raise NotImplementedError

    def count_matching_marker(self, marker: str) -> int:
        """Count inbox messages carrying ``marker``."""
        raise NotImplementedError

    def discover_category_markers(self) -> set[str]:
        """Return every category marker present in the inbox."""
        raise NotImplementedError

    def append_draft(self, draft: DraftRecord, sender: str | None) -> int | None:
        """Store ``draft`` in the drafts folder and return its UID when known."""
        raise NotImplementedError

    def delete_draft(self, uid: int) -> None:
        """Remove a draft from the drafts folder."""
        raise NotImplementedError

    def append_sent_copy(self, payload: bytes) -> int | None:
        """Append a sent message to the sent folder."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class BucketRepository(Protocol):
    """Abstraction for bucket persistence."""

    def list_buckets(self) -> list[Bucket]:
        """Return buckets ordered for display."""
        raise NotImplementedError

    def fetch_bucket(self, bucket_id: str) -> Bucket | None:
        """Return a bucket by id."""
        raise NotImplementedError

    def create_bucket(self, bucket: Bucket) -> Bucket:
        """Insert a bucket, returning the stored record."""
        raise NotImplementedError

    def set_bucket_count(self, bucket_id: str, count: int) -> None:
        """Persist a recomputed count."""
        raise NotImplementedError


class DraftRepository(Protocol):
    """Abstraction for draft persistence."""

    def save_draft(self, draft: DraftRecord) -> DraftRecord:
        """Insert or update a draft."""
        raise NotImplementedError

    def fetch_draft(self, draft_id: int) -> DraftRecord | None:
        """Return a stored draft."""
        raise NotImplementedError

    def delete_draft(self, draft_id: int) -> bool:
        """Delete a stored draft."""
        raise NotImplementedError

    def list_drafts(self) -> Iterable[DraftRecord]:
        """Return stored drafts, newest first."""
        raise NotImplementedError


__all__ = ["BucketRepository", "DraftRepository", "MailboxGateway"]
