"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum


class Provenance(StrEnum):
    """Which synchronization source authoritatively wrote a cache row."""

    INBOX = "inbox"
    SENT = "sent"
    MANUAL_SEND = "manual_send"

    @property
    def rank(self) -> int:
        """Authority rank; rows only ever move to a strictly higher rank."""
        return PROVENANCE_RANKS[self]

    @property
    def is_outgoing(self) -> bool:
        """Return True for rows that originate from the user's own sending."""
        return self in OUTGOING_PROVENANCES


# Inbox and Sent are peers: whichever folder sync saw the message first keeps it.
PROVENANCE_RANKS = {
    Provenance.INBOX: 1,
    Provenance.SENT: 1,
    Provenance.MANUAL_SEND: 2,
}
OUTGOING_PROVENANCES = frozenset({Provenance.SENT, Provenance.MANUAL_SEND})


class ConflictPolicy(StrEnum):
    """Per-caller rules applied when an upsert hits an existing row."""

    INBOX_SCAN = "inbox_scan"
    SENT_SCAN = "sent_scan"
    BUCKET_SCAN = "bucket_scan"
    USER_ASSIGN = "user_assign"
    MANUAL_SEND = "manual_send"


class LocationKind(StrEnum):
    """Where a message lives from the user's point of view."""

    INBOX = "inbox"
    BUCKET = "bucket"
    ARCHIVED = "archived"
    SENT = "sent"
    DRAFTS = "drafts"


@dataclass(slots=True, frozen=True)
class Location:
    """Derived projection of folder, archive timestamp and bucket assignment."""

    kind: LocationKind
    bucket_id: str | None = None

    def __str__(self) -> str:
        if self.kind is LocationKind.BUCKET:
            return f"bucket:{self.bucket_id}"
        return self.kind.value


@dataclass(slots=True)
class AttachmentMeta:
    """Metadata describing an email attachment."""

    filename: str | None
    content_type: str | None
    size: int | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MessageSummary:
    """Header-level view of a remote message as returned by folder listings."""

    identity: str | None
    uid: int | None
    folder: str
    subject: str | None
    sender_name: str | None
    sender_address: str | None
    sent_at: datetime | None
    flags: frozenset[str] = frozenset()
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()

    @property
    def flagged(self) -> bool:
        """Return True when the message is starred."""
        return "\\Flagged" in self.flags

    @property
    def seen(self) -> bool:
        """Return True when the message has been read."""
        return "\\Seen" in self.flags

    @property
    def is_draft(self) -> bool:
        """Return True for messages carrying the draft flag."""
        return "\\Draft" in self.flags


@dataclass(slots=True)
class MessageLocationHint:
    """Last known folder position used for the fast body fetch path."""

    folder: str
    uid: int | None = None


@dataclass(slots=True)
class FetchedBody:
    """Body content resolved from the remote mailbox."""

    identity: str
    html: str | None
    text: str | None
    attachments: tuple[AttachmentMeta, ...] = ()
    found: bool = True
    folder: str | None = None

    @classmethod
    def not_found(cls, identity: str) -> FetchedBody:
        """Placeholder returned when no folder holds the message."""
        return cls(
            identity=identity,
            html=None,
            text="Email not found.",
            found=False,
        )


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MessageRecord:
    """A cached message row."""

    identity: str
    uid: int | None
    folder: str | None
    subject: str | None
    sender_name: str | None
    sender_address: str | None
    sent_at: datetime | None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    normalized_subject: str | None = None
    thread_key: str | None = None
    assigned_bucket: str | None = None
    archived_at: datetime | None = None
    provenance: Provenance | None = None
    flagged: bool = False
    seen: bool = False
    notes: str | None = None
    due_date: date | None = None
    preview: str | None = None
    is_draft: bool = False

    @property
    def is_outgoing(self) -> bool:
        """Return True when the row came from the sent folder or a manual send."""
        return self.provenance is not None and self.provenance.is_outgoing

    @property
    def location(self) -> Location:
        """Project stored fields onto exactly one user-facing location."""
        if self.archived_at is not None:
            return Location(LocationKind.ARCHIVED)
        if self.is_draft:
            return Location(LocationKind.DRAFTS)
        if self.is_outgoing:
            return Location(LocationKind.SENT)
        if self.assigned_bucket:
            return Location(LocationKind.BUCKET, self.assigned_bucket)
        return Location(LocationKind.INBOX)


@dataclass(slots=True)
class CachedBody:
    """Body content previously cached for a message."""

    identity: str
    html: str | None
    text: str | None
    attachments: tuple[AttachmentMeta, ...]
    fetched_at: datetime


@dataclass(slots=True)
class Bucket:
    """User-defined category mapped to a remote keyword."""

    id: str
    label: str
    color: str
    sort_order: int = 0
    count: int = 0


@dataclass(slots=True)
class ThreadGroup:
    """A computed conversation grouping within one location."""

    thread_key: str
    count: int
    latest: MessageRecord
    location: Location
    identities: tuple[str, ...] = ()


@dataclass(slots=True)
class ThreadOperationResult:
    """Outcome of a successful two-phase thread transition."""

    operation: str
    thread_key: str
    identities: tuple[str, ...]

    @property
    def count(self) -> int:
        """Number of messages moved by the operation."""
        return len(self.identities)


@dataclass(slots=True)
class DraftRecord:
    """Locally stored draft mirrored into the remote drafts folder."""

    id: int | None
    subject: str
    body_text: str
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    remote_uid: int | None = None
    message_id: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class SyncReport:
    """Outcome summary for one background reconciliation run."""

    started_at: datetime
    finished_at: datetime | None = None
    inbox_upserted: int = 0
    orphans_removed: int = 0
    sent_upserted: int = 0
    archive_reconciled: int = 0
    bucket_counts: dict[str, int] = field(default_factory=dict)
    thread_keys_assigned: int = 0
    tasks_replayed: int = 0
    failed_phases: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Return True when every phase completed."""
        return not self.failed_phases


__all__ = [
    "AttachmentMeta",
    "Bucket",
    "CachedBody",
    "ConflictPolicy",
    "DraftRecord",
    "FetchedBody",
    "Location",
    "LocationKind",
    "MessageLocationHint",
    "MessageRecord",
    "MessageSummary",
    "OUTGOING_PROVENANCES",
    "PROVENANCE_RANKS",
    "Provenance",
    "SyncReport",
    "ThreadGroup",
    "ThreadOperationResult",
]
