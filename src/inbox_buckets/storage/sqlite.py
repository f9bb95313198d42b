"""SQLite-backed local cache of mailbox state."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.interfaces import BucketRepository, DraftRepository
from ..core.models import (
    OUTGOING_PROVENANCES,
    PROVENANCE_RANKS,
    AttachmentMeta,
    Bucket,
    CachedBody,
    ConflictPolicy,
    DraftRecord,
    FetchedBody,
    Location,
    LocationKind,
    MessageRecord,
    MessageSummary,
    Provenance,
)
from ..core.subjects import normalize_subject

LOGGER = logging.getLogger(__name__)

ANNOTATION_FIELDS = frozenset({"notes", "due_date", "preview"})


def _rank_sql(column: str) -> str:
    cases = " ".join(
        f"WHEN '{provenance.value}' THEN {rank}"
        for provenance, rank in PROVENANCE_RANKS.items()
    )
    return f"(CASE {column} {cases} ELSE 0 END)"


_OUTGOING_VALUES = ", ".join(f"'{p.value}'" for p in sorted(OUTGOING_PROVENANCES))
_RANK_EXISTING = _rank_sql("messages.provenance")
_RANK_INCOMING = _rank_sql("excluded.provenance")
_NOT_OUTGOING = f"(provenance IS NULL OR provenance NOT IN ({_OUTGOING_VALUES}))"
_EXISTING_NOT_OUTGOING = (
    f"(messages.provenance IS NULL OR messages.provenance NOT IN ({_OUTGOING_VALUES}))"
)
_PROVENANCE_SET = (
    f"provenance = CASE WHEN {_RANK_INCOMING} > {_RANK_EXISTING} "
    "THEN excluded.provenance ELSE messages.provenance END"
)

_INSERT_COLUMNS = (
    "identity",
    "uid",
    "folder",
    "subject",
    "sender_name",
    "sender_address",
    "sent_at",
    "in_reply_to",
    "refs",
    "normalized_subject",
    "assigned_bucket",
    "provenance",
    "flagged",
    "seen",
    "is_draft",
    "updated_at",
)

# Per-caller conflict rules. ``thread_key`` is never written by an upsert.
_CONFLICT_CLAUSES: dict[ConflictPolicy, str] = {
    # Only the ephemeral position changes; subject/sender stay as first written.
    ConflictPolicy.INBOX_SCAN: f"""
        uid = CASE WHEN {_EXISTING_NOT_OUTGOING} THEN excluded.uid ELSE messages.uid END,
        folder = CASE
            WHEN messages.folder IS NULL OR messages.folder = '' THEN excluded.folder
            ELSE messages.folder
        END,
        {_PROVENANCE_SET},
        updated_at = excluded.updated_at
    """,
    # Claims rows no folder sync owns yet; never downgrades an Inbox row.
    ConflictPolicy.SENT_SCAN: f"""
        uid = CASE
            WHEN {_RANK_EXISTING} < {_RANK_INCOMING} OR NOT {_EXISTING_NOT_OUTGOING}
            THEN excluded.uid ELSE messages.uid
        END,
        folder = CASE
            WHEN {_RANK_EXISTING} < {_RANK_INCOMING} THEN excluded.folder
            ELSE messages.folder
        END,
        subject = COALESCE(messages.subject, excluded.subject),
        sender_name = COALESCE(messages.sender_name, excluded.sender_name),
        sender_address = COALESCE(messages.sender_address, excluded.sender_address),
        sent_at = COALESCE(messages.sent_at, excluded.sent_at),
        in_reply_to = COALESCE(messages.in_reply_to, excluded.in_reply_to),
        refs = COALESCE(messages.refs, excluded.refs),
        normalized_subject = COALESCE(messages.normalized_subject, excluded.normalized_subject),
        {_PROVENANCE_SET},
        updated_at = excluded.updated_at
    """,
    # The remote marker is authoritative for bucket membership.
    ConflictPolicy.BUCKET_SCAN: f"""
        uid = excluded.uid,
        folder = excluded.folder,
        assigned_bucket = excluded.assigned_bucket,
        archived_at = NULL,
        {_PROVENANCE_SET},
        updated_at = excluded.updated_at
        WHERE {_EXISTING_NOT_OUTGOING}
    """,
    # Partial payloads fall back to what is already known.
    ConflictPolicy.USER_ASSIGN: f"""
        uid = COALESCE(excluded.uid, messages.uid),
        folder = COALESCE(excluded.folder, messages.folder),
        subject = COALESCE(excluded.subject, messages.subject),
        sender_name = COALESCE(excluded.sender_name, messages.sender_name),
        sender_address = COALESCE(excluded.sender_address, messages.sender_address),
        sent_at = COALESCE(excluded.sent_at, messages.sent_at),
        in_reply_to = COALESCE(excluded.in_reply_to, messages.in_reply_to),
        refs = COALESCE(excluded.refs, messages.refs),
        normalized_subject = COALESCE(excluded.normalized_subject, messages.normalized_subject),
        assigned_bucket = excluded.assigned_bucket,
        archived_at = NULL,
        {_PROVENANCE_SET},
        updated_at = excluded.updated_at
    """,
    ConflictPolicy.MANUAL_SEND: f"""
        uid = COALESCE(excluded.uid, messages.uid),
        folder = excluded.folder,
        subject = COALESCE(excluded.subject, messages.subject),
        sender_name = COALESCE(excluded.sender_name, messages.sender_name),
        sender_address = COALESCE(excluded.sender_address, messages.sender_address),
        sent_at = COALESCE(excluded.sent_at, messages.sent_at),
        in_reply_to = COALESCE(excluded.in_reply_to, messages.in_reply_to),
        refs = COALESCE(excluded.refs, messages.refs),
        normalized_subject = COALESCE(excluded.normalized_subject, messages.normalized_subject),
        {_PROVENANCE_SET},
        updated_at = excluded.updated_at
    """,
}

_POLICY_PROVENANCE = {
    ConflictPolicy.INBOX_SCAN: Provenance.INBOX,
    ConflictPolicy.SENT_SCAN: Provenance.SENT,
    ConflictPolicy.BUCKET_SCAN: Provenance.INBOX,
    ConflictPolicy.USER_ASSIGN: Provenance.INBOX,
    ConflictPolicy.MANUAL_SEND: Provenance.MANUAL_SEND,
}


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MessageQuery:
    """Read-only predicate over cached messages.

    Unset fields do not constrain the result. When both ``thread_key`` and
    ``normalized_subject`` are given they are combined with OR, which is how
    conversation membership is matched.
    """

    identities: Sequence[str] | None = None
    thread_key: str | None = None
    normalized_subject: str | None = None
    bucket_id: str | None = None
    bucketed: bool | None = None
    archived: bool | None = None
    include_outgoing: bool = True
    missing_thread_key: bool = False
    sent_since: datetime | None = None
    limit: int | None = None
    oldest_first: bool = False


class SqliteMessageStore(BucketRepository, DraftRepository):
    """Persist message, bucket and draft state using SQLite.

    Each thread gets its own connection; concurrency is left to SQLite's
    transaction semantics in WAL mode.
    """

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the store and apply migrations."""
        self._settings = settings
        self._db_path = Path(settings.db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._apply_migrations()
        self._ensure_indexes()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteMessageStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure connections are closed when exiting context manager."""
        self.close()

    @property
    def _connection(self) -> sqlite3.Connection:
        connection = getattr(self._local, "connection", None)
        if connection is None:
            connection = sqlite3.connect(
                self._db_path, timeout=30.0, check_same_thread=False
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA busy_timeout = 30000")
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return connection

    # Message upserts ---------------------------------------------------------
    def upsert_message(
        self,
        summary: MessageSummary,
        policy: ConflictPolicy,
        *,
        bucket_id: str | None = None,
    ) -> None:
        """Insert ``summary`` or merge it into the existing row under ``policy``."""
        self.upsert_summaries([summary], policy, bucket_id=bucket_id)

    def upsert_summaries(
        self,
        summaries: Iterable[MessageSummary],
        policy: ConflictPolicy,
        *,
        bucket_id: str | None = None,
    ) -> int:
        """Upsert many summaries in one transaction, returning the row count."""
        rows = [self._summary_params(summary, policy, bucket_id) for summary in summaries]
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        statement = f"""
            INSERT INTO messages ({", ".join(_INSERT_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(identity) DO UPDATE SET {_CONFLICT_CLAUSES[policy]}
        """
        try:
            with self._connection:
                self._connection.executemany(statement, rows)
        except (sqlite3.IntegrityError, sqlite3.OperationalError) as exc:
            LOGGER.error(
                "Database error upserting %d message(s) with %s: %s",
                len(rows),
                policy.value,
                exc,
                exc_info=True,
            )
            raise ValueError(f"Failed to upsert messages ({policy.value}): {exc}") from exc
        LOGGER.debug("Upserted %d message(s) with policy %s", len(rows), policy.value)
        return len(rows)

    # Message queries ---------------------------------------------------------
    def fetch_message(self, identity: str) -> MessageRecord | None:
        """Retrieve a cached message by identity."""
        row = self._connection.execute(
            "SELECT * FROM messages WHERE identity = ?", (identity,)
        ).fetchone()
        return _row_to_record(row) if row else None

    def query(self, predicate: MessageQuery) -> list[MessageRecord]:
        """Return cached messages matching ``predicate``."""
        clauses: list[str] = []
        params: list[Any] = []

        if predicate.identities is not None:
            if not predicate.identities:
                return []
            clauses.append(f"identity IN ({_placeholders(predicate.identities)})")
            params.extend(predicate.identities)
        thread_terms: list[str] = []
        if predicate.thread_key:
            thread_terms.append("thread_key = ?")
            params.append(predicate.thread_key)
        if predicate.normalized_subject:
            thread_terms.append("normalized_subject = ?")
            params.append(predicate.normalized_subject)
        if thread_terms:
            clauses.append("(" + " OR ".join(thread_terms) + ")")
        if predicate.bucket_id is not None:
            clauses.append("assigned_bucket = ?")
            params.append(predicate.bucket_id)
        if predicate.bucketed is True:
            clauses.append("assigned_bucket IS NOT NULL AND assigned_bucket != ''")
        elif predicate.bucketed is False:
            clauses.append("(assigned_bucket IS NULL OR assigned_bucket = '')")
        if predicate.archived is True:
            clauses.append("archived_at IS NOT NULL")
        elif predicate.archived is False:
            clauses.append("archived_at IS NULL")
        if not predicate.include_outgoing:
            clauses.append(_NOT_OUTGOING)
        if predicate.missing_thread_key:
            clauses.append("(thread_key IS NULL OR thread_key = '')")
        if predicate.sent_since is not None:
            clauses.append("sent_at >= ?")
            params.append(serialize_datetime(predicate.sent_since))

        statement = "SELECT * FROM messages"
        if clauses:
            statement += " WHERE " + " AND ".join(clauses)
        direction = "ASC" if predicate.oldest_first else "DESC"
        statement += f" ORDER BY sent_at IS NULL, sent_at {direction}, identity"
        if predicate.limit is not None:
            statement += " LIMIT ?"
            params.append(predicate.limit)

        rows = self._connection.execute(statement, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def find_thread_trigger(self, thread_id: str) -> MessageRecord | None:
        """Resolve ``thread_id`` as a message identity first, then as a thread key."""
        row = self._connection.execute(
            """
            SELECT * FROM messages
            WHERE identity = ? OR thread_key = ?
            ORDER BY identity = ? DESC, sent_at DESC
            LIMIT 1
            """,
            (thread_id, thread_id, thread_id),
        ).fetchone()
        return _row_to_record(row) if row else None

    def thread_key_for_identity(self, identity: str) -> str | None:
        """Return the non-empty thread key of ``identity`` when cached."""
        row = self._connection.execute(
            """
            SELECT thread_key FROM messages
            WHERE identity = ? AND thread_key IS NOT NULL AND thread_key != ''
            """,
            (identity,),
        ).fetchone()
        return row["thread_key"] if row else None

    def find_thread_key_by_subject(
        self,
        normalized_subject: str,
        location: Location,
        *,
        exclude_identity: str | None = None,
    ) -> str | None:
        """Return the earliest thread key sharing ``normalized_subject`` in ``location``."""
        clauses = [
            "normalized_subject = ?",
            "thread_key IS NOT NULL",
            "thread_key != ''",
        ]
        params: list[Any] = [normalized_subject]
        scope_clauses, scope_params = _location_scope(location)
        clauses.extend(scope_clauses)
        params.extend(scope_params)
        if exclude_identity:
            clauses.append("identity != ?")
            params.append(exclude_identity)
        row = self._connection.execute(
            f"""
            SELECT thread_key FROM messages
            WHERE {" AND ".join(clauses)}
            ORDER BY sent_at IS NULL, sent_at ASC
            LIMIT 1
            """,
            params,
        ).fetchone()
        return row["thread_key"] if row else None

    def find_orphan_candidates(
        self, window_start: datetime, limit: int
    ) -> list[MessageRecord]:
        """Sample rows with a remote position but no folder or location of record."""
        if limit <= 0:
            return []
        rows = self._connection.execute(
            f"""
            SELECT * FROM messages
            WHERE uid IS NOT NULL
              AND (folder IS NULL OR folder = '')
              AND archived_at IS NULL
              AND (assigned_bucket IS NULL OR assigned_bucket = '')
              AND {_NOT_OUTGOING}
              AND sent_at IS NOT NULL
              AND sent_at >= ?
            ORDER BY sent_at DESC
            LIMIT ?
            """,
            (serialize_datetime(window_start), limit),
        ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_messages(self) -> int:
        """Return the number of cached messages."""
        row = self._connection.execute("SELECT COUNT(*) AS total FROM messages").fetchone()
        return int(row["total"]) if row else 0

    # Message mutations -------------------------------------------------------
    def set_thread_key(
        self, identity: str, thread_key: str, normalized_subject: str | None = None
    ) -> None:
        """Assign a non-empty thread key to ``identity``."""
        if not thread_key:
            raise ValueError("thread_key must not be empty")
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages
                SET thread_key = ?,
                    normalized_subject = COALESCE(?, normalized_subject),
                    updated_at = ?
                WHERE identity = ?
                """,
                (thread_key, normalized_subject, serialize_datetime(utc_now()), identity),
            )

    def move_to_bucket_batch(
        self,
        identities: Sequence[str],
        bucket_id: str | None,
        *,
        folder: str | None = None,
        thread_key: str | None = None,
    ) -> int:
        """Set ``bucket_id`` (or clear it) and clear archive state in one statement.

        Passing ``folder`` records a completed folder move, which also forgets
        the now stale UID. Outgoing rows are never touched.
        """
        if not identities:
            return 0
        statement = f"""
            UPDATE messages
            SET assigned_bucket = ?,
                archived_at = NULL,
                folder = COALESCE(?, folder),
                uid = CASE WHEN ? IS NULL THEN uid ELSE NULL END,
                thread_key = COALESCE(NULLIF(?, ''), thread_key),
                updated_at = ?
            WHERE identity IN ({_placeholders(identities)})
              AND {_NOT_OUTGOING}
        """
        params = [
            bucket_id,
            folder,
            folder,
            thread_key,
            serialize_datetime(utc_now()),
            *identities,
        ]
        with self._connection:
            cursor = self._connection.execute(statement, params)
        return cursor.rowcount

    def release_bucket_members(self, bucket_id: str, keep: Sequence[str]) -> int:
        """Clear ``bucket_id`` from active rows whose identity is not in ``keep``.

        ``keep`` must be a complete remote listing of the bucket; archived and
        outgoing rows are left alone.
        """
        clauses = ["assigned_bucket = ?", "archived_at IS NULL", _NOT_OUTGOING]
        params: list[Any] = [serialize_datetime(utc_now()), bucket_id]
        if keep:
            clauses.append(f"identity NOT IN ({_placeholders(keep)})")
            params.extend(keep)
        with self._connection:
            cursor = self._connection.execute(
                f"""
                UPDATE messages
                SET assigned_bucket = NULL,
                    updated_at = ?
                WHERE {" AND ".join(clauses)}
                """,
                params,
            )
        if cursor.rowcount:
            LOGGER.info(
                "Released %d message(s) no longer marked %s", cursor.rowcount, bucket_id
            )
        return cursor.rowcount

    def archive_batch(
        self,
        identities: Sequence[str],
        archived_at: datetime,
        *,
        archive_folder: str,
        thread_key: str | None = None,
    ) -> int:
        """Mark ``identities`` archived in one statement, keeping their bucket."""
        if not identities:
            return 0
        statement = f"""
            UPDATE messages
            SET archived_at = ?,
                folder = ?,
                uid = NULL,
                thread_key = COALESCE(NULLIF(?, ''), thread_key),
                updated_at = ?
            WHERE identity IN ({_placeholders(identities)})
              AND {_NOT_OUTGOING}
        """
        params = [
            serialize_datetime(archived_at),
            archive_folder,
            thread_key,
            serialize_datetime(utc_now()),
            *identities,
        ]
        with self._connection:
            cursor = self._connection.execute(statement, params)
        return cursor.rowcount

    def delete_messages(self, identities: Sequence[str]) -> int:
        """Delete cached rows for ``identities``."""
        if not identities:
            return 0
        with self._connection:
            cursor = self._connection.execute(
                f"DELETE FROM messages WHERE identity IN ({_placeholders(identities)})",
                list(identities),
            )
        LOGGER.debug("Deleted %d cached message(s)", cursor.rowcount)
        return cursor.rowcount

    def update_annotations(self, identity: str, **fields: Any) -> bool:
        """Set local-only annotations (``notes``, ``due_date``, ``preview``).

        Only rows the gateway has already produced are annotated; returns
        False when ``identity`` is not cached.
        """
        unknown = set(fields) - ANNOTATION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported annotation field(s): {sorted(unknown)}")
        if not fields:
            return self.fetch_message(identity) is not None
        columns = sorted(fields)
        values = [_annotation_value(fields[column]) for column in columns]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._connection:
            cursor = self._connection.execute(
                f"UPDATE messages SET {assignments}, updated_at = ? WHERE identity = ?",
                [*values, serialize_datetime(utc_now()), identity],
            )
        if cursor.rowcount == 0:
            LOGGER.warning("Cannot annotate %s; it is not cached", identity)
            return False
        return True

    # Cached bodies -----------------------------------------------------------
    def cache_body(
        self, identity: str, body: FetchedBody, preview: str | None = None
    ) -> None:
        """Store resolved body content; placeholders are never cached."""
        if not body.found:
            raise ValueError("Refusing to cache a not-found placeholder body")
        attachments = json.dumps(
            [
                {
                    "filename": attachment.filename,
                    "content_type": attachment.content_type,
                    "size": attachment.size,
                }
                for attachment in body.attachments
            ]
        )
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages
                SET body_html = ?,
                    body_text = ?,
                    attachments_json = ?,
                    preview = COALESCE(?, preview),
                    body_fetched_at = ?
                WHERE identity = ?
                """,
                (
                    body.html,
                    body.text,
                    attachments,
                    preview,
                    serialize_datetime(utc_now()),
                    identity,
                ),
            )

    def fetch_cached_body(self, identity: str) -> CachedBody | None:
        """Return cached body content when it has been fetched before."""
        row = self._connection.execute(
            """
            SELECT identity, body_html, body_text, attachments_json, body_fetched_at
            FROM messages
            WHERE identity = ? AND body_fetched_at IS NOT NULL
            """,
            (identity,),
        ).fetchone()
        if row is None:
            return None
        attachments = tuple(
            AttachmentMeta(
                filename=item.get("filename"),
                content_type=item.get("content_type"),
                size=item.get("size"),
            )
            for item in json.loads(row["attachments_json"] or "[]")
        )
        return CachedBody(
            identity=row["identity"],
            html=row["body_html"],
            text=row["body_text"],
            attachments=attachments,
            fetched_at=parse_datetime(row["body_fetched_at"]) or utc_now(),
        )

    # Buckets -----------------------------------------------------------------
    def list_buckets(self) -> list[Bucket]:
        """Return buckets ordered for display."""
        rows = self._connection.execute(
            "SELECT * FROM buckets ORDER BY sort_order, label"
        ).fetchall()
        return [_row_to_bucket(row) for row in rows]

    def fetch_bucket(self, bucket_id: str) -> Bucket | None:
        """Return a bucket by id."""
        row = self._connection.execute(
            "SELECT * FROM buckets WHERE id = ?", (bucket_id,)
        ).fetchone()
        return _row_to_bucket(row) if row else None

    def create_bucket(self, bucket: Bucket) -> Bucket:
        """Insert ``bucket``; raises ``ValueError`` when the id already exists."""
        try:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO buckets (id, label, color, sort_order, count)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (bucket.id, bucket.label, bucket.color, bucket.sort_order, bucket.count),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Bucket '{bucket.id}' already exists") from exc
        LOGGER.info("Created bucket '%s' (%s)", bucket.id, bucket.label)
        return bucket

    def update_bucket(
        self,
        bucket_id: str,
        *,
        label: str | None = None,
        color: str | None = None,
        sort_order: int | None = None,
    ) -> Bucket | None:
        """Apply the provided changes to a bucket and return the stored record."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE buckets
                SET label = COALESCE(?, label),
                    color = COALESCE(?, color),
                    sort_order = COALESCE(?, sort_order)
                WHERE id = ?
                """,
                (label, color, sort_order, bucket_id),
            )
        return self.fetch_bucket(bucket_id)

    def delete_bucket(self, bucket_id: str) -> bool:
        """Delete a bucket definition; cached assignments are left in place."""
        with self._connection:
            cursor = self._connection.execute(
                "DELETE FROM buckets WHERE id = ?", (bucket_id,)
            )
        return cursor.rowcount > 0

    def reorder_buckets(self, bucket_ids: Sequence[str]) -> None:
        """Persist display order following ``bucket_ids``."""
        with self._connection:
            self._connection.executemany(
                "UPDATE buckets SET sort_order = ? WHERE id = ?",
                [(index, bucket_id) for index, bucket_id in enumerate(bucket_ids)],
            )

    def next_sort_order(self) -> int:
        """Return the sort order for a newly appended bucket."""
        row = self._connection.execute(
            "SELECT COALESCE(MAX(sort_order) + 1, 0) AS next_order FROM buckets"
        ).fetchone()
        return int(row["next_order"])

    def set_bucket_count(self, bucket_id: str, count: int) -> None:
        """Persist a recomputed count."""
        with self._connection:
            self._connection.execute(
                "UPDATE buckets SET count = ? WHERE id = ?", (count, bucket_id)
            )

    def recount_bucket(self, bucket_id: str) -> int:
        """Recompute a bucket's count from cached rows and persist it."""
        row = self._connection.execute(
            f"""
            SELECT COUNT(*) AS total FROM messages
            WHERE assigned_bucket = ? AND archived_at IS NULL AND {_NOT_OUTGOING}
            """,
            (bucket_id,),
        ).fetchone()
        count = int(row["total"]) if row else 0
        self.set_bucket_count(bucket_id, count)
        return count

    # Drafts ------------------------------------------------------------------
    def save_draft(self, draft: DraftRecord) -> DraftRecord:
        """Insert or update a draft, returning it with id and timestamp set."""
        updated_at = utc_now()
        params = (
            draft.subject,
            draft.body_text,
            _join(draft.to),
            _join(draft.cc),
            _join(draft.bcc),
            draft.in_reply_to,
            " ".join(draft.references) or None,
            draft.remote_uid,
            draft.message_id,
            serialize_datetime(updated_at),
        )
        with self._connection:
            if draft.id is None:
                cursor = self._connection.execute(
                    """
                    INSERT INTO drafts (
                        subject, body_text, to_recipients, cc_recipients,
                        bcc_recipients, in_reply_to, refs, remote_uid, message_id,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
                draft.id = cursor.lastrowid
            else:
                self._connection.execute(
                    """
                    UPDATE drafts
                    SET subject = ?, body_text = ?, to_recipients = ?,
                        cc_recipients = ?, bcc_recipients = ?, in_reply_to = ?,
                        refs = ?, remote_uid = ?, message_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (*params, draft.id),
                )
        draft.updated_at = updated_at
        return draft

    def fetch_draft(self, draft_id: int) -> DraftRecord | None:
        """Return a stored draft."""
        row = self._connection.execute(
            "SELECT * FROM drafts WHERE id = ?", (draft_id,)
        ).fetchone()
        return _row_to_draft(row) if row else None

    def list_drafts(self) -> list[DraftRecord]:
        """Return stored drafts, newest first."""
        rows = self._connection.execute(
            "SELECT * FROM drafts ORDER BY updated_at DESC, id DESC"
        ).fetchall()
        return [_row_to_draft(row) for row in rows]

    def delete_draft(self, draft_id: int) -> bool:
        """Delete a stored draft."""
        with self._connection:
            cursor = self._connection.execute(
                "DELETE FROM drafts WHERE id = ?", (draft_id,)
            )
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            connection.close()
        self._local = threading.local()

    # Internal helpers --------------------------------------------------------
    def _summary_params(
        self,
        summary: MessageSummary,
        policy: ConflictPolicy,
        bucket_id: str | None,
    ) -> tuple[Any, ...]:
        if not summary.identity:
            raise ValueError("Message identity is required")
        bucket = None
        if policy in (ConflictPolicy.BUCKET_SCAN, ConflictPolicy.USER_ASSIGN):
            bucket = bucket_id
        return (
            summary.identity,
            summary.uid,
            summary.folder or None,
            summary.subject,
            summary.sender_name,
            summary.sender_address,
            serialize_datetime(summary.sent_at),
            summary.in_reply_to,
            " ".join(summary.references) or None,
            normalize_subject(summary.subject) or None,
            bucket,
            _POLICY_PROVENANCE[policy].value,
            int(summary.flagged),
            int(summary.seen),
            int(summary.is_draft),
            serialize_datetime(utc_now()),
        )

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)

    def _ensure_indexes(self) -> None:
        """Create supporting indexes for thread, bucket and window lookups."""
        index_statements = (
            "CREATE INDEX IF NOT EXISTS idx_messages_thread_key ON messages(thread_key)",
            "CREATE INDEX IF NOT EXISTS idx_messages_subject ON messages(normalized_subject)",
            "CREATE INDEX IF NOT EXISTS idx_messages_bucket ON messages(assigned_bucket, archived_at)",
            "CREATE INDEX IF NOT EXISTS idx_messages_sent_at ON messages(sent_at)",
        )
        with self._connection:
            for statement in index_statements:
                self._connection.execute(statement)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _location_scope(location: Location) -> tuple[list[str], list[Any]]:
    if location.kind is LocationKind.ARCHIVED:
        return ["archived_at IS NOT NULL"], []
    if location.kind is LocationKind.BUCKET:
        return (
            ["archived_at IS NULL", "assigned_bucket = ?", _NOT_OUTGOING],
            [location.bucket_id],
        )
    if location.kind is LocationKind.INBOX:
        return (
            [
                "archived_at IS NULL",
                "(assigned_bucket IS NULL OR assigned_bucket = '')",
                _NOT_OUTGOING,
            ],
            [],
        )
    # Sent and draft rows join whichever conversation carries their subject.
    return [], []


def _annotation_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _join(values: Sequence[str]) -> str | None:
    return ",".join(values) if values else None


def _split(value: str | None, separator: str = ",") -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(
        part for part in (segment.strip() for segment in value.split(separator)) if part
    )


def _row_to_record(row: sqlite3.Row) -> MessageRecord:
    due_date = row["due_date"]
    return MessageRecord(
        identity=row["identity"],
        uid=row["uid"],
        folder=row["folder"],
        subject=row["subject"],
        sender_name=row["sender_name"],
        sender_address=row["sender_address"],
        sent_at=parse_datetime(row["sent_at"]),
        in_reply_to=row["in_reply_to"],
        references=_split(row["refs"], " "),
        normalized_subject=row["normalized_subject"],
        thread_key=row["thread_key"] or None,
        assigned_bucket=row["assigned_bucket"] or None,
        archived_at=parse_datetime(row["archived_at"]),
        provenance=Provenance(row["provenance"]) if row["provenance"] else None,
        flagged=bool(row["flagged"]),
        seen=bool(row["seen"]),
        notes=row["notes"],
        due_date=date.fromisoformat(due_date[:10]) if due_date else None,
        preview=row["preview"],
        is_draft=bool(row["is_draft"]),
    )


def _row_to_bucket(row: sqlite3.Row) -> Bucket:
    return Bucket(
        id=row["id"],
        label=row["label"],
        color=row["color"],
        sort_order=row["sort_order"],
        count=row["count"],
    )


def _row_to_draft(row: sqlite3.Row) -> DraftRecord:
    return DraftRecord(
        id=row["id"],
        subject=row["subject"],
        body_text=row["body_text"],
        to=_split(row["to_recipients"]),
        cc=_split(row["cc_recipients"]),
        bcc=_split(row["bcc_recipients"]),
        in_reply_to=row["in_reply_to"],
        references=_split(row["refs"], " "),
        remote_uid=row["remote_uid"],
        message_id=row["message_id"],
        updated_at=parse_datetime(row["updated_at"]),
    )


__all__ = ["ANNOTATION_FIELDS", "MessageQuery", "SqliteMessageStore"]
