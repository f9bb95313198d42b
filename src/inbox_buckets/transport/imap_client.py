"""IMAP gateway serializing every remote mailbox operation."""

from __future__ import annotations

import imaplib
import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from types import TracebackType
from typing import TypeVar

from ..core.config import ImapSettings
from ..core.datetime_utils import ensure_utc, imap_date
from ..core.interfaces import MailboxGateway
from ..core.markers import (
    ARCHIVED_MARKER,
    BUCKETED_MARKER,
    category_markers_in,
    is_bucket_marker,
    sanitize_marker,
)
from ..core.models import (
    DraftRecord,
    FetchedBody,
    MessageLocationHint,
    MessageSummary,
)
from ..ingestion.parser import EmailParser
from .compose import build_draft_message
from .responses import (
    chunked,
    flag_list,
    iter_fetch_items,
    parse_append_uid,
    parse_search,
    quote,
    uid_set,
)
from .session import (
    SESSION_ERRORS,
    Connection,
    ConnectionFactory,
    ImapError,
    ImapSession,
    MessageNotFoundError,
    SessionLostError,
    VerificationError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_QUERY = (
    "(UID FLAGS BODY.PEEK[HEADER.FIELDS "
    "(MESSAGE-ID FROM SUBJECT DATE IN-REPLY-TO REFERENCES)])"
)
BODY_QUERY = "(UID BODY.PEEK[])"


class ImapGateway(MailboxGateway):
    """Folder-scoped, lock-serialized operations over one shared IMAP session.

    Every operation takes the lock of the folder it touches and then the
    session lock, so multi-step sequences such as "remove flags then move"
    never interleave with another caller's commands. Session-level failures
    trigger exactly one reconnect-and-retry per call.
    """

    def __init__(
        self,
        settings: ImapSettings,
        *,
        session: ImapSession | None = None,
        connection_factory: ConnectionFactory | None = None,
        parser: EmailParser | None = None,
        batch_size: int = 50,
    ) -> None:
        """Initialise the gateway; the session connects lazily."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._settings = settings
        self._session = session or ImapSession(settings, connection_factory)
        self._parser = parser or EmailParser()
        self._batch_size = batch_size
        self._session_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._folder_locks: dict[str, threading.RLock] = {}

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapGateway:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the session is closed when exiting context manager."""
        self.close()

    @property
    def session(self) -> ImapSession:
        """Expose the owned session for diagnostics."""
        return self._session

    # Listing -----------------------------------------------------------------
    def list_inbox_summaries(
        self, cutoff: datetime, include_flagged: bool
    ) -> list[MessageSummary]:
        """Return unbucketed, unarchived inbox messages inside the sync window."""
        inbox = self._settings.inbox_folder
        criteria = f"UNKEYWORD {BUCKETED_MARKER} UNKEYWORD {ARCHIVED_MARKER} UNDELETED"
        summaries = self._list_summaries(inbox, criteria, "inbox listing")
        window_start = ensure_utc(cutoff)

        included: list[MessageSummary] = []
        for summary in summaries:
            lowered = {flag.lower() for flag in summary.flags}
            if BUCKETED_MARKER in lowered or ARCHIVED_MARKER in lowered:
                continue
            in_window = (
                summary.sent_at is not None
                and window_start is not None
                and summary.sent_at >= window_start
            )
            if in_window or (include_flagged and summary.flagged):
                included.append(summary)

        LOGGER.info(
            "Inbox listing returned %d of %d message(s) inside the window",
            len(included),
            len(summaries),
        )
        return included

    def list_inbox_identities(
        self, cutoff: datetime, include_flagged: bool
    ) -> set[str]:
        """Return identities currently present in the inbox listing."""
        return {
            summary.identity
            for summary in self.list_inbox_summaries(cutoff, include_flagged)
            if summary.identity
        }

    def list_folder_summaries(
        self, folder: str, cutoff: datetime | None = None
    ) -> list[MessageSummary]:
        """Return summaries for ``folder``, optionally limited to recent mail."""
        criteria = "UNDELETED"
        if cutoff is not None:
            criteria += f" SINCE {imap_date(cutoff.date())}"
        return self._list_summaries(folder, criteria, f"listing of '{folder}'")

    def list_marker_summaries(self, marker: str) -> list[MessageSummary]:
        """Return inbox messages carrying ``marker`` that are not archived."""
        keyword = sanitize_marker(marker)
        criteria = f"KEYWORD {keyword} UNKEYWORD {ARCHIVED_MARKER} UNDELETED"
        return self._list_summaries(
            self._settings.inbox_folder, criteria, f"bucket listing for {keyword}"
        )

    def count_matching_marker(self, marker: str) -> int:
        """Count inbox messages carrying ``marker`` with a full-folder search."""
        keyword = sanitize_marker(marker)
        criteria = f"KEYWORD {keyword} UNKEYWORD {ARCHIVED_MARKER} UNDELETED"

        def operation() -> int:
            with self._folder(
                self._settings.inbox_folder, self._settings.fetch_timeout_seconds
            ) as connection:
                return len(self._search(connection, criteria))

        return self._call(f"count of {keyword}", operation)

    def discover_category_markers(self) -> set[str]:
        """Scan every inbox message's flags for bucket markers."""

        def operation() -> set[str]:
            discovered: set[str] = set()
            with self._folder(
                self._settings.inbox_folder, self._settings.fetch_timeout_seconds
            ) as connection:
                uids = self._search(connection, "UNDELETED")
                for chunk in chunked(uids, self._batch_size):
                    status, data = connection.uid("FETCH", uid_set(chunk), "(FLAGS)")
                    if status != "OK":
                        raise ImapError("Failed to fetch flags during discovery")
                    for item in iter_fetch_items(data):
                        discovered.update(
                            flag for flag in item.flags if is_bucket_marker(flag)
                        )
            return discovered

        markers = self._call("marker discovery", operation)
        LOGGER.info("Discovered %d category marker(s)", len(markers))
        return markers

    # Bodies ------------------------------------------------------------------
    def fetch_body(
        self, identity: str, location_hint: MessageLocationHint | None = None
    ) -> FetchedBody:
        """Resolve the body of ``identity``, returning a placeholder on a miss."""
        if location_hint is not None and location_hint.uid is not None:
            hint = location_hint
            try:
                body = self._call(
                    f"positional fetch of {identity}",
                    lambda: self._fetch_by_uid(hint.folder, hint.uid, identity),
                )
            except ImapError as exc:
                LOGGER.warning(
                    "Positional fetch of %s in '%s' failed: %s",
                    identity,
                    hint.folder,
                    exc,
                )
            else:
                if body is not None:
                    return body

        for folder in self._search_order(location_hint):
            try:
                body = self._call(
                    f"search for {identity} in '{folder}'",
                    lambda folder=folder: self._fetch_by_search(folder, identity),
                )
            except ImapError as exc:
                LOGGER.warning(
                    "Searching '%s' for %s failed: %s", folder, identity, exc
                )
                continue
            if body is not None:
                return body

        LOGGER.info("Message %s not found in any folder", identity)
        return FetchedBody.not_found(identity)

    # Markers and moves -------------------------------------------------------
    def set_category_markers(self, identity: str, markers: Sequence[str]) -> None:
        """Replace every category marker on ``identity`` with ``markers``."""
        requested = _with_sentinel(sanitize_marker(marker) for marker in markers)
        inbox = self._settings.inbox_folder

        def operation() -> None:
            with self._folder(inbox, self._settings.command_timeout_seconds) as connection:
                uid = self._find_uid(connection, identity)
                if uid is None:
                    raise MessageNotFoundError(identity, inbox)
                stale = category_markers_in(self._fetch_flags(connection, uid))
                if stale:
                    self._store(connection, uid, "-FLAGS.SILENT", stale)
                for marker in requested:
                    self._store(connection, uid, "+FLAGS.SILENT", [marker])

        self._call(f"marker update for {identity}", operation)
        LOGGER.debug("Set markers %s on %s", requested or "(none)", identity)

    def move_to_archive_folder(self, identity: str) -> None:
        """Flag ``identity`` archived and move it to the archive folder."""
        inbox = self._settings.inbox_folder
        archive = self._settings.archive_folder

        def operation() -> bool:
            with self._session_lock:
                self._session.ensure_folder(archive)
            with self._folder(inbox, self._settings.command_timeout_seconds) as connection:
                uid = self._find_uid(connection, identity)
                if uid is None:
                    return False
                self._store(connection, uid, "+FLAGS.SILENT", [ARCHIVED_MARKER])
                self._move(connection, uid, archive)
                return True

        moved = self._call(f"archive of {identity}", operation)
        self._verify_destination(identity, source=inbox, destination=archive, moved=moved)

    def move_from_archive(
        self,
        identity: str,
        target_folder: str | None = None,
        markers: Sequence[str] = (),
    ) -> None:
        """Clear archive state on ``identity`` and move it to ``target_folder``."""
        archive = self._settings.archive_folder
        target = target_folder or self._settings.inbox_folder
        requested = _with_sentinel(sanitize_marker(marker) for marker in markers)

        def operation() -> bool:
            with self._folder(archive, self._settings.command_timeout_seconds) as connection:
                uid = self._find_uid(connection, identity)
                if uid is None:
                    return False
                current = self._fetch_flags(connection, uid)
                stale = [ARCHIVED_MARKER, *category_markers_in(current)]
                self._store(connection, uid, "-FLAGS.SILENT", stale)
                for marker in requested:
                    self._store(connection, uid, "+FLAGS.SILENT", [marker])
                self._move(connection, uid, target)
                return True

        moved = self._call(f"unarchive of {identity}", operation)
        self._verify_destination(identity, source=archive, destination=target, moved=moved)

    def mark_seen(
        self, identity: str, location_hint: MessageLocationHint | None = None
    ) -> None:
        """Set ``\\Seen`` on ``identity`` in whichever folder currently holds it."""
        folders = _unique(
            [
                location_hint.folder if location_hint else None,
                self._settings.inbox_folder,
                self._settings.archive_folder,
            ]
        )
        for folder in folders:

            def operation(folder: str = folder) -> bool:
                with self._folder(
                    folder, self._settings.command_timeout_seconds
                ) as connection:
                    uid = self._find_uid(connection, identity)
                    if uid is None:
                        return False
                    self._store(connection, uid, "+FLAGS.SILENT", ["\\Seen"])
                    return True

            if self._call(f"mark read of {identity} in '{folder}'", operation):
                return
        raise MessageNotFoundError(identity, self._settings.inbox_folder)

    # Drafts and sent copies --------------------------------------------------
    def append_draft(self, draft: DraftRecord, sender: str | None) -> int | None:
        """Append ``draft`` to the drafts folder and return its UID when reported."""
        payload = build_draft_message(draft, sender or self._settings.username).as_bytes()
        return self._append(self._settings.drafts_folder, "(\\Draft \\Seen)", payload)

    def delete_draft(self, uid: int) -> None:
        """Delete a draft by UID and expunge it from the drafts folder."""
        drafts = self._settings.drafts_folder

        def operation() -> None:
            with self._folder(drafts, self._settings.command_timeout_seconds) as connection:
                self._store(connection, str(uid), "+FLAGS.SILENT", ["\\Deleted"])
                status, _ = connection.expunge()
                if status != "OK":
                    raise ImapError(f"Failed to expunge draft UID {uid}")

        self._call(f"draft deletion of UID {uid}", operation)

    def append_sent_copy(self, payload: bytes) -> int | None:
        """Append an already sent message to the configured sent folder."""
        sent_folder = self._settings.sent_folder
        if not sent_folder:
            raise ImapError("No sent folder is configured")
        return self._append(sent_folder, "(\\Seen)", payload)

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        with self._session_lock:
            self._session.close()

    # Internal helpers ---------------------------------------------------------
    def _lock_for(self, folder: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._folder_locks.get(folder)
            if lock is None:
                lock = threading.RLock()
                self._folder_locks[folder] = lock
            return lock

    @contextmanager
    def _folder(self, folder: str, timeout: float) -> Iterator[Connection]:
        """Hold ``folder``'s lock and the session lock with ``folder`` selected."""
        with self._lock_for(folder), self._session_lock:
            connection = self._session.connect()
            self._session.set_timeout(timeout)
            self._session.select(folder)
            yield connection

    def _call(self, description: str, operation: Callable[[], T]) -> T:
        """Run ``operation``, reconnecting and retrying once on session loss."""
        try:
            return operation()
        except SESSION_ERRORS as exc:
            LOGGER.warning(
                "IMAP session lost during %s (%s); reconnecting", description, exc
            )
            with self._session_lock:
                self._session.reconnect()
            try:
                return operation()
            except SESSION_ERRORS as retry_exc:
                with self._session_lock:
                    self._session.teardown()
                raise SessionLostError(
                    f"IMAP session lost during {description}"
                ) from retry_exc
            except imaplib.IMAP4.error as retry_exc:
                raise ImapError(
                    f"IMAP command failed during {description}: {retry_exc}"
                ) from retry_exc
        except imaplib.IMAP4.error as exc:
            raise ImapError(f"IMAP command failed during {description}: {exc}") from exc

    def _list_summaries(
        self, folder: str, criteria: str, description: str
    ) -> list[MessageSummary]:
        def operation() -> list[MessageSummary]:
            with self._folder(folder, self._settings.fetch_timeout_seconds) as connection:
                uids = self._search(connection, criteria)
                return self._fetch_summaries(connection, folder, uids)

        return self._call(description, operation)

    def _fetch_summaries(
        self, connection: Connection, folder: str, uids: list[bytes]
    ) -> list[MessageSummary]:
        summaries: list[MessageSummary] = []
        for chunk in chunked(uids, self._batch_size):
            status, data = connection.uid("FETCH", uid_set(chunk), SUMMARY_QUERY)
            if status != "OK":
                raise ImapError(f"Failed to fetch headers from '{folder}'")
            for item in iter_fetch_items(data):
                if item.literal is None:
                    continue
                summary = self._parser.parse_summary(
                    item.uid, item.literal, folder, item.flags
                )
                if not summary.identity or not summary.sender_address:
                    LOGGER.warning(
                        "Skipping malformed message UID %s in '%s' "
                        "(identity=%r, sender=%r)",
                        item.uid,
                        folder,
                        summary.identity,
                        summary.sender_address,
                    )
                    continue
                summaries.append(summary)
        return summaries

    def _fetch_by_uid(
        self, folder: str, uid: int | None, identity: str
    ) -> FetchedBody | None:
        with self._folder(folder, self._settings.fetch_timeout_seconds) as connection:
            payload = self._fetch_payload(connection, str(uid))
        if payload is None:
            return None
        found_identity, body = self._parser.parse_body(payload, folder=folder)
        if found_identity != identity:
            LOGGER.info(
                "UID %s in '%s' holds %s instead of %s; falling back to search",
                uid,
                folder,
                found_identity,
                identity,
            )
            return None
        return body

    def _fetch_by_search(self, folder: str, identity: str) -> FetchedBody | None:
        with self._folder(folder, self._settings.fetch_timeout_seconds) as connection:
            uid = self._find_uid(connection, identity)
            if uid is None:
                return None
            payload = self._fetch_payload(connection, uid)
        if payload is None:
            return None
        _, body = self._parser.parse_body(payload, folder=folder)
        body.identity = identity
        return body

    def _search_order(self, hint: MessageLocationHint | None) -> list[str]:
        return _unique(
            [
                hint.folder if hint else None,
                self._settings.inbox_folder,
                self._settings.archive_folder,
                self._settings.sent_folder,
            ]
        )

    def _verify_destination(
        self, identity: str, *, source: str, destination: str, moved: bool
    ) -> None:
        def operation() -> bool:
            with self._folder(
                destination, self._settings.command_timeout_seconds
            ) as connection:
                return self._find_uid(connection, identity) is not None

        present = self._call(f"verification of {identity} in '{destination}'", operation)
        if present:
            if not moved:
                LOGGER.info("%s was already in '%s'", identity, destination)
            return
        if moved:
            LOGGER.error(
                "Move of %s from '%s' to '%s' was not confirmed",
                identity,
                source,
                destination,
            )
            raise VerificationError(identity, destination)
        raise MessageNotFoundError(identity, source)

    def _append(self, folder: str, flags: str, payload: bytes) -> int | None:
        def operation() -> int | None:
            with self._lock_for(folder), self._session_lock:
                self._session.ensure_folder(folder)
                connection = self._session.connect()
                self._session.set_timeout(self._settings.command_timeout_seconds)
                status, data = connection.append(
                    quote(folder),
                    flags,
                    imaplib.Time2Internaldate(time.time()),
                    payload,
                )
            if status != "OK":
                raise ImapError(f"Failed to append message to '{folder}'")
            return parse_append_uid(data)

        return self._call(f"append to '{folder}'", operation)

    def _move(self, connection: Connection, uid: bytes | str, destination: str) -> None:
        uid_text = _uid_text(uid)
        if self._session.supports_move:
            status, _ = connection.uid("MOVE", uid_text, quote(destination))
            if status != "OK":
                raise ImapError(f"Failed to move UID {uid_text} to '{destination}'")
            return
        status, _ = connection.uid("COPY", uid_text, quote(destination))
        if status != "OK":
            raise ImapError(f"Failed to copy UID {uid_text} to '{destination}'")
        self._store(connection, uid, "+FLAGS.SILENT", ["\\Deleted"])
        status, _ = connection.expunge()
        if status != "OK":
            raise ImapError(f"Failed to expunge UID {uid_text} after copy")

    @staticmethod
    def _search(connection: Connection, criteria: str) -> list[bytes]:
        status, data = connection.uid("SEARCH", None, criteria)  # type: ignore[arg-type]
        if status != "OK":
            raise ImapError(f"Search failed: {criteria}")
        return parse_search(data)

    def _find_uid(self, connection: Connection, identity: str) -> bytes | None:
        uids = self._search(connection, f"HEADER Message-ID {quote(identity)}")
        return uids[-1] if uids else None

    @staticmethod
    def _fetch_flags(connection: Connection, uid: bytes | str) -> frozenset[str]:
        uid_text = _uid_text(uid)
        status, data = connection.uid("FETCH", uid_text, "(FLAGS)")
        if status != "OK":
            raise ImapError(f"Failed to fetch flags for UID {uid_text}")
        for item in iter_fetch_items(data):
            return item.flags
        return frozenset()

    @staticmethod
    def _fetch_payload(connection: Connection, uid: bytes | str) -> bytes | None:
        uid_text = _uid_text(uid)
        status, data = connection.uid("FETCH", uid_text, BODY_QUERY)
        if status != "OK":
            raise ImapError(f"Failed to fetch message UID {uid_text}")
        for item in iter_fetch_items(data):
            if item.literal is not None:
                return item.literal
        return None

    @staticmethod
    def _store(
        connection: Connection, uid: bytes | str, action: str, flags: Sequence[str]
    ) -> None:
        uid_text = _uid_text(uid)
        status, _ = connection.uid("STORE", uid_text, action, flag_list(flags))
        if status != "OK":
            raise ImapError(f"Failed to {action} {flags} on UID {uid_text}")


def _uid_text(uid: bytes | str) -> str:
    return uid.decode() if isinstance(uid, bytes) else str(uid)


def _with_sentinel(markers: Iterator[str] | Sequence[str]) -> list[str]:
    """Return unique markers followed by the categorized sentinel, or nothing."""
    unique = [
        marker
        for marker in dict.fromkeys(markers)
        if marker.lower() != BUCKETED_MARKER
    ]
    if not unique:
        return []
    return [*unique, BUCKETED_MARKER]


def _unique(folders: Sequence[str | None]) -> list[str]:
    return [folder for folder in dict.fromkeys(folders) if folder]


__all__ = ["BODY_QUERY", "ImapGateway", "SUMMARY_QUERY"]
