"""Owned IMAP session with an explicit reconnect lifecycle."""

from __future__ import annotations

import imaplib
import logging
from collections.abc import Callable
from types import TracebackType

from ..core.config import ImapSettings
from .responses import quote

LOGGER = logging.getLogger(__name__)

Connection = imaplib.IMAP4 | imaplib.IMAP4_SSL
ConnectionFactory = Callable[[ImapSettings], Connection]


class ImapError(RuntimeError):
    """Wrap low level IMAP errors with additional context."""


class ImapConnectionError(ImapError):
    """Raised when the server cannot be reached or rejects the login."""


class SessionLostError(ImapError):
    """Raised when a command still fails after one reconnect."""


class FolderUnavailableError(ImapError):
    """Raised when a folder cannot be selected or created."""


class MessageNotFoundError(ImapError):
    """Raised when no message with the requested identity exists in a folder."""

    def __init__(self, identity: str, folder: str) -> None:
        super().__init__(f"Message {identity} not found in '{folder}'")
        self.identity = identity
        self.folder = folder


class VerificationError(ImapError):
    """Raised when a move did not produce the expected post-condition."""

    def __init__(self, identity: str, folder: str) -> None:
        super().__init__(f"Message {identity} missing from '{folder}' after move")
        self.identity = identity
        self.folder = folder


# imaplib raises ``abort`` for dropped sessions; sockets raise OSError/TimeoutError.
SESSION_ERRORS: tuple[type[BaseException], ...] = (imaplib.IMAP4.abort, OSError)


def open_connection(settings: ImapSettings) -> Connection:
    """Open a socket to the configured server without authenticating."""
    timeout = settings.connect_timeout_seconds
    if settings.use_ssl:
        LOGGER.debug(
            "Connecting to IMAP host %s:%s via SSL", settings.host, settings.port
        )
        return imaplib.IMAP4_SSL(settings.host, settings.port, timeout=timeout)
    LOGGER.debug(
        "Connecting to IMAP host %s:%s without SSL", settings.host, settings.port
    )
    return imaplib.IMAP4(settings.host, settings.port, timeout=timeout)


class ImapSession:
    """A single authenticated session shared by every gateway operation.

    The session is not thread-safe on its own; callers serialize access with
    the gateway's session lock. ``reconnect`` is the only way to replace the
    underlying connection.
    """

    def __init__(
        self,
        settings: ImapSettings,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        """Initialise the session without connecting."""
        self._settings = settings
        self._factory = connection_factory or open_connection
        self._connection: Connection | None = None
        self._selected: str | None = None
        self._known_folders: set[str] = set()
        self.reconnects = 0

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapSession:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Lifecycle ---------------------------------------------------------------
    @property
    def connected(self) -> bool:
        """Return True when a connection is currently open."""
        return self._connection is not None

    def connect(self) -> Connection:
        """Return the open connection, establishing and authenticating it if needed."""
        if self._connection is not None:
            return self._connection

        username = self._settings.username
        password = self._settings.app_password
        if username is None or password is None:
            raise ImapConnectionError("IMAP credentials are not configured")

        try:
            connection = self._factory(self._settings)
            LOGGER.debug("Authenticating as %s", username)
            connection.login(username, password)
        except imaplib.IMAP4.error as exc:
            raise ImapConnectionError("Failed to authenticate with IMAP server") from exc
        except OSError as exc:
            raise ImapConnectionError(
                f"Unable to reach IMAP server {self._settings.host}:{self._settings.port}"
            ) from exc

        self._connection = connection
        self._selected = None
        return connection

    def reconnect(self) -> Connection:
        """Tear down the current connection and open a fresh one."""
        LOGGER.info("Re-establishing IMAP session")
        self.teardown()
        self.reconnects += 1
        return self.connect()

    def teardown(self) -> None:
        """Drop the connection without a graceful CLOSE; used after failures."""
        connection = self._connection
        self._connection = None
        self._selected = None
        if connection is None:
            return
        try:
            connection.logout()
        except (imaplib.IMAP4.error, OSError):
            LOGGER.debug("IMAP logout raised during teardown; ignoring")

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            if self._selected is not None:
                LOGGER.debug("Closing IMAP folder '%s'", self._selected)
                self._connection.close()
        except (imaplib.IMAP4.error, OSError):
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            self.teardown()

    # Folder helpers ----------------------------------------------------------
    def select(self, folder: str) -> None:
        """Select ``folder`` read-write unless it is already selected."""
        if self._selected == folder:
            return
        connection = self.connect()
        status, _ = connection.select(quote(folder))
        if status != "OK":
            self._selected = None
            raise FolderUnavailableError(f"Unable to select folder '{folder}'")
        self._selected = folder
        self._known_folders.add(folder)

    def ensure_folder(self, folder: str) -> None:
        """Create ``folder`` when the server does not have it yet."""
        if folder in self._known_folders:
            return
        connection = self.connect()
        status, data = connection.list('""', quote(folder))
        if status == "OK" and any(entry for entry in data or () if entry):
            self._known_folders.add(folder)
            return
        LOGGER.info("Creating missing IMAP folder '%s'", folder)
        status, _ = connection.create(quote(folder))
        if status != "OK":
            raise FolderUnavailableError(f"Unable to create folder '{folder}'")
        self._known_folders.add(folder)

    def forget_selection(self) -> None:
        """Force the next ``select`` to issue a SELECT command."""
        self._selected = None

    def set_timeout(self, seconds: float) -> None:
        """Apply a per-command socket timeout to the live connection."""
        connection = self.connect()
        sock = getattr(connection, "sock", None)
        if sock is not None and hasattr(sock, "settimeout"):
            sock.settimeout(seconds)

    @property
    def supports_move(self) -> bool:
        """Return True when the server advertises RFC 6851 MOVE."""
        connection = self.connect()
        capabilities = getattr(connection, "capabilities", ()) or ()
        return "MOVE" in {str(cap).upper() for cap in capabilities}


__all__ = [
    "Connection",
    "ConnectionFactory",
    "FolderUnavailableError",
    "ImapConnectionError",
    "ImapError",
    "ImapSession",
    "MessageNotFoundError",
    "SESSION_ERRORS",
    "SessionLostError",
    "VerificationError",
    "open_connection",
]
