"""Transport adapters for the remote IMAP mailbox."""

from .imap_client import ImapGateway
from .session import (
    FolderUnavailableError,
    ImapConnectionError,
    ImapError,
    ImapSession,
    MessageNotFoundError,
    SessionLostError,
    VerificationError,
)

__all__ = [
    "FolderUnavailableError",
    "ImapConnectionError",
    "ImapError",
    "ImapGateway",
    "ImapSession",
    "MessageNotFoundError",
    "SessionLostError",
    "VerificationError",
]
