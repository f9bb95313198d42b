"""Utilities for parsing raw RFC822 payloads into structured models."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc
from ..core.models import AttachmentMeta, FetchedBody, MessageSummary

LOGGER = logging.getLogger(__name__)

PREVIEW_LENGTH = 200

_MESSAGE_ID = re.compile(r"<[^<>\s]+>")
_TAGS = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


class EmailParser:
    """Convert header blocks and full payloads into domain models."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse_summary(
        self,
        uid: int | None,
        headers: bytes,
        folder: str,
        flags: Iterable[str] = (),
    ) -> MessageSummary:
        """Parse a header-only fetch into a :class:`MessageSummary`."""
        message = self._parser.parsebytes(headers, headersonly=True)
        sender_name, sender_address = _first_address(message.get("From"))
        return MessageSummary(
            identity=normalize_message_id(message.get("Message-ID")),
            uid=uid,
            folder=folder,
            subject=_header_text(message.get("Subject")),
            sender_name=sender_name,
            sender_address=sender_address,
            sent_at=_try_parse_datetime(message.get("Date")),
            flags=frozenset(flags),
            in_reply_to=normalize_message_id(message.get("In-Reply-To")),
            references=parse_references(message.get("References")),
        )

    def parse_body(
        self, payload: bytes, *, folder: str | None = None
    ) -> tuple[str | None, FetchedBody]:
        """Parse a full payload, returning its Message-ID and body content."""
        message = self._parser.parsebytes(payload)
        identity = normalize_message_id(message.get("Message-ID"))
        body_text, body_html = _extract_bodies(message)
        body = FetchedBody(
            identity=identity or "",
            html=body_html,
            text=body_text,
            attachments=tuple(_collect_attachments(message)),
            found=True,
            folder=folder,
        )
        return identity, body


def normalize_message_id(value: str | None) -> str | None:
    """Return the first ``<...>`` token of a Message-ID style header."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    match = _MESSAGE_ID.search(text)
    return match.group(0) if match else text


def parse_references(value: str | None) -> tuple[str, ...]:
    """Split a References header into ordered, de-duplicated message ids."""
    if not value:
        return ()
    seen: dict[str, None] = {}
    for token in _MESSAGE_ID.findall(str(value)):
        seen.setdefault(token, None)
    return tuple(seen)


def build_preview(body: FetchedBody, limit: int = PREVIEW_LENGTH) -> str | None:
    """Return a short single-line preview of ``body``."""
    source = body.text or (_TAGS.sub(" ", body.html) if body.html else None)
    if not source:
        return None
    collapsed = _WHITESPACE.sub(" ", source).strip()
    return collapsed[:limit] or None


def _header_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first_address(header_value: str | None) -> tuple[str | None, str | None]:
    if header_value is None:
        return None, None
    for name, email_address in getaddresses([str(header_value)]):
        if email_address:
            return (name or None), email_address
    return None, None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except (LookupError, ValueError):
            LOGGER.debug("Skipping undecodable %s part", part.get_content_type())
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html = _collapse_chunks(html_chunks, "\n")
    return text, html


def _collect_attachments(message: EmailMessage) -> Iterable[AttachmentMeta]:
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        yield AttachmentMeta(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            size=len(payload) if payload else None,
        )


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(str(header_value)))
    except (TypeError, ValueError, IndexError):
        return None


__all__ = [
    "EmailParser",
    "PREVIEW_LENGTH",
    "build_preview",
    "normalize_message_id",
    "parse_references",
]
