"""Helpers for decoding ``imaplib`` response payloads."""

from __future__ import annotations

import imaplib
import re
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

_UID = re.compile(rb"UID (\d+)")
_APPEND_UID = re.compile(rb"APPENDUID \d+ (\d+)")


@dataclass(slots=True)
class FetchItem:
    """One message entry of a FETCH response."""

    uid: int | None
    flags: frozenset[str]
    literal: bytes | None


def iter_fetch_items(data: Sequence[Any] | None) -> Iterator[FetchItem]:
    """Group ``imaplib`` FETCH chunks into per-message items.

    ``imaplib`` returns literals as ``(prefix, literal)`` tuples followed by a
    bytes tail which may carry attributes such as FLAGS after the literal.
    """
    meta: bytes | None = None
    literal: bytes | None = None
    for entry in data or ():
        if isinstance(entry, tuple) and len(entry) >= 2:
            if meta is not None:
                yield _build_item(meta, literal)
            meta, literal = bytes(entry[0]), bytes(entry[1])
        elif isinstance(entry, bytes):
            if meta is not None and literal is not None and not _UID.search(entry):
                meta += entry
                yield _build_item(meta, literal)
                meta, literal = None, None
            else:
                if meta is not None:
                    yield _build_item(meta, literal)
                meta, literal = entry, None
    if meta is not None:
        yield _build_item(meta, literal)


def _build_item(meta: bytes, literal: bytes | None) -> FetchItem:
    uid_match = _UID.search(meta)
    return FetchItem(
        uid=int(uid_match.group(1)) if uid_match else None,
        flags=parse_flags(meta),
        literal=literal,
    )


def parse_flags(meta: bytes) -> frozenset[str]:
    """Return the FLAGS list contained in a response line."""
    return frozenset(
        flag.decode("utf-8", errors="replace") for flag in imaplib.ParseFlags(meta)
    )


def parse_search(data: Sequence[Any] | None) -> list[bytes]:
    """Return UIDs from a SEARCH response."""
    if not data or not data[0]:
        return []
    first = data[0]
    if isinstance(first, str):
        first = first.encode()
    return first.split()


def parse_append_uid(data: Sequence[Any] | None) -> int | None:
    """Extract the UID from an ``APPENDUID`` response code when present."""
    for entry in data or ():
        if isinstance(entry, bytes):
            match = _APPEND_UID.search(entry)
            if match:
                return int(match.group(1))
    return None


def quote(value: str) -> str:
    """Quote a mailbox name or search string for use in a command."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def flag_list(flags: Iterable[str]) -> str:
    """Format flags as a parenthesised IMAP list."""
    return "(" + " ".join(flags) + ")"


def uid_set(uids: Iterable[bytes | int | str]) -> str:
    """Join UIDs into a comma separated sequence set."""
    return ",".join(
        uid.decode() if isinstance(uid, bytes) else str(uid) for uid in uids
    )


def chunked(items: Iterable[bytes], size: int) -> Iterator[list[bytes]]:
    """Yield successive lists of ``size`` elements."""
    batch: list[bytes] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


__all__ = [
    "FetchItem",
    "chunked",
    "flag_list",
    "iter_fetch_items",
    "parse_append_uid",
    "parse_flags",
    "parse_search",
    "quote",
    "uid_set",
]
