"""Remote keyword conventions used to encode buckets and archive state."""

from __future__ import annotations

import re
from collections.abc import Iterable

BUCKETED_MARKER = "$bucketed"
ARCHIVED_MARKER = "$archived"

# Keywords servers and other clients set on their own; never category markers.
SYSTEM_KEYWORDS = frozenset(
    keyword.lower()
    for keyword in (
        "$Forwarded",
        "$MDNSent",
        "$Junk",
        "$NotJunk",
        "$Phishing",
        "$Important",
        "$Submitted",
        "$SubmitPending",
    )
)

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9_-]")

BUCKET_COLORS = (
    "#3b82f6",
    "#10b981",
    "#f59e0b",
    "#ef4444",
    "#8b5cf6",
    "#ec4899",
    "#14b8a6",
    "#f97316",
)


def sanitize_marker(name: str) -> str:
    """Return an IMAP-safe keyword for a bucket id or label."""
    stripped = name.strip().removeprefix("$")
    if not stripped:
        raise ValueError("Marker name must not be empty")
    return "$" + _UNSAFE_CHARACTERS.sub("_", stripped)


def is_category_marker(flag: str) -> bool:
    """Return True when ``flag`` is a keyword this application manages as a category."""
    if not flag.startswith("$"):
        return False
    lowered = flag.lower()
    if lowered == ARCHIVED_MARKER:
        return False
    return lowered not in SYSTEM_KEYWORDS


def is_bucket_marker(flag: str) -> bool:
    """Return True for category markers that name a bucket (not the sentinel)."""
    return is_category_marker(flag) and flag.lower() != BUCKETED_MARKER


def bucket_id_for_marker(marker: str) -> str:
    """Derive the local bucket id for a discovered remote marker."""
    return marker.lower()


def canonical_bucket_id(name: str) -> str:
    """Return the bucket id a caller-supplied id or marker refers to."""
    return bucket_id_for_marker(sanitize_marker(name))


def label_for_marker(marker: str) -> str:
    """Build a human label such as ``Client Work`` from ``$client_work``."""
    words = re.split(r"[_-]+", marker.removeprefix("$"))
    return " ".join(word.capitalize() for word in words if word) or marker


def color_for_index(index: int) -> str:
    """Return a palette color, cycling once the palette is exhausted."""
    return BUCKET_COLORS[index % len(BUCKET_COLORS)]


def category_markers_in(flags: Iterable[str]) -> list[str]:
    """Return the category markers present in ``flags`` in a stable order."""
    return sorted({flag for flag in flags if is_category_marker(flag)})


__all__ = [
    "ARCHIVED_MARKER",
    "BUCKETED_MARKER",
    "BUCKET_COLORS",
    "SYSTEM_KEYWORDS",
    "bucket_id_for_marker",
    "canonical_bucket_id",
    "category_markers_in",
    "color_for_index",
    "is_bucket_marker",
    "is_category_marker",
    "label_for_marker",
    "sanitize_marker",
]
