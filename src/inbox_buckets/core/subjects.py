"""Subject normalization used for conversation grouping."""

from __future__ import annotations

import re

_REPLY_PREFIX = re.compile(r"^(re|fwd|fw)\s*:\s*", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

# Normalized subjects this short are too generic to group unrelated senders.
MIN_GROUPING_LENGTH = 4


def normalize_subject(subject: str | None) -> str:
    """Strip one reply/forward prefix, collapse whitespace and case-fold."""
    if not subject:
        return ""
    stripped = _REPLY_PREFIX.sub("", subject.strip())
    return _WHITESPACE.sub(" ", stripped).strip().casefold()


def is_groupable(normalized: str | None) -> bool:
    """Return True when a normalized subject is specific enough to match on."""
    return bool(normalized) and len(normalized or "") >= MIN_GROUPING_LENGTH


__all__ = ["MIN_GROUPING_LENGTH", "is_groupable", "normalize_subject"]
