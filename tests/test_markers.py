"""Tests for marker and subject conventions."""

from __future__ import annotations

import pytest

from inbox_buckets.core.markers import (
    BUCKET_COLORS,
    bucket_id_for_marker,
    category_markers_in,
    color_for_index,
    is_bucket_marker,
    is_category_marker,
    label_for_marker,
    sanitize_marker,
)
from inbox_buckets.core.subjects import is_groupable, normalize_subject


def test_sanitize_marker_replaces_unsafe_characters() -> None:
    assert sanitize_marker("client work") == "$client_work"
    assert sanitize_marker("$Q3/Budget") == "$Q3_Budget"
    assert sanitize_marker("follow-up") == "$follow-up"


def test_sanitize_marker_rejects_empty_names() -> None:
    with pytest.raises(ValueError):
        sanitize_marker(" $ ")


def test_category_markers_exclude_system_keywords_and_archive() -> None:
    flags = {"\\Seen", "$Forwarded", "$MDNSent", "$archived", "$bucketed", "$work"}

    assert category_markers_in(flags) == ["$bucketed", "$work"]
    assert is_category_marker("$bucketed")
    assert not is_bucket_marker("$bucketed")
    assert is_bucket_marker("$work")
    assert not is_category_marker("$Junk")
    assert not is_category_marker("\\Flagged")


def test_discovered_marker_naming() -> None:
    assert bucket_id_for_marker("$Client_Work") == "$client_work"
    assert label_for_marker("$client_work") == "Client Work"
    assert label_for_marker("$follow-up") == "Follow Up"
    assert color_for_index(0) == BUCKET_COLORS[0]
    assert color_for_index(len(BUCKET_COLORS)) == BUCKET_COLORS[0]


@pytest.mark.parametrize(
    ("subject", "expected"),
    [
        ("Re: Budget Review", "budget review"),
        ("RE:   Budget    Review ", "budget review"),
        ("Fwd: Budget Review", "budget review"),
        ("fw:Budget Review", "budget review"),
        ("Re: Re: Budget Review", "re: budget review"),
        (None, ""),
    ],
)
def test_normalize_subject(subject: str | None, expected: str) -> None:
    assert normalize_subject(subject) == expected


def test_short_subjects_are_not_groupable() -> None:
    assert not is_groupable(normalize_subject("Re: hi"))
    assert not is_groupable("")
    assert is_groupable("lunch")
