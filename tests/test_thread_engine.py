"""Tests for thread membership and two-phase thread transitions."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import ARCHIVE, INBOX, FakeGateway, make_summary

from inbox_buckets.core.markers import BUCKETED_MARKER
from inbox_buckets.core.models import (
    Bucket,
    ConflictPolicy,
    LocationKind,
    MessageSummary,
)
from inbox_buckets.storage import SqliteMessageStore
from inbox_buckets.threads import (
    ThreadEngine,
    ThreadNotFoundError,
    ThreadOperationError,
    ThreadScope,
)
from inbox_buckets.transport import ImapError

FINANCE = "$finance"


def _seed(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    summary: MessageSummary,
    *,
    bucket: str | None = None,
) -> MessageSummary:
    """Place a message remotely and mirror it into the cache."""
    if bucket:
        summary.flags = summary.flags | {bucket, BUCKETED_MARKER}
    stored = gateway.add(summary)
    if bucket:
        store.upsert_message(stored, ConflictPolicy.BUCKET_SCAN, bucket_id=bucket)
    else:
        store.upsert_message(stored, ConflictPolicy.INBOX_SCAN)
    return stored


def _day(day: int, month: int = 7) -> datetime:
    return datetime(2025, month, day, 9, 0, tzinfo=UTC)


@pytest.fixture()
def budget_thread(store: SqliteMessageStore, gateway: FakeGateway) -> list[str]:
    """One inbox reply and two earlier messages filed under finance."""
    store.create_bucket(Bucket(FINANCE, "Finance", "#10b981"))
    _seed(store, gateway, make_summary("<b1@x>", "Budget Review", sent_at=_day(1)), bucket=FINANCE)
    _seed(
        store, gateway, make_summary("<b2@x>", "Re: Budget Review", sent_at=_day(2)), bucket=FINANCE
    )
    _seed(store, gateway, make_summary("<b3@x>", "RE: budget review", sent_at=_day(3)))
    store.upsert_message(
        make_summary("<sent@x>", "Re: Budget Review", folder="Sent", sent_at=_day(2, 7)),
        ConflictPolicy.SENT_SCAN,
    )
    store.recount_bucket(FINANCE)
    return ["<b1@x>", "<b2@x>", "<b3@x>"]


def test_thread_key_prefers_header_chain(
    store: SqliteMessageStore, gateway: FakeGateway, engine: ThreadEngine
) -> None:
    _seed(store, gateway, make_summary("<root@x>", "Quarterly numbers", sent_at=_day(1)))
    _seed(
        store,
        gateway,
        make_summary(
            "<reply@x>",
            "Different subject entirely",
            sent_at=_day(2),
            in_reply_to="<root@x>",
        ),
    )
    _seed(
        store,
        gateway,
        make_summary(
            "<deep@x>",
            "Another subject",
            sent_at=_day(3),
            references=["<unknown@x>", "<reply@x>"],
        ),
    )

    assert engine.backfill_thread_keys() == 3

    assert store.thread_key_for_identity("<root@x>") == "<root@x>"
    assert store.thread_key_for_identity("<reply@x>") == "<root@x>"
    assert store.thread_key_for_identity("<deep@x>") == "<root@x>"
    assert engine.backfill_thread_keys() == 0


def test_subject_fallback_is_scoped_to_location(
    store: SqliteMessageStore, gateway: FakeGateway, engine: ThreadEngine
) -> None:
    _seed(store, gateway, make_summary("<a@x>", "Lunch plans", sent_at=_day(1)), bucket=FINANCE)
    _seed(store, gateway, make_summary("<b@x>", "Re: Lunch plans", sent_at=_day(2)))
    _seed(store, gateway, make_summary("<c@x>", "Fwd: lunch  PLANS", sent_at=_day(3)))
    _seed(store, gateway, make_summary("<d@x>", "Re: hi", sent_at=_day(4)))
    _seed(store, gateway, make_summary("<e@x>", "hi", sent_at=_day(5)))

    engine.backfill_thread_keys()

    assert store.thread_key_for_identity("<a@x>") == "<a@x>"
    assert store.thread_key_for_identity("<b@x>") == "<b@x>"
    assert store.thread_key_for_identity("<c@x>") == "<b@x>"
    assert store.thread_key_for_identity("<e@x>") == "<e@x>"


def test_budget_review_archive_moves_whole_thread(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
    budget_thread: list[str],
) -> None:
    """Archiving any member archives all three and lists one archived thread."""

    result = engine.archive_thread("<b3@x>")

    assert result.count == 3
    assert set(result.identities) == set(budget_thread)
    for identity in budget_thread:
        assert gateway.folder_of(identity) == ARCHIVE
        record = store.fetch_message(identity)
        assert record is not None
        assert record.location.kind is LocationKind.ARCHIVED
        assert record.folder == ARCHIVE
    assert ("move_to_archive_folder", "<sent@x>") not in gateway.calls

    groups = engine.get_archive_threads()
    assert len(groups) == 1
    assert groups[0].count == 3
    assert engine.get_inbox_threads() == []
    assert store.fetch_bucket(FINANCE).count == 0  # type: ignore[union-attr]


def test_partial_remote_failure_leaves_cache_untouched(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
) -> None:
    for index in (1, 2, 3):
        _seed(
            store,
            gateway,
            make_summary(f"<m{index}@x>", "Re: Offsite agenda", sent_at=_day(index)),
        )
    before = {
        identity: store.fetch_message(identity)
        for identity in ("<m1@x>", "<m2@x>", "<m3@x>")
    }
    gateway.failures["<m2@x>"] = ImapError("flag store rejected")

    with pytest.raises(ThreadOperationError, match="1/3 failed") as excinfo:
        engine.move_thread_to_bucket("<m1@x>", FINANCE)

    error = excinfo.value
    assert error.failed == 1
    assert error.total == 3
    assert set(error.failures) == {"<m2@x>"}
    for identity, record in before.items():
        after = store.fetch_message(identity)
        assert after is not None and record is not None
        assert after.assigned_bucket is None
        assert after.location == record.location


def test_archive_then_unarchive_to_bucket_round_trip(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
) -> None:
    store.create_bucket(Bucket(FINANCE, "Finance", "#10b981"))
    identities = ["<r1@x>", "<r2@x>", "<r3@x>"]
    for index, identity in enumerate(identities, start=1):
        _seed(
            store,
            gateway,
            make_summary(identity, "Invoice 2025-07", sent_at=_day(index)),
            bucket=FINANCE,
        )
    before = {identity: store.fetch_message(identity) for identity in identities}

    engine.archive_thread("<r1@x>")
    result = engine.unarchive_thread("<r2@x>", FINANCE)

    assert result.count == 3
    for identity in identities:
        record = store.fetch_message(identity)
        original = before[identity]
        assert record is not None and original is not None
        assert record.location == original.location
        assert record.folder == original.folder == INBOX
        assert record.archived_at is None
        assert FINANCE in gateway.flags_of(identity)
        assert gateway.folder_of(identity) == INBOX
    assert store.fetch_bucket(FINANCE).count == 3  # type: ignore[union-attr]


def test_unarchive_to_inbox_clears_bucket(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
    budget_thread: list[str],
) -> None:
    engine.archive_thread("<b1@x>")

    engine.unarchive_thread("<b1@x>")

    for identity in budget_thread:
        record = store.fetch_message(identity)
        assert record is not None
        assert record.location.kind is LocationKind.INBOX
        assert not {FINANCE, BUCKETED_MARKER} & gateway.flags_of(identity)
    assert len(engine.get_inbox_threads()) == 1


def test_move_and_unbucket_thread(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
    budget_thread: list[str],
) -> None:
    moved = engine.move_thread_to_bucket("<b3@x>", FINANCE)
    assert moved.count == 3
    assert store.fetch_bucket(FINANCE).count == 3  # type: ignore[union-attr]
    assert {FINANCE, BUCKETED_MARKER} <= gateway.flags_of("<b3@x>")

    groups = engine.get_bucket_threads(FINANCE)
    assert len(groups) == 1 and groups[0].count == 3

    unbucketed = engine.unbucket_thread("<b1@x>")
    assert unbucketed.count == 3
    for identity in budget_thread:
        record = store.fetch_message(identity)
        assert record is not None
        assert record.location.kind is LocationKind.INBOX
        assert not {FINANCE, BUCKETED_MARKER} & gateway.flags_of(identity)
    assert store.fetch_bucket(FINANCE).count == 0  # type: ignore[union-attr]


def test_members_exclude_outgoing_rows_but_thread_view_includes_them(
    engine: ThreadEngine, budget_thread: list[str]
) -> None:
    _, members = engine.thread_members("<b3@x>", ThreadScope.ACTIVE)

    assert {member.identity for member in members} == set(budget_thread)
    messages = engine.get_thread_messages("<b3@x>")
    assert "<sent@x>" in {message.identity for message in messages}


def test_unknown_thread_raises(engine: ThreadEngine) -> None:
    with pytest.raises(ThreadNotFoundError):
        engine.archive_thread("<missing@x>")


def test_auto_consolidate_pulls_split_threads_into_inbox(
    store: SqliteMessageStore, gateway: FakeGateway, engine: ThreadEngine
) -> None:
    store.create_bucket(Bucket(FINANCE, "Finance", "#10b981"))
    _seed(store, gateway, make_summary("<old@x>", "Budget Review", sent_at=_day(10, 6)))
    engine.archive_thread("<old@x>")
    _seed(
        store,
        gateway,
        make_summary("<filed@x>", "Budget Review", sent_at=_day(15, 6)),
        bucket=FINANCE,
    )
    _seed(store, gateway, make_summary("<new@x>", "Re: Budget Review", sent_at=_day(1)))
    _seed(store, gateway, make_summary("<other@x>", "Holiday rota", sent_at=_day(2)), bucket=FINANCE)
    engine.backfill_thread_keys()

    moved = engine.auto_consolidate_threads()

    assert moved == 2
    assert gateway.folder_of("<old@x>") == INBOX
    assert FINANCE not in gateway.flags_of("<filed@x>")
    groups = engine.get_inbox_threads()
    assert len(groups) == 1
    assert groups[0].count == 3
    other = store.fetch_message("<other@x>")
    assert other is not None and other.assigned_bucket == FINANCE
    assert store.fetch_bucket(FINANCE).count == 1  # type: ignore[union-attr]


def test_auto_consolidate_skips_failures(
    store: SqliteMessageStore, gateway: FakeGateway, engine: ThreadEngine
) -> None:
    _seed(
        store,
        gateway,
        make_summary("<filed@x>", "Budget Review", sent_at=_day(15, 6)),
        bucket=FINANCE,
    )
    _seed(store, gateway, make_summary("<new@x>", "Re: Budget Review", sent_at=_day(1)))
    gateway.failures["<filed@x>"] = ImapError("timeout")

    assert engine.auto_consolidate_threads() == 0

    record = store.fetch_message("<filed@x>")
    assert record is not None and record.assigned_bucket == FINANCE


def test_bucket_ids_are_canonicalized_on_both_sides(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
    budget_thread: list[str],
) -> None:
    """A label-style id files the thread under the bucket's marker id."""

    moved = engine.move_thread_to_bucket("<b3@x>", "Finance")

    assert moved.count == 3
    for identity in budget_thread:
        record = store.fetch_message(identity)
        assert record is not None and record.assigned_bucket == FINANCE
        assert FINANCE in gateway.flags_of(identity)
        assert "$Finance" not in gateway.flags_of(identity)
    groups = engine.get_bucket_threads(FINANCE)
    assert len(groups) == 1 and groups[0].count == 3
    assert store.fetch_bucket(FINANCE).count == 3  # type: ignore[union-attr]

    engine.archive_thread("<b1@x>")
    engine.unarchive_thread("<b1@x>", "$Finance")

    record = store.fetch_message("<b1@x>")
    assert record is not None and record.assigned_bucket == FINANCE


def test_repeating_a_bucket_move_changes_nothing(
    store: SqliteMessageStore,
    gateway: FakeGateway,
    engine: ThreadEngine,
    budget_thread: list[str],
) -> None:
    engine.move_thread_to_bucket("<b3@x>", FINANCE)
    records = {identity: store.fetch_message(identity) for identity in budget_thread}
    flags = {identity: gateway.flags_of(identity) for identity in budget_thread}

    again = engine.move_thread_to_bucket("<b3@x>", FINANCE)

    assert again.count == 3
    assert {identity: store.fetch_message(identity) for identity in budget_thread} == records
    assert {identity: gateway.flags_of(identity) for identity in budget_thread} == flags
    assert store.fetch_bucket(FINANCE).count == 3  # type: ignore[union-attr]
