"""Tests for the mailbox service facade."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date

import pytest
from conftest import DRAFTS, FakeGateway, make_summary

from inbox_buckets.core.config import AppSettings
from inbox_buckets.core.markers import BUCKETED_MARKER, color_for_index
from inbox_buckets.core.models import (
    Bucket,
    ConflictPolicy,
    DraftRecord,
    LocationKind,
    Provenance,
)
from inbox_buckets.ingestion import DetachedTaskRunner
from inbox_buckets.service import MailboxService
from inbox_buckets.storage import SqliteMessageStore
from inbox_buckets.threads import ThreadEngine
from inbox_buckets.transport import ImapError


@pytest.fixture()
def tasks() -> Iterator[DetachedTaskRunner]:
    runner = DetachedTaskRunner()
    yield runner
    runner.close()


@pytest.fixture()
def service(
    gateway: FakeGateway,
    store: SqliteMessageStore,
    engine: ThreadEngine,
    settings: AppSettings,
    tasks: DetachedTaskRunner,
) -> Iterator[MailboxService]:
    facade = MailboxService(gateway, store, engine, settings, tasks=tasks)
    yield facade
    facade.close()


def _cache(store: SqliteMessageStore, gateway: FakeGateway, identity: str, subject: str) -> None:
    stored = gateway.add(make_summary(identity, subject))
    store.upsert_message(stored, ConflictPolicy.INBOX_SCAN)


def _body_fetches(gateway: FakeGateway, identity: str) -> int:
    return gateway.calls.count(("fetch_body", identity))


def test_fetch_body_caches_found_bodies(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    _cache(store, gateway, "<a@x>", "Agenda")

    first = service.fetch_body("<a@x>")
    second = service.fetch_body("<a@x>")

    assert first.text == second.text == "Body text"
    assert _body_fetches(gateway, "<a@x>") == 1
    assert store.fetch_message("<a@x>").preview == "Body text"  # type: ignore[union-attr]


def test_fetch_body_never_caches_placeholders(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    """A miss is returned to the caller and retried remotely next time."""

    assert not service.fetch_body("<ghost@x>").found
    assert not service.fetch_body("<ghost@x>").found

    assert _body_fetches(gateway, "<ghost@x>") == 2
    assert store.fetch_cached_body("<ghost@x>") is None


def test_get_bucket_refresh_is_throttled(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    store.create_bucket(Bucket("$work", "Work", "#3b82f6"))
    gateway.add(make_summary("<a@x>", "Contract", flags=["$work", BUCKETED_MARKER]))

    assert len(service.get_bucket("$work")) == 1

    gateway.add(make_summary("<b@x>", "Invoice", flags=["$work", BUCKETED_MARKER]))
    assert len(service.get_bucket("$work")) == 1
    assert len(service.get_bucket("$work", force=True)) == 2
    assert store.fetch_bucket("$work").count == 2  # type: ignore[union-attr]


def test_failed_bucket_refresh_serves_cache_and_retries(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    attempts: list[str] = []

    def broken_listing(marker: str) -> list:
        attempts.append(marker)
        raise ImapError("timeout")

    gateway.list_marker_summaries = broken_listing  # type: ignore[method-assign]

    assert service.get_bucket("$work") == []
    assert service.get_bucket("$work") == []
    assert attempts == ["$work", "$work"]


def test_assign_bucket_updates_remote_cache_and_counts(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    store.create_bucket(Bucket("$work", "Work", "#3b82f6"))
    _cache(store, gateway, "<a@x>", "Contract")

    record = service.assign_bucket("<a@x>", "$work")

    assert record is not None
    assert record.assigned_bucket == "$work"
    assert record.subject == "Contract"
    assert {"$work", BUCKETED_MARKER} <= gateway.flags_of("<a@x>")
    assert store.fetch_bucket("$work").count == 1  # type: ignore[union-attr]

    cleared = service.assign_bucket("<a@x>", None)

    assert cleared is not None and cleared.location.kind is LocationKind.INBOX
    assert "$work" not in gateway.flags_of("<a@x>")
    assert store.fetch_bucket("$work").count == 0  # type: ignore[union-attr]


def test_discover_buckets_creates_only_new_markers(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    store.create_bucket(Bucket("$work", "Work", "#3b82f6", sort_order=0))
    gateway.add(make_summary("<a@x>", flags=["$work", BUCKETED_MARKER]))
    gateway.add(make_summary("<b@x>", flags=["$Client_Work", BUCKETED_MARKER, "$Forwarded"]))

    created = service.discover_buckets()

    assert [bucket.id for bucket in created] == ["$client_work"]
    assert created[0].label == "Client Work"
    assert created[0].color == color_for_index(1)
    assert created[0].sort_order == 1
    assert service.discover_buckets() == []


def test_create_bucket_derives_marker_from_label(service: MailboxService) -> None:
    bucket = service.create_bucket(" Client work ")

    assert bucket.id == "$client_work"
    assert bucket.label == "Client work"
    assert [item.id for item in service.list_buckets()] == ["$client_work"]
    with pytest.raises(ValueError):
        service.create_bucket("client work")


def test_mark_read_runs_detached(
    service: MailboxService,
    store: SqliteMessageStore,
    gateway: FakeGateway,
    tasks: DetachedTaskRunner,
) -> None:
    _cache(store, gateway, "<a@x>", "Agenda")

    service.mark_read("<a@x>")
    tasks.close()

    assert "\\Seen" in gateway.flags_of("<a@x>")
    assert tasks.drain_failures() == []


def test_mark_read_failure_goes_to_error_channel(
    service: MailboxService,
    store: SqliteMessageStore,
    gateway: FakeGateway,
    tasks: DetachedTaskRunner,
) -> None:
    _cache(store, gateway, "<a@x>", "Agenda")
    gateway.failures["<a@x>"] = ImapError("read-only mailbox")

    service.mark_read("<a@x>")
    tasks.close()

    failures = tasks.drain_failures()
    assert [(task.name, task.identity) for task in failures] == [("mark read", "<a@x>")]
    assert isinstance(failures[0].error, ImapError)


def test_notes_are_local_only(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    _cache(store, gateway, "<a@x>", "Agenda")
    calls_before = list(gateway.calls)

    record = service.set_note("<a@x>", "Bring slides", date(2025, 7, 4))

    assert record is not None
    assert record.notes == "Bring slides"
    assert record.due_date == date(2025, 7, 4)
    assert gateway.calls == calls_before


def test_refresh_inbox_groups_threads(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    gateway.add(make_summary("<a@x>", "Budget Review"))
    gateway.add(make_summary("<b@x>", "Re: Budget Review"))
    gateway.add(make_summary("<c@x>", "Lunch"))

    groups = service.refresh_inbox()

    assert sorted(group.count for group in groups) == [1, 2]
    assert store.count_messages() == 3


def test_refresh_bucket_counts_from_server(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    store.create_bucket(Bucket("$work", "Work", "#3b82f6"))
    gateway.add(make_summary("<a@x>", flags=["$work", BUCKETED_MARKER]))

    assert service.refresh_bucket_counts() == {"$work": 0}
    assert service.refresh_bucket_counts(remote=True) == {"$work": 1}
    assert store.fetch_bucket("$work").count == 1  # type: ignore[union-attr]


def test_saving_a_draft_replaces_the_remote_copy(
    service: MailboxService, gateway: FakeGateway
) -> None:
    draft = service.save_draft(
        DraftRecord(id=None, subject="Re: Budget Review", body_text="Draft one")
    )
    first_uid = draft.remote_uid
    assert first_uid is not None

    draft.body_text = "Draft two"
    updated = service.save_draft(draft)

    assert updated.id == draft.id
    assert updated.remote_uid != first_uid
    assert ("delete_draft", str(first_uid)) in gateway.calls
    assert len(gateway.folders[DRAFTS]) == 1
    assert [item.id for item in service.list_drafts()] == [draft.id]

    assert service.delete_draft(draft.id)  # type: ignore[arg-type]
    assert gateway.folders[DRAFTS] == {}
    assert not service.delete_draft(draft.id)  # type: ignore[arg-type]


def test_record_sent_copy_caches_manual_send(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    _cache(store, gateway, "<root@x>", "Budget Review")
    payload = (
        b"Message-ID: <reply@x>\r\n"
        b"From: Me <me@example.com>\r\n"
        b"Subject: Re: Budget Review\r\n"
        b"Date: Wed, 02 Jul 2025 10:00:00 +0000\r\n"
        b"In-Reply-To: <root@x>\r\n"
        b"\r\n"
        b"Numbers attached.\r\n"
    )

    record = service.record_sent_copy(payload)

    assert record is not None
    assert record.provenance is Provenance.MANUAL_SEND
    assert record.thread_key == "<root@x>"
    assert ("append_sent_copy", "") in gateway.calls
    assert [message.identity for message in service.get_thread("<root@x>")] == [
        "<root@x>",
        "<reply@x>",
    ]


def test_assign_bucket_uses_the_marker_id(
    service: MailboxService, store: SqliteMessageStore, gateway: FakeGateway
) -> None:
    store.create_bucket(Bucket("$work", "Work", "#3b82f6"))
    _cache(store, gateway, "<a@x>", "Contract")

    record = service.assign_bucket("<a@x>", "Work")

    assert record is not None and record.assigned_bucket == "$work"
    assert "$work" in gateway.flags_of("<a@x>")
    assert len(service.get_bucket("$work")) == 1


def test_notes_for_unknown_messages_are_rejected(
    service: MailboxService, store: SqliteMessageStore, engine: ThreadEngine
) -> None:
    assert service.set_note("<typo@x>", "call back") is None
    assert store.fetch_message("<typo@x>") is None
    assert engine.get_inbox_threads() == []
