"""Command-line entry point for inbox-buckets."""

from __future__ import annotations

import argparse
import sys
import threading
from collections.abc import Sequence
from datetime import date
from pathlib import Path

from inbox_buckets.core import (
    AppSettings,
    build_container,
    configure_logging,
    load_app_settings,
)
from inbox_buckets.core.models import MessageRecord, ThreadGroup
from inbox_buckets.service import MailboxService
from inbox_buckets.storage import SqliteMessageStore
from inbox_buckets.threads import (
    INBOX_TARGET,
    ThreadNotFoundError,
    ThreadOperationError,
)
from inbox_buckets.transport import ImapError


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Inbox buckets mailbox organizer")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("info", help="Show configuration and cache status.")
    commands.add_parser("sync", help="Run one full reconciliation pass.")
    commands.add_parser("serve", help="Run the background worker until interrupted.")
    commands.add_parser(
        "discover-buckets", help="Create buckets for markers found on the server."
    )

    counts = commands.add_parser("counts", help="Recompute and show bucket counts.")
    counts.add_argument(
        "--remote",
        action="store_true",
        help="Count by searching the server instead of the local cache.",
    )

    threads = commands.add_parser("threads", help="List conversations.")
    threads.add_argument(
        "location",
        nargs="?",
        default="inbox",
        choices=["inbox", "archive", "bucket"],
        help="Which view to list (default: inbox).",
    )
    threads.add_argument("--bucket", dest="bucket_id", default=None)
    threads.add_argument(
        "--refresh",
        action="store_true",
        help="Pull from the server before listing.",
    )

    archive = commands.add_parser("archive", help="Archive a conversation.")
    archive.add_argument("thread_id")

    unarchive = commands.add_parser("unarchive", help="Restore an archived conversation.")
    unarchive.add_argument("thread_id")
    unarchive.add_argument(
        "--to",
        dest="target",
        default=INBOX_TARGET,
        help="Destination: 'inbox' (default) or a bucket id.",
    )

    bucket = commands.add_parser("bucket", help="Move a conversation into a bucket.")
    bucket.add_argument("thread_id")
    bucket.add_argument("--bucket", dest="bucket_id", required=True)

    unbucket = commands.add_parser("unbucket", help="Return a conversation to the inbox.")
    unbucket.add_argument("thread_id")

    commands.add_parser("consolidate", help="Reunite split conversations.")
    commands.add_parser("backfill", help="Assign thread keys to cached messages.")

    body = commands.add_parser("body", help="Print a message body.")
    body.add_argument("identity")

    note = commands.add_parser("note", help="Set local notes on a message.")
    note.add_argument("identity")
    note.add_argument("text", nargs="?", default=None)
    note.add_argument(
        "--due",
        type=date.fromisoformat,
        default=None,
        help="Due date in YYYY-MM-DD format.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command or "info"
    if command == "info":
        _print_info(settings)
        return 0

    container = build_container(settings)
    service: MailboxService = container.resolve("service")
    try:
        return _dispatch(command, args, service)
    except (ThreadOperationError, ThreadNotFoundError, ImapError, ValueError) as exc:
        print(f"{command} failed: {exc}")
        return 1
    finally:
        container.close()


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    sys.exit(execute(args, settings))


def _dispatch(command: str, args: argparse.Namespace, service: MailboxService) -> int:
    # pylint: disable=too-many-return-statements,too-many-branches
    if command == "sync":
        report = service.worker.run_once()
        if report is None:
            print("A sync run is already in progress.")
            return 1
        print(
            f"Inbox: {report.inbox_upserted}, sent: {report.sent_upserted}, "
            f"orphans removed: {report.orphans_removed}, "
            f"archived to match server: {report.archive_reconciled}, "
            f"thread keys assigned: {report.thread_keys_assigned}"
        )
        for bucket_id, count in sorted(report.bucket_counts.items()):
            print(f"  {bucket_id}: {count}")
        if report.failed_phases:
            print(f"Failed phases: {', '.join(report.failed_phases)}")
            return 1
        return 0
    if command == "serve":
        _serve(service)
        return 0
    if command == "discover-buckets":
        created = service.discover_buckets()
        if not created:
            print("No new buckets found.")
        for bucket in created:
            print(f"Created bucket {bucket.id} ({bucket.label}, {bucket.color})")
        return 0
    if command == "counts":
        counts = service.refresh_bucket_counts(remote=args.remote)
        if not counts:
            print("No buckets configured.")
        for bucket_id, count in counts.items():
            print(f"{bucket_id:<24} {count:>6}")
        return 0
    if command == "threads":
        _print_threads(_list_threads(args, service))
        return 0
    if command == "archive":
        result = service.archive_thread(args.thread_id)
    elif command == "unarchive":
        result = service.unarchive_thread(args.thread_id, args.target)
    elif command == "bucket":
        result = service.move_thread_to_bucket(args.thread_id, args.bucket_id)
    elif command == "unbucket":
        result = service.unbucket_thread(args.thread_id)
    elif command == "consolidate":
        print(f"Consolidated {service.consolidate_threads()} message(s).")
        return 0
    elif command == "backfill":
        print(f"Assigned thread keys to {service.backfill_thread_keys()} message(s).")
        return 0
    elif command == "body":
        body = service.fetch_body(args.identity)
        print(body.text or body.html or "(empty body)")
        return 0 if body.found else 1
    elif command == "note":
        record = service.set_note(args.identity, args.text, args.due)
        _print_record(record)
        return 0
    else:
        raise ValueError(f"Unknown command: {command}")

    print(f"{result.operation}: {result.count} message(s) in thread {result.thread_key}")
    return 0


def _list_threads(args: argparse.Namespace, service: MailboxService) -> list[ThreadGroup]:
    if args.location == "archive":
        return service.get_archive()
    if args.location == "bucket":
        if not args.bucket_id:
            raise ValueError("--bucket is required when listing a bucket")
        return service.get_bucket(args.bucket_id, force=args.refresh)
    if args.refresh:
        return service.refresh_inbox()
    return service.get_inbox()


def _serve(service: MailboxService) -> None:
    """Run the periodic worker until interrupted."""
    stop = threading.Event()
    service.worker.start()
    print("Sync worker running; press Ctrl+C to stop.")
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        print("Stopping sync worker...")
    finally:
        service.worker.stop()


def _print_info(settings: AppSettings) -> None:
    print("Inbox buckets is ready. Configure IMAP settings to get started.")
    print(f"IMAP host: {settings.imap.host}")
    print(f"Archive folder: {settings.imap.archive_folder}")
    print(f"Database path: {settings.storage.db_path}")
    with SqliteMessageStore(settings.storage) as store:
        print(f"Cached messages: {store.count_messages()}")
        print(f"Buckets: {len(store.list_buckets())}")


def _print_threads(groups: Sequence[ThreadGroup]) -> None:
    if not groups:
        print("No conversations found.")
        return
    header = f"{'Count':>5}  {'Date':<16}  {'From':<24}  Subject"
    print(header)
    print("-" * len(header))
    for group in groups:
        latest = group.latest
        sent = latest.sent_at.strftime("%Y-%m-%d %H:%M") if latest.sent_at else "-"
        sender = (latest.sender_name or latest.sender_address or "-")[:24]
        subject = latest.subject or "(no subject)"
        print(f"{group.count:>5}  {sent:<16}  {sender:<24}  {subject}")
        print(f"{'':>5}  thread: {group.thread_key}")


def _print_record(record: MessageRecord | None) -> None:
    if record is None:
        print("Message not found.")
        return
    print(f"{record.identity}: {record.subject or '(no subject)'}")
    print(f"  notes: {record.notes or '-'}")
    print(f"  due: {record.due_date.isoformat() if record.due_date else '-'}")


if __name__ == "__main__":
    main()
