"""Simple service container for dependency management."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from .config import AppSettings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceContainer:
    """Minimal dependency container with lazy singleton semantics."""

    def __init__(self) -> None:
        """Initialise container storage."""
        self._factories: dict[str, Callable[[ServiceContainer], Any]] = {}
        self._instances: dict[str, Any] = {}

    def register(self, key: str, factory: Callable[[ServiceContainer], T]) -> None:
        """Register a factory under a given key."""
        self._factories[key] = factory

    def register_instance(self, key: str, instance: Any) -> None:
        """Register an already constructed instance."""
        self._instances[key] = instance

    def resolve(self, key: str) -> Any:
        """Resolve a dependency by key, invoking its factory once."""
        if key in self._instances:
            return self._instances[key]
        if key not in self._factories:
            msg = f"Service '{key}' is not registered"
            raise KeyError(msg)
        instance = self._factories[key](self)
        self._instances[key] = instance
        return instance

    def try_resolve(self, key: str) -> Any | None:
        """Resolve a dependency if available; return None otherwise."""
        try:
            return self.resolve(key)
        except KeyError:
            return None

    def close(self) -> None:
        """Close resolved services in reverse creation order and forget them."""
        for key, instance in reversed(list(self._instances.items())):
            closer = getattr(instance, "close", None)
            if not callable(closer):
                continue
            try:
                closer()
            except Exception:  # pylint: disable=broad-except
                LOGGER.warning("Failed to close service '%s'", key, exc_info=True)
        self._instances.clear()


def build_container(settings: AppSettings) -> ServiceContainer:
    """Wire the store, gateway, engine, worker and service for ``settings``."""
    # pylint: disable=import-outside-toplevel
    from ..ingestion.tasks import DetachedTaskRunner
    from ..ingestion.worker import SyncWorker
    from ..service import MailboxService
    from ..storage import SqliteMessageStore
    from ..threads import ThreadEngine
    from ..transport import ImapGateway

    container = ServiceContainer()
    container.register_instance("settings", settings)
    container.register("store", lambda c: SqliteMessageStore(settings.storage))
    container.register(
        "gateway",
        lambda c: ImapGateway(settings.imap, batch_size=settings.sync.batch_size),
    )
    container.register("tasks", lambda c: DetachedTaskRunner())
    container.register(
        "engine",
        lambda c: ThreadEngine(
            c.resolve("store"),
            c.resolve("gateway"),
            inbox_folder=settings.imap.inbox_folder,
            archive_folder=settings.imap.archive_folder,
        ),
    )
    container.register(
        "worker",
        lambda c: SyncWorker(
            c.resolve("gateway"),
            c.resolve("store"),
            c.resolve("engine"),
            settings.sync,
            inbox_folder=settings.imap.inbox_folder,
            archive_folder=settings.imap.archive_folder,
            sent_folder=settings.imap.sent_folder,
            tasks=c.resolve("tasks"),
        ),
    )
    container.register(
        "service",
        lambda c: MailboxService(
            c.resolve("gateway"),
            c.resolve("store"),
            c.resolve("engine"),
            settings,
            tasks=c.resolve("tasks"),
            worker=c.resolve("worker"),
        ),
    )
    return container


__all__ = ["ServiceContainer", "build_container"]
