"""In-memory synchronization state shared by the worker and the read path."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class BucketRefreshThrottle:
    """Allow at most one bucket refresh per bucket within a fixed window."""

    def __init__(
        self,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise an empty refresh ledger."""
        self._window = window_seconds
        self._clock = clock
        self._last_refresh: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_refresh(self, bucket_id: str) -> bool:
        """Return True and record the refresh when the window has elapsed.

        The check and the mark happen under one lock so concurrent readers
        cannot both start a refresh for the same bucket.
        """
        now = self._clock()
        with self._lock:
            last = self._last_refresh.get(bucket_id)
            if last is not None and now - last < self._window:
                LOGGER.debug("Bucket %s refreshed %.1fs ago; skipping", bucket_id, now - last)
                return False
            self._last_refresh[bucket_id] = now
            return True

    def reset(self, bucket_id: str | None = None) -> None:
        """Forget refresh times for one bucket, or for all of them."""
        with self._lock:
            if bucket_id is None:
                self._last_refresh.clear()
            else:
                self._last_refresh.pop(bucket_id, None)


class InFlightFetches:
    """Registry that lets concurrent callers share one fetch per identity."""

    def __init__(self) -> None:
        """Initialise an empty registry."""
        self._pending: dict[str, Future] = {}
        self._lock = threading.Lock()

    def run(self, identity: str, loader: Callable[[], T]) -> T:
        """Return ``loader()``, joining an in-flight call for ``identity`` if any."""
        future: Future = Future()
        with self._lock:
            pending = self._pending.setdefault(identity, future)

        if pending is not future:
            LOGGER.debug("Joining in-flight fetch for %s", identity)
            return pending.result()

        try:
            result = loader()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._pending.pop(identity, None)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._pending


__all__ = ["BucketRefreshThrottle", "InFlightFetches"]
