"""Fire-and-forget mailbox side effects with an error channel."""

from __future__ import annotations

import logging
import queue
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FailedTask:
    """A detached task whose action raised, kept for replay."""

    name: str
    action: Callable[[], None]
    identity: str | None = None
    error: BaseException | None = None
    attempts: int = 1


class DetachedTaskRunner:
    """Run small remote side effects off the request path.

    Failures never reach the submitter; they are pushed onto an error channel
    that the background worker drains and replays on its next run.
    """

    def __init__(self, *, max_workers: int = 2) -> None:
        """Create the executor and an empty error channel."""
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="detached-task"
        )
        self._failures: queue.SimpleQueue[FailedTask] = queue.SimpleQueue()

    def submit(
        self,
        name: str,
        action: Callable[[], None],
        identity: str | None = None,
    ) -> Future[None]:
        """Schedule ``action`` and return its future."""
        return self._executor.submit(self._run, FailedTask(name, action, identity))

    def drain_failures(self) -> list[FailedTask]:
        """Remove and return every failure currently on the error channel."""
        drained: list[FailedTask] = []
        while True:
            try:
                drained.append(self._failures.get_nowait())
            except queue.Empty:
                return drained

    def replay_failures(self, max_attempts: int = 3) -> int:
        """Re-run failed tasks synchronously, returning how many succeeded.

        Tasks that fail again go back on the channel until ``max_attempts``
        is reached, after which they are logged and dropped.
        """
        replayed = 0
        for task in self.drain_failures():
            try:
                task.action()
            except Exception as exc:  # pylint: disable=broad-except
                task.attempts += 1
                task.error = exc
                if task.attempts >= max_attempts:
                    LOGGER.error(
                        "Giving up on %s for %s after %d attempt(s): %s",
                        task.name,
                        task.identity,
                        task.attempts,
                        exc,
                    )
                    continue
                self._failures.put(task)
                continue
            replayed += 1
            LOGGER.info("Replayed %s for %s", task.name, task.identity)
        return replayed

    def close(self) -> None:
        """Wait for running tasks and stop the executor."""
        self._executor.shutdown(wait=True)

    def _run(self, task: FailedTask) -> None:
        try:
            task.action()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Detached task %s for %s failed: %s",
                task.name,
                task.identity,
                exc,
                exc_info=True,
            )
            task.error = exc
            self._failures.put(task)


__all__ = ["DetachedTaskRunner", "FailedTask"]
