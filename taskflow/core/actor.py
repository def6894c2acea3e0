"""Mailbox actor drained on a shared executor.

An actor processes its messages strictly in arrival order, and at most one
worker drains a given actor at any time, so actor state needs no further
locking. Subclasses may also keep internal work that is interleaved with
incoming messages, one step at a time.
"""

import threading
from collections import deque
from concurrent.futures import Executor
from typing import Any, Deque

from .logging import get_logger

logger = get_logger(__name__)


class Actor:
    """Base class for mailbox-driven components."""

    def __init__(self, name: str, executor: Executor):
        self.name = name
        self._executor = executor
        self._mailbox: Deque[Any] = deque()
        self._mailbox_lock = threading.Lock()
        self._scheduled = False

    def post(self, message: Any) -> None:
        """Enqueue a message; schedules a drain unless one is already pending."""
        with self._mailbox_lock:
            self._mailbox.append(message)
            if self._scheduled:
                return
            self._scheduled = True
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        try:
            self._executor.submit(self._drain)
        except RuntimeError as e:
            # Executor already shut down
            with self._mailbox_lock:
                self._scheduled = False
            logger.warning(f"Actor {self.name} could not be scheduled: {str(e)}")

    @property
    def pending_messages(self) -> int:
        with self._mailbox_lock:
            return len(self._mailbox)

    def _has_internal_work(self) -> bool:
        return False

    def _run_internal_step(self) -> None:
        pass

    def receive(self, message: Any) -> None:
        raise NotImplementedError

    def _on_error(self, error: Exception) -> None:
        pass

    def _after_step(self) -> None:
        pass

    def _drain(self) -> None:
        while True:
            with self._mailbox_lock:
                message = self._mailbox.popleft() if self._mailbox else None
                if message is None and not self._has_internal_work():
                    self._scheduled = False
                    return
            try:
                if message is not None:
                    self.receive(message)
                else:
                    self._run_internal_step()
            except Exception as e:
                step = type(message).__name__ if message is not None else "internal step"
                logger.error(f"Actor {self.name} failed to process {step}: {str(e)}", exc_info=True)
                self._on_error(e)
            self._after_step()
