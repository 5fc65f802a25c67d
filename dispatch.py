"""
Dispatcher - single owner context for navigation state.

Sensor callbacks and snapshot completions may arrive on other threads. They
are posted here and run later, in order, by whoever owns the navigation
machine (the demo loop, a UI tick, a test).
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self):
        self._pending: queue.SimpleQueue = queue.SimpleQueue()
        self._owner = threading.get_ident()

    @property
    def on_owner_thread(self) -> bool:
        return threading.get_ident() == self._owner

    def claim(self) -> None:
        """Make the calling thread the owner (e.g. a UI loop started later)."""
        self._owner = threading.get_ident()

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue `fn(*args)` for the owner. Safe from any thread."""
        self._pending.put((fn, args))

    def pending(self) -> int:
        return self._pending.qsize()

    def drain(self, limit: int | None = None) -> int:
        """
        Run queued calls on the owner thread.

        Calls posted while draining run in the same pass. Returns the number
        of calls executed.
        """
        if not self.on_owner_thread:
            raise RuntimeError("Dispatcher.drain() called off the owner thread")

        executed = 0
        while limit is None or executed < limit:
            try:
                fn, args = self._pending.get_nowait()
            except queue.Empty:
                break
            fn(*args)
            executed += 1
        if executed:
            logger.debug("Dispatched %d queued call(s)", executed)
        return executed
