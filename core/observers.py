"""Registry of change observers with snapshot fan-out.

Observers are payload-free callbacks invoked after the store state
changes. They read what they need through the store's accessors.

Fan-out contract:
    - Every observer registered when :meth:`ObserverRegistry.notify`
      starts is called at most once for that notification.
    - Iteration runs over a snapshot, so observers may add or remove
      observers (including themselves) during a notification.
    - An observer removed during a notification that has not yet been
      called is skipped.
    - A raising observer is isolated: the error is counted and logged,
      and the remaining observers still run.

Example:
    >>> registry = ObserverRegistry()
    >>> calls = []
    >>> handle = registry.add(lambda: calls.append("x"))
    >>> registry.notify()
    1
    >>> registry.remove(handle)
    True
    >>> registry.notify()
    0
"""

import itertools
import logging
from typing import Callable, Iterator

logger: logging.Logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], None]
"""Observer signature: ``() -> None``."""

ObserverHandle = int
"""Opaque handle returned by :meth:`ObserverRegistry.add`."""

_LOG_FIRST_N: int = 10
"""Log full stack trace for the first N observer errors."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


class ObserverRegistry:
    """Add/remove registry of :data:`ChangeCallback` observers.

    **NOT thread-safe.** Used from the store's consumer path only.
    """

    def __init__(self) -> None:
        self._observers: dict[ObserverHandle, ChangeCallback] = {}
        self._next_handle: Iterator[int] = itertools.count(1)
        self._notifications: int = 0
        self._callback_errors: int = 0

    def add(self, callback: ChangeCallback) -> ObserverHandle:
        """Register ``callback`` and return its handle.

        The same callable may be registered more than once; each
        registration gets its own handle and is called separately.
        """
        handle: ObserverHandle = next(self._next_handle)
        self._observers[handle] = callback
        return handle

    def remove(self, handle: ObserverHandle) -> bool:
        """Unregister the observer behind ``handle``.

        Returns:
            ``True`` if it was registered, ``False`` otherwise.
        """
        return self._observers.pop(handle, None) is not None

    def notify(self) -> int:
        """Call every registered observer once.

        Returns:
            Number of observers that completed without raising.
        """
        self._notifications += 1
        completed: int = 0
        for handle, callback in list(self._observers.items()):
            if handle not in self._observers:
                continue
            try:
                callback()
            except Exception:
                self._callback_errors += 1
                self._log_callback_error(handle)
                continue
            completed += 1
        return completed

    def _log_callback_error(self, handle: ObserverHandle) -> None:
        count: int = self._callback_errors
        if count <= _LOG_FIRST_N:
            logger.exception(
                "Change observer %d failed (%d/%d)",
                handle,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error("Observer errors ongoing: %d total", count)

    @property
    def callback_errors(self) -> int:
        return self._callback_errors

    @property
    def notifications(self) -> int:
        return self._notifications

    def __len__(self) -> int:
        return len(self._observers)
