# src/polychat/core/cancel.py
from __future__ import annotations
import logging
import threading
from typing import Callable, Iterable, Iterator, List, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cooperative cancellation flag for one chat request.
    Safe to set from another thread (e.g. a UI thread or a signal handler).

    on_cancel hooks let the request close its open response, so a read that
    is blocked waiting for the model returns at once instead of at the next chunk.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._hooks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("Cancel hook failed")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, hook: Callable[[], None]) -> Callable[[], None]:
        """
        Run hook once when cancel() is called (right away if it already was).
        Returns a function that unregisters the hook.
        """
        with self._lock:
            pending = not self._event.is_set()
            if pending:
                self._hooks.append(hook)
        if not pending:
            hook()
            return lambda: None

        def remove() -> None:
            with self._lock:
                if hook in self._hooks:
                    self._hooks.remove(hook)

        return remove


def until_cancelled(items: Iterable[T], cancel: CancelToken) -> Iterator[T]:
    """Pass items through, stopping before the next one once cancel is set."""
    if cancel.cancelled:
        return
    for item in items:
        if cancel.cancelled:
            return
        yield item
        if cancel.cancelled:
            return
