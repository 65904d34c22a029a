# src/polychat/services/status.py
from __future__ import annotations
import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List

from polychat.core.models import ProviderStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, ProviderStatus], None]

_UNSET = object()


class StatusStore:
    """
    Per-provider {is_available, is_loading, error}, pushed to listeners on change.
    Listeners see (provider, new_status). Identical updates are not re-sent.
    """

    def __init__(self) -> None:
        self._statuses: Dict[str, ProviderStatus] = {}
        self._listeners: List[StatusListener] = []
        self._lock = threading.RLock()

    def get(self, provider: str) -> ProviderStatus:
        with self._lock:
            return self._statuses.get(provider.lower(), ProviderStatus())

    def snapshot(self) -> Dict[str, ProviderStatus]:
        with self._lock:
            return dict(self._statuses)

    def update(self, provider: str, *, is_available=_UNSET, is_loading=_UNSET, error=_UNSET) -> ProviderStatus:
        key = provider.lower()
        changes = {}
        if is_available is not _UNSET:
            changes["is_available"] = bool(is_available)
        if is_loading is not _UNSET:
            changes["is_loading"] = bool(is_loading)
        if error is not _UNSET:
            changes["error"] = error

        with self._lock:
            old = self._statuses.get(key, ProviderStatus())
            new = replace(old, **changes)
            if new == old and key in self._statuses:
                return new
            self._statuses[key] = new
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(key, new)
            except Exception:
                logger.exception("Status listener failed for %s", key)
        return new

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
