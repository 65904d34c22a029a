# src/polychat/config/events.py
from __future__ import annotations
import json
import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)


class ConfigEventType(str, Enum):
    UPDATED = "updated"
    RESET = "reset"
    IMPORTED = "imported"
    MIGRATED = "migrated"


@dataclass(frozen=True)
class ConfigEvent:
    event_type: ConfigEventType
    provider: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    # Assigned by ConfigEventManager.publish; anything the caller sets is overwritten.
    timestamp: float = 0.0


ConfigEventHandler = Callable[[ConfigEvent], None]
EventPredicate = Callable[[ConfigEvent], bool]


class EventFilter:
    """Predicate over config events, combinable with and_/or_/negate."""

    def __init__(self, predicate: EventPredicate):
        self._predicate = predicate

    def apply(self, event: ConfigEvent) -> bool:
        return bool(self._predicate(event))

    def and_(self, other: "EventFilter") -> "EventFilter":
        return EventFilter(lambda e: self.apply(e) and other.apply(e))

    def or_(self, other: "EventFilter") -> "EventFilter":
        return EventFilter(lambda e: self.apply(e) or other.apply(e))

    def negate(self) -> "EventFilter":
        return EventFilter(lambda e: not self.apply(e))


@dataclass(frozen=True)
class EventFilterConfig:
    """
    Declarative filter. Every given criterion must hold.
    provider: one key or several. start/end: inclusive timestamp bounds.
    value_changed: old and new values both present and different once serialised.
    """
    provider: Union[str, Sequence[str], None] = None
    event_types: Optional[Sequence[ConfigEventType]] = None
    start: Optional[float] = None
    end: Optional[float] = None
    value_changed: bool = False
    custom: Optional[EventPredicate] = None


def _serialise(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def create_filter(config: EventFilterConfig) -> EventFilter:
    predicates: List[EventPredicate] = []

    if config.provider:
        wanted = {config.provider} if isinstance(config.provider, str) else set(config.provider)
        wanted = {p.lower() for p in wanted}
        predicates.append(lambda e: e.provider is not None and e.provider in wanted)

    if config.event_types:
        types = {ConfigEventType(t) for t in config.event_types}
        predicates.append(lambda e: e.event_type in types)

    if config.start is not None:
        start = config.start
        predicates.append(lambda e: e.timestamp >= start)
    if config.end is not None:
        end = config.end
        predicates.append(lambda e: e.timestamp <= end)

    if config.value_changed:
        def _changed(e: ConfigEvent) -> bool:
            if e.old_value is None or e.new_value is None:
                return False
            return _serialise(e.old_value) != _serialise(e.new_value)
        predicates.append(_changed)

    if config.custom is not None:
        predicates.append(config.custom)

    return EventFilter(lambda e: all(p(e) for p in predicates))


def by_provider(provider: Union[str, Sequence[str]]) -> EventFilter:
    return create_filter(EventFilterConfig(provider=provider))


def by_event_types(event_types: Sequence[ConfigEventType]) -> EventFilter:
    return create_filter(EventFilterConfig(event_types=event_types))


def by_time_range(start: Optional[float] = None, end: Optional[float] = None) -> EventFilter:
    return create_filter(EventFilterConfig(start=start, end=end))


def by_value_changed() -> EventFilter:
    return create_filter(EventFilterConfig(value_changed=True))


def custom(predicate: EventPredicate) -> EventFilter:
    return create_filter(EventFilterConfig(custom=predicate))


@dataclass(eq=False)
class _Subscriber:
    handler: ConfigEventHandler
    filter: Optional[EventFilter]


WILDCARD = "*"


class ConfigEventManager:
    """
    Pub/sub bus for configuration changes.

    Subscribers are stored under routing keys derived from their subscription
    ('*', 'provider:<p>', 'events:<t>', 'provider:<p>|events:<t>'). An event is
    delivered once per matching key; filters run after key matching.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[_Subscriber]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _subscription_keys(provider: Optional[str], event_types: Optional[Iterable[ConfigEventType]]) -> List[str]:
        prefix = f"provider:{provider.lower()}" if provider else None
        types = sorted({ConfigEventType(t).value for t in (event_types or [])})
        if not types:
            return [prefix or WILDCARD]
        return [f"{prefix}|events:{t}" if prefix else f"events:{t}" for t in types]

    @staticmethod
    def _matching_keys(event: ConfigEvent) -> List[str]:
        event_key = f"events:{event.event_type.value}"
        keys = [WILDCARD, event_key]
        if event.provider:
            keys.append(f"provider:{event.provider}")
            keys.append(f"provider:{event.provider}|{event_key}")
        return keys

    def subscribe(
        self,
        handler: ConfigEventHandler,
        *,
        provider: Optional[str] = None,
        event_types: Optional[Sequence[ConfigEventType]] = None,
        filter: Union[EventFilter, EventFilterConfig, None] = None,
    ) -> Callable[[], None]:
        """Returns an unsubscribe function."""
        if isinstance(filter, EventFilterConfig):
            filter = create_filter(filter)
        sub = _Subscriber(handler=handler, filter=filter)
        keys = self._subscription_keys(provider, event_types)
        with self._lock:
            for key in keys:
                self._subscribers.setdefault(key, []).append(sub)

        def unsubscribe() -> None:
            with self._lock:
                for key in keys:
                    subs = self._subscribers.get(key)
                    if not subs:
                        continue
                    if sub in subs:
                        subs.remove(sub)
                    if not subs:
                        del self._subscribers[key]

        return unsubscribe

    def publish(self, event: ConfigEvent) -> ConfigEvent:
        stamped = replace(event, timestamp=time.time())
        with self._lock:
            batches = [list(self._subscribers.get(key, ())) for key in self._matching_keys(stamped)]

        for subs in batches:
            for sub in subs:
                try:
                    if sub.filter is None or sub.filter.apply(stamped):
                        sub.handler(stamped)
                except Exception:
                    # Handler failures never stop delivery to the rest
                    logger.exception("Config event handler failed for %s", stamped.event_type.value)
        return stamped

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def subscriber_count(self) -> int:
        with self._lock:
            return len({id(sub) for subs in self._subscribers.values() for sub in subs})
