# tests/unit/test_events.py

from __future__ import annotations
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from polychat.config.events import (
    ConfigEvent,
    ConfigEventManager,
    ConfigEventType as T,
    EventFilterConfig,
    by_event_types,
    by_provider,
    by_time_range,
    by_value_changed,
    create_filter,
    custom,
)


EVENTS = [
    ConfigEvent(T.UPDATED, provider="openai", old_value={"t": 1}, new_value={"t": 2}, timestamp=10),
    ConfigEvent(T.RESET, provider="openai", timestamp=20),
    ConfigEvent(T.UPDATED, provider="ollama", old_value={"t": 1}, new_value={"t": 1}, timestamp=30),
    ConfigEvent(T.IMPORTED, timestamp=40),
    ConfigEvent(T.UPDATED, provider="openai", old_value={"a": 1, "b": 2}, new_value={"b": 2, "a": 1}, timestamp=50),
    ConfigEvent(T.MIGRATED, provider="deepseek", timestamp=60),
]


def _matching(f):
    return [e for e in EVENTS if f.apply(e)]


def test_provider_and_type_filter_is_exact():
    f = create_filter(EventFilterConfig(provider="openai", event_types=[T.UPDATED]))
    expected = [e for e in EVENTS if e.provider == "openai" and e.event_type == T.UPDATED]
    assert _matching(f) == expected
    assert len(expected) == 2


def test_provider_filter_skips_provider_less_events():
    assert T.IMPORTED not in [e.event_type for e in _matching(by_provider(["openai", "deepseek"]))]
    assert len(_matching(by_provider(["openai", "deepseek"]))) == 4


def test_time_range_is_inclusive():
    assert [e.timestamp for e in _matching(by_time_range(20, 40))] == [20, 30, 40]
    assert [e.timestamp for e in _matching(by_time_range(start=50))] == [50, 60]


def test_value_changed_compares_serialised_values():
    changed = _matching(by_value_changed())
    # Same value, reordered keys, and missing values do not count as a change
    assert changed == [EVENTS[0]]


def test_composition():
    updated = by_event_types([T.UPDATED])
    openai = by_provider("openai")
    assert _matching(updated.and_(openai.negate())) == [EVENTS[2]]
    assert len(_matching(updated.or_(by_event_types([T.MIGRATED])))) == 4
    assert _matching(custom(lambda e: e.timestamp > 55)) == [EVENTS[5]]


def test_publish_stamps_time_and_delivers():
    mgr = ConfigEventManager()
    got = []
    mgr.subscribe(got.append)
    stamped = mgr.publish(ConfigEvent(T.UPDATED, provider="openai", timestamp=1.0))
    assert stamped.timestamp > 1.0
    assert got == [stamped]


def test_subscription_keys_route_events():
    mgr = ConfigEventManager()
    by_prov, by_types, by_both = [], [], []
    mgr.subscribe(by_prov.append, provider="OpenAI")
    mgr.subscribe(by_types.append, event_types=[T.RESET, T.IMPORTED])
    mgr.subscribe(by_both.append, provider="ollama", event_types=[T.UPDATED])

    mgr.publish(ConfigEvent(T.UPDATED, provider="openai"))
    mgr.publish(ConfigEvent(T.RESET, provider="openai"))
    mgr.publish(ConfigEvent(T.IMPORTED))
    mgr.publish(ConfigEvent(T.UPDATED, provider="ollama"))
    mgr.publish(ConfigEvent(T.RESET, provider="ollama"))

    assert [(e.event_type, e.provider) for e in by_prov] == [(T.UPDATED, "openai"), (T.RESET, "openai")]
    assert [(e.event_type, e.provider) for e in by_types] == [(T.RESET, "openai"), (T.IMPORTED, None), (T.RESET, "ollama")]
    assert [(e.event_type, e.provider) for e in by_both] == [(T.UPDATED, "ollama")]


def test_filter_runs_after_key_match():
    mgr = ConfigEventManager()
    got = []
    mgr.subscribe(got.append, provider="openai", filter=EventFilterConfig(value_changed=True))
    mgr.publish(ConfigEvent(T.UPDATED, provider="openai", old_value=1, new_value=1))
    mgr.publish(ConfigEvent(T.UPDATED, provider="openai", old_value=1, new_value=2))
    mgr.publish(ConfigEvent(T.UPDATED, provider="ollama", old_value=1, new_value=2))
    assert [e.new_value for e in got] == [2]


def test_failing_handler_does_not_stop_delivery():
    mgr = ConfigEventManager()
    got = []

    def bad(_e):
        raise RuntimeError("handler bug")

    mgr.subscribe(bad)
    mgr.subscribe(got.append)
    mgr.publish(ConfigEvent(T.RESET))
    assert len(got) == 1


def test_unsubscribe_and_clear():
    mgr = ConfigEventManager()
    got = []
    unsubscribe = mgr.subscribe(got.append, event_types=[T.UPDATED, T.RESET])
    mgr.subscribe(lambda e: None)
    assert mgr.subscriber_count() == 2

    unsubscribe()
    unsubscribe()  # second call is harmless
    mgr.publish(ConfigEvent(T.UPDATED))
    assert got == []
    assert mgr.subscriber_count() == 1

    mgr.clear()
    assert mgr.subscriber_count() == 0
