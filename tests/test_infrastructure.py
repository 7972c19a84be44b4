"""Tests for the cache backend, the event bus and the JSON log formatter."""
from __future__ import annotations

import json
import logging

from intake.cache import MemoryCache
from intake.events import ACTOR_PROCESSED, EventBus, register_default_listeners
from intake.logging_config import JsonFormatter

from .conftest import FakeClock


class TestMemoryCache:
    async def test_get_set_delete(self):
        cache = MemoryCache()

        assert await cache.get("missing", "fallback") == "fallback"
        await cache.set("key", {"a": 1})
        assert await cache.get("key") == {"a": 1}
        await cache.delete("key")
        assert await cache.get("key") is None

    async def test_entries_expire(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set("key", "value", ttl=10)

        clock.advance(9)
        assert await cache.get("key") == "value"
        clock.advance(1)
        assert await cache.get("key") is None

    async def test_increment_keeps_the_original_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)

        assert await cache.increment("hits", ttl=60) == 1
        clock.advance(50)
        assert await cache.increment("hits", ttl=60) == 2
        clock.advance(10)
        assert await cache.get("hits") is None
        assert await cache.increment("hits", ttl=60) == 1

    async def test_increment_can_restart_the_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)

        await cache.increment("failures", ttl=60, refresh_ttl=True)
        clock.advance(50)
        await cache.increment("failures", ttl=60, refresh_ttl=True)
        clock.advance(50)

        assert await cache.get("failures") == 2

    async def test_clear(self):
        cache = MemoryCache()
        await cache.set("a", 1)
        await cache.clear()
        assert await cache.get("a") is None


class _Actor:
    id = 7
    uuid = "actor-uuid"


class TestEventBus:
    def test_listeners_receive_payload(self):
        bus = EventBus()
        received = []
        bus.subscribe(ACTOR_PROCESSED, lambda actor, **_: received.append(actor.uuid))

        bus.emit(ACTOR_PROCESSED, actor=_Actor())

        assert received == ["actor-uuid"]

    def test_failing_listener_does_not_stop_the_others(self, caplog):
        bus = EventBus()
        received = []

        def broken(**_):
            raise ValueError("nope")

        bus.subscribe(ACTOR_PROCESSED, broken)
        bus.subscribe(ACTOR_PROCESSED, lambda actor, **_: received.append(actor.id))

        with caplog.at_level(logging.ERROR, logger="intake.events"):
            bus.emit(ACTOR_PROCESSED, actor=_Actor())

        assert received == [7]
        assert "broken" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        received = []

        def listener(actor, **_):
            received.append(actor.id)

        bus.subscribe(ACTOR_PROCESSED, listener)
        bus.unsubscribe(ACTOR_PROCESSED, listener)
        bus.emit(ACTOR_PROCESSED, actor=_Actor())

        assert received == []

    def test_default_listeners_log_events(self, caplog):
        bus = register_default_listeners(EventBus())

        with caplog.at_level(logging.INFO, logger="intake.events"):
            bus.emit(ACTOR_PROCESSED, actor=_Actor())

        assert "actor.processed event fired" in caplog.text


class TestJsonFormatter:
    def test_extra_fields_are_included(self):
        record = logging.LogRecord("intake.test", logging.WARNING, __file__, 1, "hello %s", ("world",), None)
        record.actor_uuid = "actor-uuid"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "hello world"
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "intake.test"
        assert payload["actor_uuid"] == "actor-uuid"
