"""Tests for speakersift.alerts.scheduler."""

from __future__ import annotations

from datetime import timedelta

import pytest

from speakersift.alerts.batcher import AlertBatch
from speakersift.alerts.scheduler import (
    DEFERRED,
    DELAYED,
    DISMISSED,
    EXPIRED,
    VISIBLE,
    AlertScheduler,
)
from speakersift.config import AlertConfig
from speakersift.errors import UnknownBatchKey

from conftest import make_detection


def batch(*speaker_ids):
    return AlertBatch(key=speaker_ids[0], members=[make_detection(s) for s in speaker_ids])


def ms(n):
    return timedelta(milliseconds=n)


class TestLifecycle:
    def test_visible_after_delay(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        assert scheduler.phase("s1") == DELAYED
        assert scheduler.visible_batches() == []

        scheduler.tick(now + ms(1999))
        assert scheduler.phase("s1") == DELAYED
        scheduler.tick(now + ms(2000))
        assert scheduler.phase("s1") == VISIBLE
        assert [b.key for b in scheduler.visible_batches()] == ["s1"]

    def test_dismiss_before_delay_never_shows(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        assert scheduler.dismiss("s1", 0, now + ms(500))

        scheduler.tick(now + ms(10000))
        assert scheduler.phase("s1") == DISMISSED
        assert scheduler.visible_batches() == []
        assert len(scheduler.timers) == 0

    def test_batch_gone_before_delay_never_shows(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        scheduler.sync([], now + ms(100))
        scheduler.tick(now + ms(5000))
        assert scheduler.phase("s1") is None
        assert scheduler.visible_batches() == []

    def test_auto_hide(self, now):
        config = AlertConfig(suppress_repeated_alerts=False, auto_hide_delay=5000)
        scheduler = AlertScheduler(config)
        scheduler.sync([batch("s1")], now)
        scheduler.tick(now + ms(2000))
        assert scheduler.phase("s1") == VISIBLE
        scheduler.tick(now + ms(7000))
        assert scheduler.phase("s1") == EXPIRED
        assert scheduler.visible_batches() == []

    def test_closed_record_not_reopened_while_batch_persists(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        scheduler.tick(now + ms(2000))
        scheduler.defer("s1", 5, now + ms(2500))
        scheduler.sync([batch("s1")], now + ms(3000))
        scheduler.tick(now + ms(10000))
        assert scheduler.phase("s1") == DEFERRED

    def test_members_refresh_while_delayed(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        scheduler.sync([batch("s1", "s2")], now + ms(100))
        scheduler.tick(now + ms(2000))
        assert scheduler.visible_batches()[0].speaker_ids == ["s1", "s2"]


class TestCapacity:
    def test_visible_never_exceeds_max(self, now):
        config = AlertConfig(suppress_repeated_alerts=False, max_simultaneous_alerts=2)
        scheduler = AlertScheduler(config)
        keys = [f"s{i}" for i in range(5)]
        for i, key in enumerate(keys):
            scheduler.sync([batch(k) for k in keys[: i + 1]], now + ms(i * 100))
            assert len(scheduler.visible_batches()) <= 2
        scheduler.tick(now + ms(10000))
        assert len(scheduler.visible_batches()) == 2

    def test_oldest_visible_is_evicted(self, now):
        config = AlertConfig(suppress_repeated_alerts=False, max_simultaneous_alerts=1)
        scheduler = AlertScheduler(config)
        scheduler.sync([batch("s1")], now)
        scheduler.tick(now + ms(2000))
        scheduler.sync([batch("s1"), batch("s2")], now + ms(2500))
        scheduler.tick(now + ms(4500))

        assert [b.key for b in scheduler.visible_batches()] == ["s2"]
        record = scheduler.require("s1")
        assert record.phase == DISMISSED
        assert record.evicted is True
        assert "s1" not in scheduler.memory.dismissed_until


class TestDismissAndDefer:
    def test_dismiss_writes_memory_for_all_members(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1", "s2")], now)
        scheduler.dismiss("s1", 60000, now)
        assert scheduler.memory.dismissed_until == {
            "s1": now + ms(60000),
            "s2": now + ms(60000),
        }

    def test_permanent_dismiss_stored_as_none(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        scheduler.dismiss("s1", 0, now)
        assert scheduler.memory.dismissed_until["s1"] is None

    def test_dismiss_records_suppression_when_enabled(self, now):
        scheduler = AlertScheduler(AlertConfig())
        scheduler.sync([batch("s1")], now)
        scheduler.dismiss("s1", 1000, now)
        assert scheduler.memory.last_alert_at["s1"] == now

    def test_defer(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1")], now)
        scheduler.tick(now + ms(2000))
        assert scheduler.defer("s1", 10, now + ms(3000))
        assert scheduler.phase("s1") == DEFERRED
        assert scheduler.memory.deferred_until["s1"] == now + ms(3000) + timedelta(minutes=10)

    def test_unknown_key_is_noop(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        assert scheduler.dismiss("ghost", 0, now) is False
        assert scheduler.defer("ghost", 5, now) is False
        assert scheduler.discard("ghost") is False

    def test_require_unknown_raises(self, alert_config):
        with pytest.raises(UnknownBatchKey) as exc:
            AlertScheduler(alert_config).require("ghost")
        assert exc.value.key == "ghost"


class TestRecomputation:
    def test_claimed_members_do_not_open_new_alert(self, alert_config, now):
        scheduler = AlertScheduler(alert_config)
        scheduler.sync([batch("s1", "s2")], now)
        scheduler.tick(now + ms(2000))
        # every member of the s2 batch already belongs to the s1 alert
        scheduler.sync([batch("s1", "s2"), batch("s2")], now + ms(2100))
        assert scheduler.phase("s2") is None
