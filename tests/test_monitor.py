"""Tests for the change monitor: detection, debounce, and gates."""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from plannersync.sync.models import BatchResult
from plannersync.sync.monitor import ChangeMonitor


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stubbed(planner_data, engine, monkeypatch):
    """Engine whose auto_sync is a mock."""
    monkeypatch.setattr(
        engine, "auto_sync", MagicMock(return_value=BatchResult(success=True))
    )
    return engine


@pytest.fixture
def monitor(stubbed, clock) -> ChangeMonitor:
    m = ChangeMonitor(stubbed, clock=clock)
    m.poll()
    return m


class TestDetection:

    def test_first_poll_is_baseline(self, stubbed, clock):
        m = ChangeMonitor(stubbed, clock=clock)
        assert m.poll() is False
        assert m.pending_changes is False

    def test_no_change(self, monitor):
        assert monitor.poll() is False
        assert monitor.pending_changes is False

    def test_module_key_change(self, monitor, store, clock):
        clock.now = 12.0
        store.write_json("habits", [])
        assert monitor.poll() is True
        assert monitor.pending_changes
        assert monitor.last_change_at == 12.0
        assert monitor.changed_keys == ["habits"]

    def test_aux_setting_change(self, monitor, store):
        store.set_item("app-theme", json.dumps("dark"))
        assert monitor.poll() is True
        assert monitor.changed_keys == ["app-theme"]

    def test_unwatched_key_ignored(self, monitor, store):
        store.set_item("scratch", "1")
        assert monitor.poll() is False

    def test_deleted_key_detected(self, monitor, store):
        store.remove_item("calendar-events")
        assert monitor.poll() is True
        assert monitor.changed_keys == ["calendar-events"]


class TestDebounce:

    def test_waits_for_quiet_period(self, monitor, store, clock):
        store.write_json("habits", [])
        monitor.poll()

        clock.now = 2.9
        assert monitor.due() is False
        clock.now = 3.0
        assert monitor.due() is True

    def test_new_change_restarts_window(self, monitor, store, clock):
        store.write_json("habits", [])
        monitor.poll()

        clock.now = 2.0
        store.write_json("habits", [{"id": "again"}])
        monitor.poll()

        clock.now = 4.0
        assert monitor.due() is False
        clock.now = 5.0
        assert monitor.due() is True

    def test_tick_syncs_once_due(self, monitor, stubbed, store, clock):
        store.write_json("habits", [])
        assert monitor.tick() is None
        stubbed.auto_sync.assert_not_called()

        clock.now = 3.5
        result = monitor.tick()
        assert result.success
        stubbed.auto_sync.assert_called_once()
        assert monitor.pending_changes is False
        assert monitor.last_result is result

    def test_nothing_pending_never_due(self, monitor, clock):
        clock.now = 100.0
        assert monitor.due() is False


class TestGates:
    """Each gate skips the cycle and leaves changes pending."""

    def _make_due(self, monitor, store, clock):
        store.write_json("habits", [])
        monitor.poll()
        clock.now += 10.0

    def test_not_connected(self, monitor, stubbed, store, clock):
        stubbed.disconnect()
        self._make_due(monitor, store, clock)
        assert monitor.tick() is None
        stubbed.auto_sync.assert_not_called()
        assert monitor.pending_changes

    def test_auto_sync_disabled(self, monitor, stubbed, store, clock):
        stubbed.settings.auto_sync = False
        self._make_due(monitor, store, clock)
        assert monitor.tick() is None
        assert monitor.pending_changes

        stubbed.settings.auto_sync = True
        assert monitor.tick() is not None
        stubbed.auto_sync.assert_called_once()

    def test_sync_in_flight(self, monitor, stubbed, store, clock):
        self._make_due(monitor, store, clock)
        monitor.syncing = True
        assert monitor.try_sync() is None
        stubbed.auto_sync.assert_not_called()

    def test_cooldown(self, monitor, stubbed, store, clock):
        self._make_due(monitor, store, clock)
        assert monitor.tick() is not None
        first_attempt = monitor.last_sync_attempt

        store.write_json("habits", [{"id": "next"}])
        monitor.poll()
        clock.now = first_attempt + 4.0
        assert monitor.due() is True
        assert monitor.tick() is None
        assert monitor.pending_changes

        clock.now = first_attempt + 5.0
        assert monitor.tick() is not None
        assert stubbed.auto_sync.call_count == 2

    def test_syncing_flag_cleared_after_error(self, monitor, stubbed, store, clock):
        stubbed.auto_sync.side_effect = RuntimeError("boom")
        self._make_due(monitor, store, clock)
        with pytest.raises(RuntimeError):
            monitor.try_sync()
        assert monitor.syncing is False


class TestEndToEnd:

    def test_local_edit_reaches_remote(self, planner_data, engine, github_api, clock):
        engine.sync_all_to_cloud()
        m = ChangeMonitor(engine, clock=clock)
        m.poll()

        planner_data.write_json("habits", [{"id": "h1", "completedDates": ["2026-10-19"]}])
        m.tick()
        clock.now = 3.0
        result = m.tick()

        assert result.results == {"habits": True}
        remote = json.loads(github_api.text_of("sync-habits.json"))
        assert remote["data"][0]["completedDates"] == ["2026-10-19"]


class TestLifecycle:

    def test_stop_when_not_running(self, stubbed):
        m = ChangeMonitor(stubbed)
        m.stop()
        assert not m.running

    def test_background_thread_syncs(self, stubbed, store):
        stubbed.settings.poll_interval = 0.01
        stubbed.settings.debounce_seconds = 0.0
        stubbed.settings.cooldown_seconds = 0.0
        m = ChangeMonitor(stubbed)
        m.start()
        try:
            assert m.running
            store.write_json("habits", [])
            deadline = time.monotonic() + 5
            while not stubbed.auto_sync.called and time.monotonic() < deadline:
                time.sleep(0.01)
            assert stubbed.auto_sync.called
        finally:
            m.stop()
        assert not m.running

    def test_start_twice_restarts(self, stubbed):
        stubbed.settings.poll_interval = 0.01
        m = ChangeMonitor(stubbed)
        m.start()
        first = m._thread
        m.start()
        try:
            assert m._thread is not first
            assert not first.is_alive()
            assert m.running
        finally:
            m.stop()

    def test_restart_during_slow_sync_leaves_one_thread(self, stubbed, store):
        entered = threading.Event()
        release = threading.Event()

        def slow_sync():
            entered.set()
            release.wait(5)
            return BatchResult(success=True)

        stubbed.auto_sync.side_effect = slow_sync
        stubbed.settings.poll_interval = 0.01
        stubbed.settings.debounce_seconds = 0.0
        stubbed.settings.cooldown_seconds = 0.0
        m = ChangeMonitor(stubbed)
        m.join_timeout = 0.1
        m.start()
        try:
            store.write_json("habits", [])
            assert entered.wait(5)
            old = m._thread

            m.start()
            assert m._thread is not old
            release.set()
            old.join(2)
            assert not old.is_alive()
            assert m.running
        finally:
            release.set()
            m.stop()
        assert not m.running
