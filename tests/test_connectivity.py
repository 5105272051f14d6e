import threading
import time

import requests

from edge_attendance import observable as observable_module
from edge_attendance.connectivity import ConnectivityMonitor, HttpHealthProbe
from edge_attendance.observable import Observable
from edge_attendance.types import SyncState


class FlakySession:
    """Answers health checks from a script of True/False samples."""

    def __init__(self, samples):
        self.samples = list(samples)

    def get(self, url, timeout):
        healthy = self.samples.pop(0)
        if not healthy:
            raise requests.ConnectionError("unreachable")
        return type("Response", (), {"ok": True})()


def test_monitor_notifies_only_on_transitions():
    monitor = ConnectivityMonitor(initial_online=False)
    seen = []
    monitor.subscribe(seen.append)

    assert monitor.set_online(False) is False
    assert monitor.set_online(True) is True
    assert monitor.set_online(True) is False
    assert monitor.set_online(False) is True
    assert seen == [True, False]


def test_unsubscribe_and_failing_subscriber():
    monitor = ConnectivityMonitor()
    seen = []

    def broken(online):
        raise RuntimeError("listener bug")

    monitor.subscribe(broken)
    unsubscribe = monitor.subscribe(seen.append)
    monitor.set_online(True)
    unsubscribe()
    monitor.set_online(False)
    assert seen == [True]


def test_probe_is_debounced():
    monitor = ConnectivityMonitor(initial_online=False)
    session = FlakySession([True, False, True, True, False, False])
    probe = HttpHealthProbe(monitor, "http://health.local", debounce_samples=2, session=session)

    probe.poll_once()
    assert monitor.is_online is False
    probe.poll_once()
    probe.poll_once()
    assert monitor.is_online is False
    probe.poll_once()
    assert monitor.is_online is True
    probe.poll_once()
    assert monitor.is_online is True
    probe.poll_once()
    assert monitor.is_online is False


def test_observable_update_notifies_with_new_value():
    state = Observable(SyncState())
    seen = []
    state.subscribe(seen.append)

    state.update(is_syncing=True, progress=0.1)

    assert state.value.is_syncing is True
    assert seen[-1].progress == 0.1
    assert seen[-1].message == "Ready to sync"


def test_concurrent_updates_keep_both_writes(monkeypatch):
    state = Observable(SyncState(is_syncing=True))
    seen = []
    state.subscribe(seen.append)
    entered = threading.Event()
    replace = observable_module.dataclasses.replace

    def slow_replace(value, **changes):
        if "message" in changes:
            entered.set()
            time.sleep(0.2)
        return replace(value, **changes)

    monkeypatch.setattr(observable_module.dataclasses, "replace", slow_replace)

    writer = threading.Thread(target=state.update, kwargs={"message": "Offline"})
    writer.start()
    assert entered.wait(timeout=2.0)
    state.update(is_syncing=False, progress=1.0)
    writer.join(timeout=2.0)

    final = state.value
    assert final.is_syncing is False
    assert final.progress == 1.0
    assert final.message == "Offline"
    assert seen[-1] == final
