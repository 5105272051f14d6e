from __future__ import annotations

import threading
from typing import Callable, Optional

import requests

from .logger import setup_logger

logger = setup_logger("edge_attendance.connectivity")


class ConnectivityMonitor:
    """Boolean online/offline signal. Subscribers hear transitions only."""

    def __init__(self, initial_online: bool = False):
        self._online = initial_online
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set_online(self, online: bool) -> bool:
        with self._lock:
            if self._online == online:
                return False
            self._online = online
            subscribers = list(self._subscribers)
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in subscribers:
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity subscriber failed")
        return True

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe


class HttpHealthProbe:
    """Polls a health endpoint and feeds debounced results into a monitor."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        interval_seconds: float = 5.0,
        timeout_seconds: float = 1.2,
        debounce_samples: int = 2,
        session: Optional[requests.Session] = None,
    ):
        self.monitor = monitor
        self.url = url
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.debounce_samples = max(1, int(debounce_samples))
        self.session = session or requests.Session()
        self._candidate: Optional[bool] = None
        self._streak = 0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def probe(self) -> bool:
        try:
            resp = self.session.get(self.url, timeout=self.timeout_seconds)
            return bool(resp.ok)
        except requests.RequestException:
            return False

    def poll_once(self) -> bool:
        sample = self.probe()
        if sample == self._candidate:
            self._streak += 1
        else:
            self._candidate = sample
            self._streak = 1
        if self._streak >= self.debounce_samples:
            self.monitor.set_online(sample)
        return sample

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="health-probe", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.interval_seconds)
