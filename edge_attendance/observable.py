from __future__ import annotations

import dataclasses
import threading
from typing import Callable, Generic, TypeVar

from .logger import setup_logger

T = TypeVar("T")

logger = setup_logger("edge_attendance.observable")


class Observable(Generic[T]):
    """Thread-safe value holder that notifies subscribers on every change.

    Changes are applied and delivered one at a time, so subscribers see
    values in the order they were written and the last notification always
    matches ``value``.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._lock = threading.Lock()
        # Reentrant so a subscriber may update the value it is observing.
        self._write_lock = threading.RLock()
        self._subscribers: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        with self._write_lock:
            with self._lock:
                self._value = value
                subscribers = list(self._subscribers)
            self._notify(subscribers, value)

    def update(self, **changes) -> T:
        with self._write_lock:
            with self._lock:
                value = dataclasses.replace(self._value, **changes)
                self._value = value
                subscribers = list(self._subscribers)
            self._notify(subscribers, value)
        return value

    @staticmethod
    def _notify(subscribers: list[Callable[[T], None]], value: T) -> None:
        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                logger.exception("Observer callback failed")

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe
