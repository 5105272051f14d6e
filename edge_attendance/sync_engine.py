from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

from .attendance_queue import AttendanceQueue
from .connectivity import ConnectivityMonitor
from .logger import setup_logger
from .observable import Observable
from .remote_attendance import RemoteAttendanceService
from .schemas import PushStatus
from .types import AttendanceRecord, Identity, SyncState, now_ms

ProfileProvider = Callable[[], Iterable[Identity]]


def build_result_message(synced: int, failed: int, total: int) -> str:
    if failed == 0 and synced == total:
        return f"All {total} records synced successfully"
    if failed == 0 and synced > 0:
        return f"Synced {synced} records"
    if synced == 0 and failed > 0:
        return f"Failed to sync {failed} records"
    return f"Synced {synced}, failed {failed} out of {total} records"


def format_last_sync(last_sync_time: Optional[int], now: Optional[int] = None) -> str:
    if last_sync_time is None:
        return "Never synced"
    diff = (now if now is not None else now_ms()) - last_sync_time
    if diff < 60_000:
        return "Just now"
    if diff < 3_600_000:
        return f"{diff // 60_000} minutes ago"
    if diff < 86_400_000:
        return f"{diff // 3_600_000} hours ago"
    return datetime.fromtimestamp(last_sync_time / 1000).strftime("%b %d, %H:%M")


class SyncEngine:
    """Reconciles queued attendance with the remote service.

    Passes are single-flight. A worker thread runs them periodically while
    online and shortly after the device comes back online; connectivity
    callbacks only reschedule and wake that worker.
    """

    def __init__(
        self,
        queue: AttendanceQueue,
        remote: RemoteAttendanceService,
        connectivity: ConnectivityMonitor,
        profile_provider: Optional[ProfileProvider] = None,
        interval_seconds: float = 30.0,
        settle_seconds: float = 2.0,
    ):
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.profile_provider = profile_provider or (lambda: [])
        self.interval_seconds = interval_seconds
        self.settle_seconds = settle_seconds
        self.state: Observable[SyncState] = Observable(SyncState())
        self.logger = setup_logger(self.__class__.__name__)

        self._pass_lock = threading.Lock()
        self._schedule_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_run: Optional[float] = None
        self._next_reason = "Periodic sync"
        self._unsubscribe = connectivity.subscribe(self._on_connectivity)

    # -- queries -----------------------------------------------------------

    def pending_count(self) -> int:
        return self.queue.count_unsynced()

    def formatted_last_sync(self, now: Optional[int] = None) -> str:
        return format_last_sync(self.state.value.last_sync_time, now)

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # -- worker ------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        with self._schedule_lock:
            if self.connectivity.is_online:
                self._next_run = time.monotonic()
                self._next_reason = "Periodic sync"
        self._thread = threading.Thread(target=self._run_loop, name="attendance-sync", daemon=True)
        self._thread.start()
        self.logger.info("Sync worker started (interval %.0fs)", self.interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        self._wake.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self.logger.info("Sync worker stopped")

    def close(self) -> None:
        self.stop()
        self._unsubscribe()

    def _on_connectivity(self, online: bool) -> None:
        with self._schedule_lock:
            if online:
                self._next_run = time.monotonic() + self.settle_seconds
                self._next_reason = "Network connected - auto sync"
            else:
                self._next_run = None
        if not online:
            self.state.update(message="Offline - data will sync when connected")
        self._wake.set()

    def request_sync(self, reason: str = "New attendance record") -> None:
        """Ask the worker for a pass as soon as it is online. Never blocks."""
        with self._schedule_lock:
            self._next_run = time.monotonic()
            self._next_reason = reason
        self._wake.set()

    def _due_in(self) -> Optional[float]:
        with self._schedule_lock:
            if self._next_run is None:
                return None
            return self._next_run - time.monotonic()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake.clear()
            if not self.connectivity.is_online:
                self._wake.wait()
                continue
            remaining = self._due_in()
            if remaining is None:
                with self._schedule_lock:
                    self._next_run = time.monotonic() + self.interval_seconds
                    self._next_reason = "Periodic sync"
                continue
            if remaining > 0:
                self._wake.wait(remaining)
                continue

            with self._schedule_lock:
                reason = self._next_reason
                self._next_run = time.monotonic() + self.interval_seconds
                self._next_reason = "Periodic sync"
            try:
                self.sync_now(reason)
            except Exception:
                self.logger.exception("Sync iteration failed")

    # -- pass --------------------------------------------------------------

    def sync_now(self, reason: str = "Manual sync") -> bool:
        if not self._pass_lock.acquire(blocking=False):
            self.logger.info("Sync already in progress, ignoring: %s", reason)
            return False
        try:
            return self._run_pass(reason)
        finally:
            self._pass_lock.release()

    def _push_profiles(self) -> dict[str, Identity]:
        profiles: dict[str, Identity] = {}
        try:
            for identity in self.profile_provider():
                profiles[identity.identity_id] = identity
        except Exception:
            self.logger.exception("Could not load identity profiles")
            return profiles
        for identity in profiles.values():
            try:
                pushed = self.remote.push_profile(identity)
            except Exception:
                self.logger.exception("Profile push for %s failed", identity.identity_id)
                pushed = False
            if not pushed:
                self.logger.warning(
                    "Profile for %s not mirrored, attendance sync may fail", identity.identity_id
                )
        return profiles

    def _push_record(self, record: AttendanceRecord, profiles: dict[str, Identity]) -> bool:
        result = self.remote.push_record(record)
        if result.status is PushStatus.NOT_FOUND:
            self.logger.warning("%s unknown to the remote store, pushing profile first", record.identity_id)
            identity = profiles.get(record.identity_id)
            if identity is None or not self.remote.push_profile(identity):
                self.logger.error("Profile for %s could not be pushed, record %s stays pending",
                                  record.identity_id, record.record_id)
                return False
            result = self.remote.push_record(record)

        if result.status is PushStatus.DUPLICATE:
            self.logger.info("Record %s already on the remote store, marking as synced", record.record_id)
        elif result.status is PushStatus.ERROR:
            self.logger.error("Record %s failed: %s %s", record.record_id, result.code, result.body)
        return result.delivered

    def _run_pass(self, reason: str) -> bool:
        self.logger.info("Starting sync: %s", reason)
        if not self.connectivity.is_online:
            self.state.update(message="Offline - data will sync when connected", pending_count=self.pending_count())
            return False

        self.state.update(is_syncing=True, message="Checking for pending records...", progress=0.1)
        try:
            profiles = self._push_profiles()
            records = self.queue.list_unsynced()
        except Exception as exc:
            self.logger.exception("Sync failed")
            self.state.update(is_syncing=False, message=f"Sync failed: {exc}", progress=0.0)
            return False

        total = len(records)
        self.state.update(
            pending_count=total,
            message=f"Syncing {total} records..." if total else "No records to sync",
            progress=0.2,
        )
        if total == 0:
            self.state.update(
                is_syncing=False,
                synced_count=0,
                failed_count=0,
                message="All data is synced",
                progress=1.0,
            )
            return True

        synced = 0
        failed = 0
        interrupted = False
        for index, record in enumerate(records):
            if not self.connectivity.is_online:
                self.logger.warning("Connectivity lost, %d records left pending", total - index)
                interrupted = True
                break
            self.state.update(
                message=f"Syncing record {index + 1} of {total}...",
                progress=0.2 + 0.7 * index / total,
            )
            try:
                delivered = self._push_record(record, profiles)
                if delivered:
                    self.queue.mark_synced(record.record_id)
            except Exception:
                self.logger.exception("Error syncing record %s", record.record_id)
                delivered = False
            if delivered:
                synced += 1
                self.logger.info(
                    "Synced record %s: %s - %s", record.record_id, record.identity_id, record.event_type.value
                )
            else:
                failed += 1

        message = build_result_message(synced, failed, total)
        if interrupted:
            message = f"{message}. Offline - data will sync when connected"
        changes = dict(
            is_syncing=False,
            pending_count=total - synced,
            synced_count=synced,
            failed_count=failed,
            message=message,
            progress=1.0,
        )
        if synced > 0:
            changes["last_sync_time"] = now_ms()
        self.state.update(**changes)
        self.logger.info("Sync completed: %d synced, %d failed out of %d", synced, failed, total)
        return failed == 0 and not interrupted
