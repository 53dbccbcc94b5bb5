from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from checker import (
    CancellationToken,
    CancelledFailure,
    CheckCompleted,
    CheckConfig,
    CheckFailed,
    CheckProgress,
    LinkChecker,
    LinkDiscovered,
    LinkRecord,
    LinkStatus,
    dedup_key,
)
from settings import ConfigStore
from utils import log_event, utc_now_iso


logger = logging.getLogger("linkcheck.jobs")


class AlreadyRunningError(RuntimeError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"A link check is already running ({run_id}). Wait for it to finish.")
        self.run_id = run_id


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class CheckRun:
    run_id: str
    started_at: str
    config: CheckConfig
    finished_at: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    reason: Optional[str] = None
    progress: Dict[str, int] = field(default_factory=dict)
    _records: List[LinkRecord] = field(default_factory=list, repr=False)
    _keys: set = field(default_factory=set, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_record(self, record: LinkRecord) -> bool:
        key = dedup_key(record.target_url)
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            self._records.append(record)
            return True

    @property
    def records(self) -> Tuple[LinkRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "run_id": self.run_id,
                "status": self.status.value,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
                "reason": self.reason,
                "progress": dict(self.progress),
                "records": len(self._records),
            }

    def _update(self, **changes: Any) -> None:
        with self._lock:
            for key, value in changes.items():
                setattr(self, key, value)


@dataclass
class _ActiveRun:
    run: CheckRun
    token: CancellationToken
    thread: Optional[threading.Thread] = None


class JobController:
    """Owns the single active link check and the lifecycle Idle -> Running -> Finalizing -> Idle."""

    def __init__(
        self,
        store: ConfigStore,
        checker: Optional[LinkChecker] = None,
        on_finished: Optional[Callable[[CheckRun], None]] = None,
        retention_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.checker = checker or LinkChecker()
        self.on_finished = on_finished
        self.retention_seconds = retention_seconds
        self._lock = threading.Lock()
        self._active: Optional[_ActiveRun] = None
        self._finalizing: Optional[CheckRun] = None
        self._runs: Dict[str, CheckRun] = {}
        self._done: Dict[str, threading.Event] = {}
        self._finished_ts: Dict[str, float] = {}
        self._last_run_id: Optional[str] = None
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    def request_run(self, config_snapshot: Optional[CheckConfig] = None) -> str:
        config = config_snapshot or CheckConfig.from_settings(self.store.typed_values())
        with self._lock:
            if self._active is not None:
                raise AlreadyRunningError(self._active.run.run_id)
            self._cleanup_old_runs()
            run = CheckRun(run_id=uuid.uuid4().hex, started_at=utc_now_iso(), config=config)
            active = _ActiveRun(run=run, token=CancellationToken())
            self._active = active
            self._runs[run.run_id] = run
            self._done[run.run_id] = threading.Event()
            self._last_run_id = run.run_id
            active.thread = threading.Thread(
                target=self._runner, args=(active,), name=f"linkcheck-run-{run.run_id[:8]}", daemon=True
            )

        self.store.append_log(f"Link check {run.run_id} started with {len(config.entry_points)} entry point(s).")
        log_event(logger, logging.INFO, "run_started", run_id=run.run_id, entry_points=len(config.entry_points))
        self._notify({"event": "state", "run_id": run.run_id, "state": RunStatus.RUNNING.value})
        active.thread.start()
        return run.run_id

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            active = self._active
            if active is None or active.run.run_id != run_id:
                return False
            active.token.cancel()
        self.store.append_log(f"Cancellation requested for link check {run_id}.")
        log_event(logger, logging.INFO, "run_cancel_requested", run_id=run_id)
        return True

    def current_status(self) -> Dict[str, Any]:
        with self._lock:
            active = self._active
            finalizing = self._finalizing
            last = self._runs.get(self._last_run_id) if self._last_run_id else None
        if active is not None:
            return {"state": "running", "can_start": False, "run": active.run.snapshot()}
        if finalizing is not None:
            return {"state": "finalizing", "can_start": True, "last_run": finalizing.snapshot()}
        return {
            "state": "idle",
            "can_start": True,
            "last_run": last.snapshot() if last is not None else None,
        }

    def get_run(self, run_id: str) -> Optional[CheckRun]:
        with self._lock:
            return self._runs.get(run_id)

    def latest_run(self) -> Optional[CheckRun]:
        with self._lock:
            return self._runs.get(self._last_run_id) if self._last_run_id else None

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[CheckRun]:
        """Block until ``run_id`` is finished; returns the run, or None on timeout or unknown id."""
        with self._lock:
            done = self._done.get(run_id)
        if done is None or not done.wait(timeout):
            return None
        return self.get_run(run_id)

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _runner(self, active: _ActiveRun) -> None:
        run = active.run
        status = RunStatus.FAILED
        reason: Optional[str] = "Check ended without a result"
        try:
            for event in self.checker.start(run.config, active.token):
                if isinstance(event, LinkDiscovered):
                    record = event.record
                    if run.add_record(record) and record.status is LinkStatus.BROKEN:
                        self.store.append_log(
                            f"Broken link {record.target_url} ({record.detail}) found on {record.source_location}."
                        )
                elif isinstance(event, CheckProgress):
                    run._update(progress=dict(event.counts))
                    self._notify({"event": "progress", "run_id": run.run_id, "counts": dict(event.counts)})
                elif isinstance(event, CheckCompleted):
                    run._update(progress=dict(event.summary))
                    status, reason = RunStatus.COMPLETED, None
                elif isinstance(event, CheckFailed):
                    run._update(progress=dict(event.summary))
                    if isinstance(event.failure, CancelledFailure):
                        status = RunStatus.CANCELLED
                    else:
                        status = RunStatus.FAILED
                    reason = str(event.failure)
        except Exception as exc:  # noqa: BLE001
            status, reason = RunStatus.FAILED, f"Internal error: {exc}"
            log_event(logger, logging.ERROR, "run_crashed", run_id=run.run_id, error=repr(exc))
        finally:
            self._finish(active, status, reason)

    def _finish(self, active: _ActiveRun, status: RunStatus, reason: Optional[str]) -> None:
        run = active.run
        run._update(status=status, reason=reason, finished_at=utc_now_iso())
        summary = dict(run.progress)
        line = f"Link check {run.run_id} {status.value}"
        if reason:
            line = f"{line}: {reason}"
        self.store.append_log(f"{line} ({len(run.records)} link(s) recorded).")
        level = logging.INFO if status is not RunStatus.FAILED else logging.ERROR
        log_event(logger, level, "run_finished", run_id=run.run_id, state=status.value, reason=reason, **summary)

        # The slot is released before the post-run hook; status reads "finalizing" until the hook returns.
        with self._lock:
            if self._active is active:
                self._active = None
            self._finalizing = run
            self._finished_ts[run.run_id] = time.time()
            done = self._done.get(run.run_id)

        if self.on_finished is not None:
            try:
                self.on_finished(run)
            except Exception as exc:  # noqa: BLE001
                self.store.append_log(f"Post-run processing failed for {run.run_id}: {exc}")
                log_event(logger, logging.ERROR, "run_post_processing_failed", run_id=run.run_id, error=repr(exc))

        with self._lock:
            if self._finalizing is run:
                self._finalizing = None
        self._notify({"event": "state", "run_id": run.run_id, "state": status.value, "reason": reason})
        if done is not None:
            done.set()

    def _cleanup_old_runs(self) -> None:
        now = time.time()
        for run_id, finished in list(self._finished_ts.items()):
            if run_id == self._last_run_id:
                continue
            if (now - finished) > max(60, self.retention_seconds):
                self._runs.pop(run_id, None)
                self._done.pop(run_id, None)
                self._finished_ts.pop(run_id, None)

    def _notify(self, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "job_listener_failed", error=repr(exc))
