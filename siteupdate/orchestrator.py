#!/usr/bin/env python3
"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Site Update Orchestrator

Takes a hosted site offline, applies a new bundle and brings it back, rolling
back from a snapshot when the apply fails.

    Idle --resolve--> Resolved --snapshot, fetch--> Stopping --stop--> Updating
    Updating --apply ok--> Starting            Updating --apply fails--> RollingBack
    RollingBack --restore ok--> Starting       RollingBack --restore fails--> Failed
    Starting --start ok--> Running             Starting --start fails--> Failed

Three outcomes are reported:
- SUCCESS: new tree live, snapshot discarded
- FAILED: nothing changed, or the apply failed and the old tree was restored
  and restarted; snapshot discarded
- FAILED_UNRECOVERABLE: restore or final start failed; snapshot retained for
  manual recovery
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .components.artifact_applier import Artifact, ArtifactApplier
from .components.filesystem import LocalFileSystem
from .components.hosting import HostingController, ServiceRef
from .components.snapshot_manager import SnapshotHandle, SnapshotManager
from .config import UpdateConfig
from .errors import (
    ApplyError,
    FetchError,
    HostError,
    InvalidTransitionError,
    ResolveError,
    RestoreError,
    SnapshotError,
)
from .utils.index import log_message


class UpdateState(str, Enum):
    IDLE = "idle"
    RESOLVED = "resolved"
    STOPPING = "stopping"
    UPDATING = "updating"
    ROLLING_BACK = "rolling_back"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    UpdateState.IDLE: {UpdateState.RESOLVED, UpdateState.FAILED},
    UpdateState.RESOLVED: {UpdateState.STOPPING, UpdateState.FAILED},
    UpdateState.STOPPING: {UpdateState.UPDATING, UpdateState.FAILED},
    UpdateState.UPDATING: {UpdateState.STARTING, UpdateState.ROLLING_BACK},
    UpdateState.ROLLING_BACK: {UpdateState.STARTING, UpdateState.FAILED},
    UpdateState.STARTING: {UpdateState.RUNNING, UpdateState.FAILED},
    UpdateState.RUNNING: set(),
    UpdateState.FAILED: set(),
}

# Cancellation is honoured only before the service is stopped
CANCELLABLE_STATES = {UpdateState.IDLE, UpdateState.RESOLVED}


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    FAILED_UNRECOVERABLE = "failed_unrecoverable"


EXIT_CODES = {
    OutcomeKind.SUCCESS: 0,
    OutcomeKind.FAILED: 1,
    OutcomeKind.FAILED_UNRECOVERABLE: 2,
}


class TreeState(str, Enum):
    """What is on disk at the service root when the run ends."""
    UNTOUCHED = "untouched"
    NEW = "new"
    RESTORED = "restored"
    PARTIAL = "partial"


@dataclass
class UpdateOutcome:
    kind: OutcomeKind
    service_name: str
    reason: str
    final_state: UpdateState
    tree_state: TreeState
    rolled_back: bool = False
    snapshot_path: Optional[str] = None
    cancel_deferred: bool = False
    history: List[Tuple[str, str]] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def unrecoverable(self) -> bool:
        return self.kind == OutcomeKind.FAILED_UNRECOVERABLE

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "service_name": self.service_name,
            "reason": self.reason,
            "final_state": self.final_state.value,
            "tree_state": self.tree_state.value,
            "rolled_back": self.rolled_back,
            "snapshot_path": self.snapshot_path,
            "cancel_deferred": self.cancel_deferred,
            "history": [list(step) for step in self.history],
        }


@dataclass
class UpdateRun:
    """State of one orchestration call. Never persisted."""
    config: UpdateConfig
    state: UpdateState = UpdateState.IDLE
    service: Optional[ServiceRef] = None
    snapshot: Optional[SnapshotHandle] = None
    artifact: Optional[Artifact] = None
    tree_state: TreeState = TreeState.UNTOUCHED
    rolled_back: bool = False
    cancel_deferred: bool = False
    history: List[Tuple[str, str]] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def transition(self, new_state: UpdateState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Invalid transition {self.state.value} -> {new_state.value}")
        log_message(f"[UPDATE] {self.config.service_name}: {self.state.value} -> {new_state.value}")
        self.history.append((self.state.value, new_state.value))
        self.state = new_state

    def request_cancel(self) -> bool:
        """Ask the run to stop. Returns False when the request is deferred."""
        with self.guard:
            self.cancel_event.set()
            if self.state in CANCELLABLE_STATES:
                return True
            self.cancel_deferred = True
        log_message(f"[UPDATE] Cancel for {self.config.service_name} deferred until the run finishes", "WARNING")
        return False

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class _ServiceLock:
    """Per-service run lock with the number of runs holding or waiting on it."""
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class UpdateOrchestrator:
    """
    Drives one site update at a time per service.

    Runs for the same service name are serialized by a process-wide lock;
    different services share nothing and can update in parallel.
    """

    _registry_lock = threading.Lock()
    _service_locks: Dict[str, _ServiceLock] = {}

    def __init__(self, hosting: HostingController,
                 applier: Optional[ArtifactApplier] = None,
                 filesystem: Optional[LocalFileSystem] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.hosting = hosting
        self.fs = filesystem or LocalFileSystem()
        self.applier = applier or ArtifactApplier(self.fs)
        self.sleep = sleep
        self._active_runs: Dict[str, UpdateRun] = {}
        self._active_lock = threading.Lock()

    @classmethod
    def _lock_for(cls, service_name: str) -> _ServiceLock:
        """Get the lock for a service and register the caller as one of its users."""
        with cls._registry_lock:
            entry = cls._service_locks.setdefault(service_name, _ServiceLock())
            entry.users += 1
            return entry

    @classmethod
    def _release_lock(cls, service_name: str, entry: _ServiceLock) -> None:
        entry.lock.release()
        with cls._registry_lock:
            entry.users -= 1
            # Forget locks nobody holds or waits for
            if entry.users == 0 and cls._service_locks.get(service_name) is entry:
                del cls._service_locks[service_name]

    def request_cancel(self, service_name: str) -> bool:
        """
        Request cancellation of the active run for a service.

        Returns:
            bool: True if the run will stop before touching the service,
                  False if there is no active run or the request was deferred
        """
        with self._active_lock:
            run = self._active_runs.get(service_name)
        if run is None:
            log_message(f"[UPDATE] No active update for {service_name} to cancel", "WARNING")
            return False
        return run.request_cancel()

    def snapshot_manager_for(self, config: UpdateConfig, service: ServiceRef) -> SnapshotManager:
        # Without a configured root the snapshot sits next to the service root
        snapshot_root = config.snapshot_root or str(Path(service.root_path).resolve().parent)
        return SnapshotManager(snapshot_root, self.fs)

    def run_update(self, config: UpdateConfig) -> UpdateOutcome:
        """
        Update one service from an artifact.

        Operational failures never escape; they are reported in the outcome.
        """
        entry = self._lock_for(config.service_name)
        if not entry.lock.acquire(blocking=False):
            log_message(f"[UPDATE] Update of {config.service_name} already running; waiting")
            entry.lock.acquire()

        run = UpdateRun(config)
        with self._active_lock:
            self._active_runs[config.service_name] = run
        try:
            return self._execute(run)
        finally:
            if run.artifact:
                run.artifact.cleanup()
            with self._active_lock:
                self._active_runs.pop(config.service_name, None)
            self._release_lock(config.service_name, entry)

    def _execute(self, run: UpdateRun) -> UpdateOutcome:
        config = run.config
        name = config.service_name
        log_message(f"[UPDATE] Starting update of {name} from {config.artifact_locator}")

        try:
            run.service = self.hosting.resolve(name)
        except ResolveError as e:
            return self._fail(run, f"Could not resolve service {name}: {e}", e)
        run.transition(UpdateState.RESOLVED)
        root_path = run.service.root_path
        snapshots = self.snapshot_manager_for(config, run.service)

        try:
            run.snapshot = snapshots.create(name, root_path)
        except SnapshotError as e:
            return self._fail(run, f"Snapshot failed, service untouched: {e}", e)

        if run.cancel_requested:
            return self._fail(run, "Cancelled before the service was stopped", snapshots=snapshots)

        try:
            run.artifact = self.applier.fetch(config.artifact_locator, config.timeout)
        except FetchError as e:
            return self._fail(run, f"Fetch failed, service untouched: {e}", e, snapshots=snapshots)

        with run.guard:
            cancelled = run.cancel_requested
            if not cancelled:
                run.transition(UpdateState.STOPPING)
        if cancelled:
            return self._fail(run, "Cancelled before the service was stopped", snapshots=snapshots)

        try:
            self.hosting.stop(name)
        except HostError as e:
            return self._fail(run, f"Stop failed, service untouched: {e}", e, snapshots=snapshots)

        run.transition(UpdateState.UPDATING)
        apply_error = None
        try:
            self.applier.apply(run.artifact, root_path)
            run.tree_state = TreeState.NEW
        except Exception as e:
            apply_error = e if isinstance(e, ApplyError) else ApplyError(f"Unexpected apply failure: {e}")
            log_message(f"[UPDATE] ✗ Apply failed for {name}: {e}", "ERROR")
            run.tree_state = TreeState.PARTIAL
            run.transition(UpdateState.ROLLING_BACK)
            try:
                snapshots.restore(run.snapshot, root_path)
            except RestoreError as restore_error:
                return self._fail(
                    run,
                    f"Rollback failed after apply error ({e}): {restore_error}. "
                    f"Service left stopped; manual inspection required",
                    restore_error,
                    unrecoverable=True,
                )
            run.tree_state = TreeState.RESTORED
            run.rolled_back = True

        run.transition(UpdateState.STARTING)
        try:
            self._start_and_confirm(name, config)
        except HostError as e:
            return self._fail(
                run,
                f"Service did not come back with the {run.tree_state.value} tree on disk: {e}. "
                f"Manual intervention required",
                e,
                unrecoverable=True,
            )
        run.transition(UpdateState.RUNNING)

        if apply_error is not None:
            self._discard(run, snapshots)
            return self._outcome(
                run, OutcomeKind.FAILED,
                f"Apply failed and the previous version was restored: {apply_error}",
                apply_error,
            )

        self._discard(run, snapshots)
        return self._outcome(run, OutcomeKind.SUCCESS, f"{name} updated from {config.artifact_locator}")

    def _start_and_confirm(self, name: str, config: UpdateConfig) -> None:
        self.hosting.start(name)
        for _ in range(config.start_confirm_attempts):
            self.sleep(config.start_settle_seconds)
            if self.hosting.is_running(name):
                log_message(f"[UPDATE] ✓ {name} is running")
                return
        raise HostError(f"{name} was started but is not reporting as running")

    def _discard(self, run: UpdateRun, snapshots: SnapshotManager) -> None:
        try:
            snapshots.discard(run.snapshot)
            run.snapshot = None
        except SnapshotError as e:
            log_message(f"[UPDATE] Could not discard snapshot for {run.config.service_name}: {e}", "ERROR")

    def _fail(self, run: UpdateRun, reason: str, error: Optional[BaseException] = None,
              unrecoverable: bool = False, snapshots: Optional[SnapshotManager] = None) -> UpdateOutcome:
        run.transition(UpdateState.FAILED)
        if snapshots is not None and run.snapshot is not None and not unrecoverable:
            self._discard(run, snapshots)
        kind = OutcomeKind.FAILED_UNRECOVERABLE if unrecoverable else OutcomeKind.FAILED
        return self._outcome(run, kind, reason, error)

    def _outcome(self, run: UpdateRun, kind: OutcomeKind, reason: str,
                 error: Optional[BaseException] = None) -> UpdateOutcome:
        outcome = UpdateOutcome(
            kind=kind,
            service_name=run.config.service_name,
            reason=reason,
            final_state=run.state,
            tree_state=run.tree_state,
            rolled_back=run.rolled_back,
            snapshot_path=run.snapshot.slot_path if run.snapshot else None,
            cancel_deferred=run.cancel_deferred,
            history=list(run.history),
            error=error,
        )
        if kind == OutcomeKind.SUCCESS:
            log_message(f"[UPDATE] ✓ {reason}")
        elif kind == OutcomeKind.FAILED:
            log_message(f"[UPDATE] ✗ {reason}", "WARNING")
        else:
            log_message(f"[UPDATE] ✗ UNRECOVERABLE: {reason}", "ERROR")
            if outcome.snapshot_path:
                log_message(f"[UPDATE] Snapshot retained at {outcome.snapshot_path}", "ERROR")
        return outcome

