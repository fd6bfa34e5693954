# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/orchestrator/orchestrator.py
from __future__ import annotations

import fcntl
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from kubestrap.config.models import (
    ClusterSpec,
    ExecutorSettings,
    KubestrapConfig,
    PreflightSettings,
    VerifySettings,
)
from kubestrap.errors import (
    ExecutionError,
    KubestrapError,
    ReadinessError,
    RunCancelledError,
    RunInProgressError,
)
from kubestrap.execution.executor import PlaybookExecutor
from kubestrap.execution.models import ExecutionMode, ExecutionRecord, ExecutionStatus, Procedure
from kubestrap.inventory.renderer import InventoryDocument, render, write_inventory
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    InventoryRendered,
    NodePreflightFailed,
    PlaybookFinished,
    PlaybookOutput,
    PlaybookStarted,
    PreflightCompleted,
    RunStarted,
    RunSummary,
    StaleCacheCleared,
    StateChanged,
    VerifyAttempt,
    new_ctx,
)
from kubestrap.preflight.checker import PreflightChecker, PreflightResult, run_preflight
from kubestrap.utils.cancel import CancellationToken
from kubestrap.verify.status import KubernetesNodeStatus, NodeStatusSource, wait_for_nodes_ready

log = logging.getLogger("kubestrap")


class RunState(str, Enum):
    IDLE = "Idle"
    PREFLIGHTING = "Preflighting"
    RENDERING = "Rendering"
    DEPLOYING = "Deploying"
    VERIFYING = "Verifying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    RESETTING = "Resetting"


_TRANSITIONS: Dict[RunState, set] = {
    RunState.IDLE: {RunState.PREFLIGHTING, RunState.RESETTING, RunState.VERIFYING, RunState.FAILED},
    RunState.PREFLIGHTING: {RunState.RENDERING, RunState.FAILED},
    RunState.RENDERING: {RunState.DEPLOYING, RunState.FAILED},
    RunState.DEPLOYING: {RunState.VERIFYING, RunState.FAILED},
    RunState.VERIFYING: {RunState.SUCCEEDED, RunState.FAILED},
    RunState.RESETTING: {RunState.IDLE, RunState.FAILED},
    RunState.FAILED: {RunState.RESETTING},
    RunState.SUCCEEDED: set(),
}


class InvalidTransitionError(KubestrapError):
    pass


# ---------------------------------------------------------------------
# Run-level exclusion: one active run per cluster, across processes
# ---------------------------------------------------------------------
_ACTIVE_RUNS: set = set()
_ACTIVE_LOCK = threading.Lock()


def lock_path(lock_dir: Path, cluster_name: str) -> Path:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", cluster_name)
    return Path(lock_dir).expanduser() / f"{safe}.lock"


@contextmanager
def _cluster_lock(lock_dir: Path, cluster_name: str) -> Iterator[None]:
    """
    Advisory flock on a per-cluster file. The kernel drops it when the
    holder exits, so a crashed run never leaves a stale lock behind.
    """
    path = lock_path(lock_dir, cluster_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = open(path, "a+")
    try:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise RunInProgressError(cluster_name) from None
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        fh.close()


@contextmanager
def _exclusive_run(cluster_name: str, lock_dir: Path) -> Iterator[None]:
    # checked first so a second run in this process fails without touching the file
    with _ACTIVE_LOCK:
        if cluster_name in _ACTIVE_RUNS:
            raise RunInProgressError(cluster_name)
        _ACTIVE_RUNS.add(cluster_name)
    try:
        with _cluster_lock(lock_dir, cluster_name):
            log.debug(f"[orchestrator] holding run lock for cluster '{cluster_name}'")
            yield
    finally:
        with _ACTIVE_LOCK:
            _ACTIVE_RUNS.discard(cluster_name)


@dataclass
class FailureReason:
    stage: str
    error: str                 # exception class name
    message: str
    nodes: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class RunReport:
    cluster: str
    mode: str
    state: RunState = RunState.IDLE
    history: List[RunState] = field(default_factory=lambda: [RunState.IDLE])
    preflight: List[PreflightResult] = field(default_factory=list)
    records: List[ExecutionRecord] = field(default_factory=list)
    inventory_digest: Optional[str] = None
    readiness: Dict[str, bool] = field(default_factory=dict)
    failure: Optional[FailureReason] = None
    exception: Optional[BaseException] = None
    partial: bool = False

    @property
    def succeeded(self) -> bool:
        if self.mode == "reset":
            return self.state is RunState.IDLE
        return self.state is RunState.SUCCEEDED

    def summary(self) -> str:
        s = f"cluster={self.cluster} mode={self.mode} state={self.state.value}"
        if self.failure:
            s += f" stage={self.failure.stage} error={self.failure.error}: {self.failure.message}"
        if self.partial:
            s += " (cluster may be partially deployed)"
        return s


class ClusterOrchestrator:
    """
    Drives a single cluster through

        Idle -> Preflighting -> Rendering -> Deploying -> Verifying -> {Succeeded, Failed}

    and Resetting (from Idle or Failed, back to Idle on success).

    Every call to run()/reset()/verify() works on a fresh RunReport; nothing
    from a previous run is reused. Errors never escape a run (apart from
    RunInProgressError, raised before the run starts): they end in Failed with
    a structured FailureReason.
    """

    def __init__(
        self,
        cluster: ClusterSpec,
        *,
        checker: Optional[PreflightChecker] = None,
        executor: Optional[PlaybookExecutor] = None,
        procedure: Optional[Procedure] = None,
        status_source: Optional[NodeStatusSource] = None,
        preflight_settings: Optional[PreflightSettings] = None,
        executor_settings: Optional[ExecutorSettings] = None,
        verify_settings: Optional[VerifySettings] = None,
        inventory_path: Optional[Path] = None,
        observers: Optional[List] = None,
        environment: str = "dev",
        run_id: Optional[str] = None,
    ):
        self.cluster = cluster
        self.preflight_settings = preflight_settings or PreflightSettings()
        self.executor_settings = executor_settings or ExecutorSettings()
        self.verify_settings = verify_settings or VerifySettings()
        self.checker = checker or PreflightChecker(settings=self.preflight_settings)
        self.executor = executor or PlaybookExecutor(self.executor_settings)
        self.procedure = procedure or Procedure.from_settings(self.executor_settings)
        self._status_source = status_source
        self.inventory_path = inventory_path
        self.bus = EventBus(observers or [])
        self.environment = environment
        self.run_id = run_id

        self._report: Optional[RunReport] = None
        self._run_ctx: Dict = {}

    @classmethod
    def from_config(cls, cfg: KubestrapConfig, **kwargs) -> "ClusterOrchestrator":
        return cls(
            cfg.cluster,
            preflight_settings=cfg.preflight,
            executor_settings=cfg.executor,
            verify_settings=cfg.verify,
            environment=cfg.environment,
            **kwargs,
        )

    @property
    def state(self) -> RunState:
        return self._report.state if self._report else RunState.IDLE

    @property
    def status_source(self) -> NodeStatusSource:
        if self._status_source is None:
            self._status_source = KubernetesNodeStatus(
                kubeconfig=self.verify_settings.kubeconfig,
                context=self.verify_settings.context,
            )
        return self._status_source

    # ------------------------- public operations -------------------------

    def run(self, cancel: Optional[CancellationToken] = None) -> RunReport:
        """Full deployment: preflight, render, deploy, verify."""
        cancel = cancel or CancellationToken()
        with _exclusive_run(self.cluster.name, self.executor_settings.lock_dir):
            report = self._begin("deploy")
            try:
                self._preflight(cancel)
                doc = self._render(cancel)
                self._deploy(doc, cancel)
                self._verify(cancel)
                self._transition(RunState.SUCCEEDED)
            except Exception as e:
                self._fail(e)
            finally:
                self._finish()
            return report

    def reset(self, cancel: Optional[CancellationToken] = None) -> RunReport:
        """Tear the cluster down with the reset playbook. Allowed from Idle or Failed."""
        cancel = cancel or CancellationToken()
        with _exclusive_run(self.cluster.name, self.executor_settings.lock_dir):
            previous = self._report
            if previous is not None and previous.state is RunState.FAILED:
                report = self._continue(previous, "reset")
            else:
                report = self._begin("reset")
            try:
                self._transition(RunState.RESETTING)
                self._check_cancel(cancel)
                doc = self._render_inventory()
                record = self._execute(doc, ExecutionMode.RESET, cancel)
                if record.status is ExecutionStatus.ABORTED:
                    raise RunCancelledError("resetting", partial=True)
                self._transition(RunState.IDLE)
            except Exception as e:
                self._fail(e)
            finally:
                self._finish()
            return report

    def verify(self, cancel: Optional[CancellationToken] = None) -> RunReport:
        """Readiness check only, against an already deployed cluster."""
        cancel = cancel or CancellationToken()
        with _exclusive_run(self.cluster.name, self.executor_settings.lock_dir):
            report = self._begin("verify")
            try:
                self._verify(cancel)
                self._transition(RunState.SUCCEEDED)
            except Exception as e:
                self._fail(e)
            finally:
                self._finish()
            return report

    # ------------------------- stages -------------------------

    def _preflight(self, cancel: CancellationToken) -> None:
        self._check_cancel(cancel)
        self._transition(RunState.PREFLIGHTING)

        results = run_preflight(
            list(self.cluster.nodes),
            self.checker,
            max_workers=self.preflight_settings.max_workers,
        )
        self._report.preflight = results

        failures = [r for r in results if not r.ok]
        for r in failures:
            self.bus.emit(NodePreflightFailed(hostname=r.hostname, reasons=list(r.reasons), **self._ctx()))
        self.bus.emit(PreflightCompleted(ready=len(results) - len(failures), failed=len(failures), **self._ctx()))

        if failures:
            raise ReadinessError(failures)

    def _render(self, cancel: CancellationToken) -> InventoryDocument:
        self._check_cancel(cancel)
        self._transition(RunState.RENDERING)
        return self._render_inventory()

    def _render_inventory(self) -> InventoryDocument:
        doc = render(self.cluster, self.executor_settings.inventory_format)
        self._report.inventory_digest = doc.digest
        changed = True
        target = ""
        if self.inventory_path is not None:
            changed = write_inventory(doc, self.inventory_path)
            target = str(self.inventory_path)
        self.bus.emit(InventoryRendered(path=target, digest=doc.digest, changed=changed, **self._ctx()))
        return doc

    def _deploy(self, doc: InventoryDocument, cancel: CancellationToken) -> None:
        self._check_cancel(cancel)
        self._transition(RunState.DEPLOYING)
        record = self._execute(doc, ExecutionMode.DEPLOY, cancel)
        if record.status is ExecutionStatus.ABORTED:
            raise RunCancelledError("deploying", partial=True)

    def _execute(self, doc: InventoryDocument, mode: ExecutionMode, cancel: CancellationToken) -> ExecutionRecord:
        playbook = self.procedure.playbook_for(mode)
        self.bus.emit(PlaybookStarted(playbook=playbook, mode=mode.value, attempt=1, **self._ctx()))

        def _line(line: str) -> None:
            self.bus.emit(PlaybookOutput(line=line, **self._ctx()))

        try:
            record = self.executor.execute(self.procedure, doc, mode, observer=_line, cancel=cancel)
        except ExecutionError as e:
            if e.record is not None:
                self._record(e.record)
            e.stage = self._report.state.value.lower()
            raise
        self._record(record)
        return record

    def _record(self, record: ExecutionRecord) -> None:
        self._report.records.append(record)
        if record.stale_cache_reason:
            self.bus.emit(StaleCacheCleared(
                path=str(self.executor_settings.fact_cache_dir),
                reason=record.stale_cache_reason,
                **self._ctx(),
            ))
        self.bus.emit(PlaybookFinished(
            playbook=record.playbook,
            mode=record.mode.value,
            status=record.status.value,
            rc=record.exit_code,
            duration_ms=record.duration_ms,
            **self._ctx(),
        ))

    def _verify(self, cancel: CancellationToken) -> None:
        self._check_cancel(cancel)
        self._transition(RunState.VERIFYING)
        v = self.verify_settings

        def _progress(attempt: int, ready: int, total: int) -> None:
            self.bus.emit(VerifyAttempt(attempt=attempt, ready=ready, total=total, **self._ctx()))

        self._report.readiness = wait_for_nodes_ready(
            self.status_source,
            [n.hostname for n in self.cluster.nodes],
            attempts=v.attempts,
            backoff_seconds=v.backoff_seconds,
            max_backoff_seconds=v.max_backoff_seconds,
            cancel=cancel,
            on_attempt=_progress,
        )

    # ------------------------- state machine -------------------------

    def _begin(self, mode: str) -> RunReport:
        self._report = RunReport(cluster=self.cluster.name, mode=mode)
        return self._continue(self._report, mode)

    def _continue(self, report: RunReport, mode: str) -> RunReport:
        report.mode = mode
        report.failure = None
        report.exception = None
        report.partial = False
        self._report = report
        self._run_ctx = new_ctx(env=self.environment, context=self.cluster.name, run_id=self.run_id)
        log.info(f"[orchestrator] {mode} run {self._run_ctx['run_id']} for cluster {self.cluster.name}")
        self.bus.emit(RunStarted(mode=mode, nodes=len(self.cluster.nodes), **self._ctx()))
        return report

    def _transition(self, target: RunState) -> None:
        current = self._report.state
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(f"illegal transition {current.value} -> {target.value}")
        self._report.state = target
        self._report.history.append(target)
        log.info(f"[orchestrator] {current.value} -> {target.value}")
        self.bus.emit(StateChanged(previous=current.value, state=target.value, **self._ctx()))

    def _check_cancel(self, cancel: CancellationToken) -> None:
        if cancel.cancelled:
            raise RunCancelledError(self._report.state.value.lower())

    def _fail(self, exc: Exception) -> None:
        report = self._report
        stage = getattr(exc, "stage", None) or report.state.value.lower()
        nodes = exc.reasons_by_node() if isinstance(exc, ReadinessError) else {}
        report.failure = FailureReason(
            stage=stage,
            error=exc.__class__.__name__,
            message=str(exc),
            nodes=nodes,
        )
        report.exception = exc
        report.partial = bool(getattr(exc, "partial", False))

        if isinstance(exc, KubestrapError):
            log.error(f"[orchestrator] {stage} failed: {exc}")
        else:
            log.exception(f"[orchestrator] unexpected error during {stage}")

        if report.state is not RunState.FAILED:
            self._transition(RunState.FAILED)

    def _finish(self) -> None:
        report = self._report
        err = f"{report.failure.error}: {report.failure.message}" if report.failure else None
        self.bus.emit(RunSummary(state=report.state.value, error=err, partial=report.partial, **self._ctx()))
        log.info(f"[orchestrator] {report.summary()}")

    def _ctx(self) -> Dict:
        return dict(self._run_ctx)
