# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/execution/executor.py
from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import ansible_runner

from kubestrap.config.models import ExecutorSettings
from kubestrap.errors import ExecutionError, StaleCacheError
from kubestrap.execution.models import (
    ExecutionMode,
    ExecutionRecord,
    ExecutionStatus,
    Procedure,
)
from kubestrap.inventory.renderer import InventoryDocument
from kubestrap.utils.cancel import CancellationToken

log = logging.getLogger("kubestrap")

CACHE_STAMP = ".kubestrap-inventory"
BECOME_PROMPT = r"^BECOME password.*:\s*?$"

LineObserver = Callable[[str], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PlaybookExecutor:
    """
    Runs an automation procedure through ansible-runner against a rendered
    inventory.

    - output is streamed line by line to the observer and buffered in the record
    - cancellation is polled through ansible-runner's cancel_callback; the
      subordinate process is terminated and the record marked ABORTED
    - a stale fact cache is cleared and the run retried once, automatically
    """

    def __init__(
        self,
        settings: Optional[ExecutorSettings] = None,
        run_fn: Optional[Callable[..., Any]] = None,
    ):
        self.settings = settings or ExecutorSettings()
        self._run_fn = run_fn or ansible_runner.run
        self._markers = [re.compile(p) for p in self.settings.stale_cache_markers]

    # ------------------------- public -------------------------

    def execute(
        self,
        procedure: Procedure,
        inventory: InventoryDocument,
        mode: ExecutionMode,
        observer: Optional[LineObserver] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionRecord:
        mode = ExecutionMode(mode)
        cleared_reason: Optional[str] = None

        pre = self._stale_cache_reason(inventory)
        if pre:
            self._clear_cache(pre)
            cleared_reason = pre

        attempt = 0
        while True:
            attempt += 1
            record = self._run_once(procedure, inventory, mode, observer, cancel, attempt)
            record.stale_cache_reason = cleared_reason

            if record.status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.ABORTED):
                return record

            stale = self._stale_in_output(record)
            if stale and cleared_reason is None:
                log.warning(f"[executor] {record.playbook}: stale fact cache detected ({stale}); clearing and retrying once")
                self._clear_cache(stale)
                cleared_reason = stale
                continue

            rc = record.exit_code if record.exit_code is not None else -1
            stage = "resetting" if mode is ExecutionMode.RESET else "deploying"
            if stale:
                raise StaleCacheError(
                    rc,
                    f"{procedure.name}/{record.playbook} still reports a stale fact cache after clearing it (rc={rc})",
                    record,
                    stage,
                )
            raise ExecutionError(
                rc,
                f"{procedure.name}/{record.playbook} failed in {mode.value} mode "
                f"(rc={rc}, status={record.runner_status})",
                record,
                stage,
            )

    def clear_cache(self) -> None:
        """Operator-facing cache wipe (e.g. `kubestrap reset --clear-cache`)."""
        self._clear_cache("requested")

    # ------------------------- internals -------------------------

    def _run_once(
        self,
        procedure: Procedure,
        inventory: InventoryDocument,
        mode: ExecutionMode,
        observer: Optional[LineObserver],
        cancel: Optional[CancellationToken],
        attempt: int,
    ) -> ExecutionRecord:
        playbook = procedure.playbook_for(mode)
        started = _now()
        record = ExecutionRecord(
            procedure=procedure.name,
            playbook=playbook,
            mode=mode,
            started_at=started,
            attempts=attempt,
        )

        if cancel is not None and cancel.cancelled:
            record.status = ExecutionStatus.ABORTED
            record.finished_at = _now()
            return record

        ident = f"{started.strftime('%Y%m%d-%H%M%S')}-{mode.value}-{attempt}"
        private_dir = Path(self.settings.artifacts_dir).expanduser() / ident
        inv_path = private_dir / "inventory" / inventory.filename
        inv_path.parent.mkdir(parents=True, exist_ok=True)
        inv_path.write_text(inventory.content, encoding="utf-8")
        record.artifact_dir = private_dir / "artifacts" / ident

        self._stamp_cache(inventory)

        def _on_event(event: Dict[str, Any]) -> bool:
            for line in (event.get("stdout") or "").splitlines():
                record.output.append(line)
                if observer is not None:
                    observer(line)
            return True

        def _cancelled() -> bool:
            return bool(cancel is not None and cancel.cancelled)

        log.info(f"[executor] {procedure.name}: running {playbook} ({mode.value}, attempt {attempt})")
        log.debug(f"[executor] project_dir={procedure.project_dir} inventory={inv_path}")

        result = self._run_fn(
            private_data_dir=str(private_dir),
            project_dir=str(procedure.project_dir),
            playbook=playbook,
            inventory=str(inv_path),
            ident=ident,
            envvars=self._envvars(procedure),
            extravars=self._extravars(mode),
            cmdline=self._cmdline(),
            passwords=self._passwords(),
            event_handler=_on_event,
            cancel_callback=_cancelled,
            timeout=self.settings.timeout_seconds,
            quiet=True,
        )

        record.finished_at = _now()
        record.exit_code = getattr(result, "rc", None)
        record.runner_status = getattr(result, "status", None)

        if record.runner_status == "canceled" or _cancelled():
            record.status = ExecutionStatus.ABORTED
            log.warning(f"[executor] {playbook} aborted after {record.duration_ms} ms")
        elif record.exit_code == 0:
            record.status = ExecutionStatus.SUCCEEDED
            log.info(f"[executor] {playbook} succeeded in {record.duration_ms} ms")
        else:
            record.status = ExecutionStatus.FAILED
            log.error(f"[executor] {playbook} failed rc={record.exit_code} status={record.runner_status}")
            log.debug(f"[executor] last output:\n{record.tail()}")
        return record

    def _envvars(self, procedure: Procedure) -> Dict[str, str]:
        env = {
            "ANSIBLE_ROLES_PATH": str(procedure.project_dir / "roles"),
            "ANSIBLE_CACHE_PLUGIN": "jsonfile",
            "ANSIBLE_CACHE_PLUGIN_CONNECTION": str(self._cache_dir()),
        }
        env.update(self.settings.envvars)
        return env

    def _extravars(self, mode: ExecutionMode) -> Dict[str, Any]:
        extra = dict(self.settings.extra_vars)
        if mode is ExecutionMode.RESET:
            extra["reset_confirmation"] = "yes"
        return extra

    def _cmdline(self) -> Optional[str]:
        if not self.settings.become:
            return None
        args = ["--become", "--become-user", self.settings.become_user]
        if self.settings.become_password:
            args.append("--ask-become-pass")
        return " ".join(args)

    def _passwords(self) -> Dict[str, str]:
        if self.settings.become and self.settings.become_password:
            return {BECOME_PROMPT: self.settings.become_password}
        return {}

    # ------------------------- fact cache -------------------------

    def _cache_dir(self) -> Path:
        return Path(self.settings.fact_cache_dir).expanduser()

    def _stale_cache_reason(self, inventory: InventoryDocument) -> Optional[str]:
        cache = self._cache_dir()
        if not cache.is_dir():
            return None
        entries = [p for p in cache.iterdir() if p.name != CACHE_STAMP]
        if not entries:
            return None
        stamp = cache / CACHE_STAMP
        if not stamp.exists():
            return "fact cache has no inventory stamp"
        if stamp.read_text(encoding="utf-8").strip() != inventory.digest:
            return "fact cache was built from a different inventory"
        return None

    def _stale_in_output(self, record: ExecutionRecord) -> Optional[str]:
        for line in record.output:
            for marker in self._markers:
                if marker.search(line):
                    return line.strip()
        return None

    def _stamp_cache(self, inventory: InventoryDocument) -> None:
        cache = self._cache_dir()
        cache.mkdir(parents=True, exist_ok=True)
        (cache / CACHE_STAMP).write_text(inventory.digest + "\n", encoding="utf-8")

    def _clear_cache(self, reason: str) -> None:
        cache = self._cache_dir()
        log.warning(f"[executor] clearing fact cache {cache}: {reason}")
        if cache.exists():
            shutil.rmtree(cache)
        cache.mkdir(parents=True, exist_ok=True)
