# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/execution/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from kubestrap.config.models import ExecutorSettings


class ExecutionMode(str, Enum):
    DEPLOY = "deploy"
    RESET = "reset"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class Procedure:
    """
    An external automation project (e.g. a Kubespray checkout) and the
    playbooks used for each mode.
    """
    name: str
    project_dir: Path
    deploy_playbook: str = "cluster.yml"
    reset_playbook: str = "reset.yml"

    @classmethod
    def from_settings(cls, settings: ExecutorSettings, name: str = "kubespray") -> "Procedure":
        return cls(
            name=name,
            project_dir=Path(settings.kubespray_dir).expanduser().resolve(),
            deploy_playbook=settings.deploy_playbook,
            reset_playbook=settings.reset_playbook,
        )

    def playbook_for(self, mode: ExecutionMode) -> str:
        return self.deploy_playbook if ExecutionMode(mode) is ExecutionMode.DEPLOY else self.reset_playbook


@dataclass
class ExecutionRecord:
    procedure: str
    playbook: str
    mode: ExecutionMode
    started_at: datetime
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    runner_status: Optional[str] = None      # ansible-runner's own status string
    output: List[str] = field(default_factory=list)
    attempts: int = 1
    artifact_dir: Optional[Path] = None
    stale_cache_reason: Optional[str] = None  # set when the cache was cleared for this run

    @property
    def duration_ms(self) -> int:
        if self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.output[-lines:])
