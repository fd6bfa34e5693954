# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/errors.py
from __future__ import annotations

from typing import Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from kubestrap.execution.models import ExecutionRecord
    from kubestrap.preflight.checker import PreflightResult


class KubestrapError(RuntimeError):
    """Base class for every error raised by kubestrap."""

    stage: Optional[str] = None


# ---------------------------------------------------------------------
# Validation (bad ClusterSpec) - always fatal, never retried
# ---------------------------------------------------------------------
class ValidationError(KubestrapError):
    stage = "validation"


class DuplicateHostnameError(ValidationError):
    def __init__(self, hostname: str):
        super().__init__(f"Node '{hostname}' is already registered")
        self.hostname = hostname


class EmptyClusterError(ValidationError):
    stage = "rendering"

    def __init__(self, cluster_name: str = "cluster"):
        super().__init__(f"Cluster '{cluster_name}' has no nodes")
        self.cluster_name = cluster_name


class MissingControlPlaneError(ValidationError):
    stage = "rendering"

    def __init__(self, cluster_name: str = "cluster"):
        super().__init__(f"Cluster '{cluster_name}' has no control-plane node")
        self.cluster_name = cluster_name


class QuorumError(ValidationError):
    stage = "rendering"

    def __init__(self, members: List[str]):
        super().__init__(
            f"etcd is colocated with the control plane but the control plane has an "
            f"even number of nodes ({len(members)}): {', '.join(members)}"
        )
        self.members = list(members)


# ---------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------
class ReadinessError(KubestrapError):
    stage = "preflight"

    def __init__(self, failures: List["PreflightResult"]):
        self.failures = list(failures)
        detail = "; ".join(f"{r.hostname}: {', '.join(r.reasons)}" for r in self.failures)
        super().__init__(f"{len(self.failures)} node(s) failed preflight: {detail}")

    def reasons_by_node(self) -> Dict[str, List[str]]:
        return {r.hostname: list(r.reasons) for r in self.failures}


# ---------------------------------------------------------------------
# Playbook execution
# ---------------------------------------------------------------------
class ExecutionError(KubestrapError):
    stage = "deploying"

    def __init__(
        self,
        exit_code: int,
        message: str = "",
        record: Optional["ExecutionRecord"] = None,
        stage: Optional[str] = None,
    ):
        self.exit_code = exit_code
        self.record = record
        if stage:
            self.stage = stage
        super().__init__(message or f"playbook exited with rc={exit_code}")


class StaleCacheError(ExecutionError):
    """Cached facts from a prior run are incompatible with the current inventory."""


# ---------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------
class VerificationTimeoutError(KubestrapError):
    stage = "verifying"

    def __init__(self, attempts: int, readiness: Dict[str, bool]):
        self.attempts = attempts
        self.readiness = dict(readiness)
        not_ready = sorted(h for h, ok in self.readiness.items() if not ok)
        super().__init__(
            f"Nodes not Ready after {attempts} attempts: {', '.join(not_ready) or 'no nodes reported'}"
        )


# ---------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------
class RunInProgressError(KubestrapError):
    def __init__(self, cluster_name: str):
        super().__init__(f"A run for cluster '{cluster_name}' is already in progress")
        self.cluster_name = cluster_name


class RunCancelledError(KubestrapError):
    def __init__(self, stage: str, partial: bool = False):
        self.stage = stage
        self.partial = partial
        msg = f"Run cancelled during {stage}"
        if partial:
            msg += "; the cluster may be partially deployed"
        super().__init__(msg)
