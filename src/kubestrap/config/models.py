# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/models.py
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"
    ETCD = "etcd"
    LOAD_BALANCER = "load-balancer"


# Canonical order used whenever roles are listed (inventory groups, logs).
ROLE_ORDER: Tuple[Role, ...] = (
    Role.CONTROL_PLANE,
    Role.WORKER,
    Role.ETCD,
    Role.LOAD_BALANCER,
)


class NodeSpec(BaseModel):
    """One cluster member. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    management_address: IPvAnyAddress
    reachable_address: Optional[IPvAnyAddress] = None   # defaults to management_address
    roles: Tuple[Role, ...]
    ssh_user: Optional[str] = None
    ssh_port: Optional[int] = None

    @field_validator("roles", mode="before")
    @classmethod
    def _normalise_roles(cls, value: Any) -> Tuple[Role, ...]:
        if isinstance(value, (str, Role)):
            value = [value]
        roles = {Role(r) for r in (value or [])}
        if not roles:
            raise ValueError("a node must hold at least one role")
        return tuple(r for r in ROLE_ORDER if r in roles)

    @property
    def access_address(self) -> str:
        return str(self.reachable_address or self.management_address)

    def has_role(self, role: Role) -> bool:
        return role in self.roles


class ClusterOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "kubestrap"
    kube_version: Optional[str] = None
    pod_cidr: str = "10.233.64.0/18"
    service_cidr: str = "10.233.0.0/18"
    network_plugin: str = "calico"
    extra_vars: Dict[str, Any] = Field(default_factory=dict)


class ClusterSpec(BaseModel):
    """Ordered node list plus cluster-wide options; immutable for a run."""

    model_config = ConfigDict(frozen=True)

    nodes: Tuple[NodeSpec, ...] = ()
    options: ClusterOptions = ClusterOptions()

    @property
    def name(self) -> str:
        return self.options.name

    def nodes_with_role(self, role: Role) -> List[NodeSpec]:
        return [n for n in self.nodes if n.has_role(role)]


# ---------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------
class PreflightSettings(BaseModel):
    max_workers: int = Field(default=8, ge=1)
    ssh_user: str = "ubuntu"
    ssh_port: int = 22
    ssh_key_path: Optional[Path] = None
    ssh_password: Optional[str] = None
    connect_timeout: float = 10.0
    command_timeout: float = 30.0
    check_swap: bool = True
    check_forwarding: bool = True
    check_connectivity: bool = True
    check_ports: bool = True


DEFAULT_STALE_CACHE_MARKERS: List[str] = [
    r"(?i)cached facts? .*(incompatible|stale|mismatch)",
    r"(?i)unable to (load|read) (the )?fact cache",
    r"(?i)jsonfile cache .* (corrupt|invalid)",
    r"has no attribute 'ansible_default_ipv4'",
]


class ExecutorSettings(BaseModel):
    kubespray_dir: Path = Path("kubespray")
    deploy_playbook: str = "cluster.yml"
    reset_playbook: str = "reset.yml"
    become: bool = True
    become_user: str = "root"
    become_password: Optional[str] = None
    fact_cache_dir: Path = Field(default_factory=lambda: Path.home() / ".kubestrap" / "fact-cache")
    artifacts_dir: Path = Field(default_factory=lambda: Path.home() / ".kubestrap" / "runs")
    lock_dir: Path = Field(default_factory=lambda: Path.home() / ".kubestrap" / "locks")
    stale_cache_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_STALE_CACHE_MARKERS))
    inventory_format: Literal["yaml", "ini"] = "yaml"
    envvars: Dict[str, str] = Field(default_factory=dict)
    extra_vars: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[int] = None


class VerifySettings(BaseModel):
    kubeconfig: Optional[Path] = None
    context: Optional[str] = None
    attempts: int = Field(default=30, ge=1)
    backoff_seconds: float = 10.0
    max_backoff_seconds: float = 60.0


class KubestrapConfig(BaseModel):
    environment: Literal["dev", "staging", "prod"] = "dev"
    cluster: ClusterSpec
    preflight: PreflightSettings = PreflightSettings()
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    verify: VerifySettings = VerifySettings()
