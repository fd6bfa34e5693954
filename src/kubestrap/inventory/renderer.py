# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/inventory/renderer.py
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from kubestrap.config.models import ClusterSpec, NodeSpec, Role, ROLE_ORDER
from kubestrap.errors import EmptyClusterError, MissingControlPlaneError, QuorumError
from kubestrap.inventory.registry import NodeRegistry

log = logging.getLogger("kubestrap")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

# Inventory group names expected by the Kubespray playbooks.
ROLE_GROUPS: Dict[Role, str] = {
    Role.CONTROL_PLANE: "kube_control_plane",
    Role.WORKER: "kube_node",
    Role.ETCD: "etcd",
    Role.LOAD_BALANCER: "load_balancer",
}
UMBRELLA_GROUP = "k8s_cluster"
UMBRELLA_CHILDREN = (ROLE_GROUPS[Role.CONTROL_PLANE], ROLE_GROUPS[Role.WORKER])

InventoryFormat = Literal["yaml", "ini"]


@dataclass(frozen=True)
class InventoryDocument:
    content: str
    format: InventoryFormat = "yaml"

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()

    @property
    def filename(self) -> str:
        return "hosts.yaml" if self.format == "yaml" else "hosts.ini"


def validate_cluster(cluster: ClusterSpec) -> NodeRegistry:
    """
    Check the ClusterSpec invariants and return the populated registry.

    Raises DuplicateHostnameError, EmptyClusterError, MissingControlPlaneError
    or QuorumError.
    """
    registry = NodeRegistry.from_cluster(cluster)
    if len(registry) == 0:
        raise EmptyClusterError(cluster.name)

    if not registry.by_role(Role.CONTROL_PLANE):
        raise MissingControlPlaneError(cluster.name)

    # stacked etcd: every control-plane node is a quorum member
    control_plane = registry.by_role(Role.CONTROL_PLANE)
    colocated = any(n.has_role(Role.ETCD) for n in control_plane)
    if colocated and len(control_plane) % 2 == 0:
        raise QuorumError([n.hostname for n in control_plane])

    return registry


def _host_vars(node: NodeSpec) -> Dict[str, Any]:
    hv: Dict[str, Any] = {
        "ansible_host": str(node.management_address),
        "ip": node.access_address,
        "access_ip": node.access_address,
    }
    if node.ssh_user:
        hv["ansible_user"] = node.ssh_user
    if node.ssh_port:
        hv["ansible_port"] = node.ssh_port
    return hv


def _cluster_vars(cluster: ClusterSpec) -> Dict[str, Any]:
    opts = cluster.options
    cv: Dict[str, Any] = {
        "cluster_name": opts.name,
        "kube_pods_subnet": opts.pod_cidr,
        "kube_service_addresses": opts.service_cidr,
        "kube_network_plugin": opts.network_plugin,
    }
    if opts.kube_version:
        cv["kube_version"] = opts.kube_version
    for key in sorted(opts.extra_vars):
        cv[key] = opts.extra_vars[key]
    return cv


def _groups(registry: NodeRegistry) -> Dict[str, List[str]]:
    return {
        ROLE_GROUPS[role]: [n.hostname for n in registry.by_role(role)]
        for role in ROLE_ORDER
    }


def _render_yaml(cluster: ClusterSpec, registry: NodeRegistry) -> str:
    children: Dict[str, Any] = {
        group: {"hosts": {h: {} for h in hosts}}
        for group, hosts in _groups(registry).items()
    }
    children[UMBRELLA_GROUP] = {"children": {g: {} for g in UMBRELLA_CHILDREN}}

    doc = {
        "all": {
            "hosts": {n.hostname: _host_vars(n) for n in registry.all()},
            "children": children,
            "vars": _cluster_vars(cluster),
        }
    }
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def _render_ini(cluster: ClusterSpec, registry: NodeRegistry) -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    tpl = env.get_template("hosts.ini.j2")
    return tpl.render(
        hosts=[{"hostname": n.hostname, "vars": _host_vars(n)} for n in registry.all()],
        groups=_groups(registry),
        umbrella=UMBRELLA_GROUP,
        umbrella_children=UMBRELLA_CHILDREN,
        cluster_vars=_cluster_vars(cluster),
    )


def render(cluster: ClusterSpec, fmt: InventoryFormat = "yaml") -> InventoryDocument:
    """
    Render the inventory consumed by the automation playbooks.

    Pure: the same ClusterSpec always yields a byte-identical document, so
    re-rendering an unchanged cluster produces no diff.
    """
    registry = validate_cluster(cluster)
    if fmt == "yaml":
        content = _render_yaml(cluster, registry)
    elif fmt == "ini":
        content = _render_ini(cluster, registry)
    else:
        raise ValueError(f"Unsupported inventory format: {fmt}")
    return InventoryDocument(content=content, format=fmt)


def write_inventory(doc: InventoryDocument, path: Path) -> bool:
    """
    Write the document to `path`, replacing it atomically.
    Returns False when the file already holds identical content.
    """
    path = Path(path)
    if path.exists() and path.read_text(encoding="utf-8") == doc.content:
        log.debug(f"[inventory] {path} unchanged ({doc.digest[:12]})")
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(doc.content, encoding="utf-8")
    os.replace(tmp, path)
    log.info(f"[inventory] wrote {path} ({doc.digest[:12]})")
    return True
