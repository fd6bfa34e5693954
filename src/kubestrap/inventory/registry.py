# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/inventory/registry.py
from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from kubestrap.config.models import ClusterSpec, NodeSpec, Role
from kubestrap.errors import DuplicateHostnameError


class NodeRegistry:
    """
    Validated node definitions keyed by hostname, kept in insertion order.
    """

    def __init__(self, nodes: Optional[List[NodeSpec]] = None):
        self._nodes: Dict[str, NodeSpec] = {}
        for node in nodes or []:
            self.add(node)

    @classmethod
    def from_cluster(cls, cluster: ClusterSpec) -> "NodeRegistry":
        return cls(list(cluster.nodes))

    def add(self, node: NodeSpec) -> None:
        if node.hostname in self._nodes:
            raise DuplicateHostnameError(node.hostname)
        self._nodes[node.hostname] = node

    def remove(self, hostname: str) -> NodeSpec:
        """Drop a node; raises KeyError if it was never registered."""
        return self._nodes.pop(hostname)

    def get(self, hostname: str) -> Optional[NodeSpec]:
        return self._nodes.get(hostname)

    def all(self) -> List[NodeSpec]:
        return list(self._nodes.values())

    def by_role(self, role: Role | str) -> List[NodeSpec]:
        role = Role(role)
        return [n for n in self._nodes.values() if n.has_role(role)]

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeSpec]:
        return iter(self.all())

    def __contains__(self, hostname: object) -> bool:
        return hostname in self._nodes
