# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/preflight/checker.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from kubestrap.config.models import NodeSpec, PreflightSettings
from kubestrap.preflight.ports import required_ports
from kubestrap.preflight.probes import NodeProbe, SshNodeProbe

log = logging.getLogger("kubestrap")


class PreflightStatus(str, Enum):
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class PreflightResult:
    hostname: str
    status: PreflightStatus
    reasons: Tuple[str, ...] = ()

    @classmethod
    def ready(cls, hostname: str) -> "PreflightResult":
        return cls(hostname=hostname, status=PreflightStatus.READY)

    @classmethod
    def failed(cls, hostname: str, reasons: Sequence[str]) -> "PreflightResult":
        return cls(hostname=hostname, status=PreflightStatus.FAILED, reasons=tuple(reasons))

    @property
    def ok(self) -> bool:
        return self.status is PreflightStatus.READY


class PreflightChecker:
    """
    Validates a single node's readiness with read-only probes.

    Every unmet condition is collected; callers get the full list rather
    than the first failure. Nothing on the node is changed: disabling swap
    or opening ports is left to the operator.
    """

    def __init__(self, probe: Optional[NodeProbe] = None, settings: Optional[PreflightSettings] = None):
        self.settings = settings or PreflightSettings()
        self.probe = probe or SshNodeProbe(self.settings)

    def check(self, node: NodeSpec) -> PreflightResult:
        s = self.settings
        reasons: List[str] = []

        if s.check_connectivity:
            try:
                if not self.probe.reachable(node):
                    reasons.append(f"reachable address {node.access_address} did not answer")
            except Exception as e:
                reasons.append(f"connectivity probe error: {e}")

        if s.check_swap or s.check_forwarding or s.check_ports:
            try:
                facts = self.probe.facts(node)
            except Exception as e:
                reasons.append(f"unable to inspect node: {e}")
                facts = None

            if facts is not None:
                if s.check_swap and facts.swap_devices:
                    reasons.append(f"swap enabled ({', '.join(facts.swap_devices)})")
                if s.check_forwarding and not facts.ip_forward:
                    reasons.append("IPv4 forwarding disabled")
                if s.check_ports:
                    reasons.extend(self._port_reasons(node, facts.firewall))

        if reasons:
            log.warning(f"[preflight] {node.hostname}: FAILED ({'; '.join(reasons)})")
            return PreflightResult.failed(node.hostname, reasons)

        log.info(f"[preflight] {node.hostname}: Ready")
        return PreflightResult.ready(node.hostname)

    def _port_reasons(self, node: NodeSpec, firewall) -> List[str]:
        if firewall.error:
            return [f"unable to read {firewall.kind} state: {firewall.error}"]
        blocked = [str(p) for p in required_ports(node.roles) if not firewall.allows(p)]
        if blocked:
            return [f"ports blocked by {firewall.kind}: {', '.join(blocked)}"]
        return []


def run_preflight(
    nodes: Sequence[NodeSpec],
    checker: PreflightChecker,
    *,
    max_workers: int = 8,
) -> List[PreflightResult]:
    """
    Probe every node concurrently (bounded by max_workers) and wait for all
    of them. Results come back in the order of `nodes`.
    """
    if not nodes:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(nodes))),
                            thread_name_prefix="preflight") as pool:
        futures = [pool.submit(checker.check, n) for n in nodes]

    results: List[PreflightResult] = []
    for node, fut in zip(nodes, futures):
        exc = fut.exception()
        if exc is not None:
            log.error(f"[preflight] {node.hostname}: checker raised {exc!r}")
            results.append(PreflightResult.failed(node.hostname, [f"preflight error: {exc}"]))
        else:
            results.append(fut.result())
    return results
