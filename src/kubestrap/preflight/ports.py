# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/preflight/ports.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from kubestrap.config.models import Role


@dataclass(frozen=True, order=True)
class PortRange:
    start: int
    end: int
    protocol: str = "tcp"

    @classmethod
    def parse(cls, text: str) -> "PortRange":
        """
        Accepts '6443', '6443/tcp', '2379-2380/tcp' and ufw's '30000:32767/tcp'.
        A missing protocol means 'any'.
        """
        text = text.strip()
        proto = "any"
        if "/" in text:
            text, proto = text.split("/", 1)
        m = re.fullmatch(r"(\d+)(?:[-:](\d+))?", text)
        if not m:
            raise ValueError(f"invalid port spec: {text!r}")
        lo = int(m.group(1))
        hi = int(m.group(2) or lo)
        return cls(lo, hi, proto.lower())

    def covers(self, other: "PortRange") -> bool:
        proto_ok = self.protocol in ("any", other.protocol)
        return proto_ok and self.start <= other.start and other.end <= self.end

    def __str__(self) -> str:
        ports = str(self.start) if self.start == self.end else f"{self.start}-{self.end}"
        return f"{ports}/{self.protocol}"


def _ranges(*specs: str) -> Tuple[PortRange, ...]:
    return tuple(PortRange.parse(f"{s}/tcp") for s in specs)


# Inbound ports each role needs open; used for validation only.
ROLE_PORTS: Dict[Role, Tuple[PortRange, ...]] = {
    Role.CONTROL_PLANE: _ranges("6443", "2379-2380", "10250", "10259", "10257"),
    Role.WORKER: _ranges("10250", "10256", "30000-32767"),
    Role.ETCD: _ranges("2379-2380"),
    Role.LOAD_BALANCER: (),
}


def required_ports(roles: Iterable[Role]) -> List[PortRange]:
    wanted = {p for role in roles for p in ROLE_PORTS.get(Role(role), ())}
    return sorted(wanted)
