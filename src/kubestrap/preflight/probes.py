# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/preflight/probes.py
from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

import paramiko

from kubestrap.config.models import NodeSpec, PreflightSettings
from kubestrap.preflight.ports import PortRange
from kubestrap.utils.retry import retry

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class FirewallState:
    kind: str                      # "ufw" | "firewalld" | "none"
    active: bool
    allowed: Tuple[PortRange, ...] = ()
    error: Optional[str] = None    # set when the state could not be read

    def allows(self, port: PortRange) -> bool:
        """
        True when the allow rules together cover every port in the range.
        Rules may be split, e.g. 2379/tcp and 2380/tcp cover 2379-2380/tcp.
        """
        if not self.active:
            return True
        rules = sorted(
            r for r in self.allowed if r.protocol in ("any", port.protocol)
        )
        need = port.start
        for rule in rules:
            if rule.start > need:
                break
            need = max(need, rule.end + 1)
            if need > port.end:
                return True
        return False


@dataclass(frozen=True)
class NodeFacts:
    swap_devices: Tuple[str, ...] = ()
    ip_forward: bool = False
    firewall: FirewallState = field(default_factory=lambda: FirewallState(kind="none", active=False))


class NodeProbe(Protocol):
    """
    Read-only inspection of a node. Implementations must not change the node.
    """

    def reachable(self, node: NodeSpec) -> bool: ...

    def facts(self, node: NodeSpec) -> NodeFacts: ...


# ---------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------
def parse_proc_swaps(text: str) -> Tuple[str, ...]:
    lines = [ln for ln in text.splitlines() if ln.strip()]
    # first line is the "Filename Type Size Used Priority" header
    return tuple(ln.split()[0] for ln in lines[1:])


def parse_ufw_status(text: str) -> FirewallState:
    active = False
    allowed: List[PortRange] = []
    for raw in text.splitlines():
        line = raw.strip()
        if line.lower().startswith("status:"):
            active = line.split(":", 1)[1].strip().lower() == "active"
            continue
        parts = line.split()
        if len(parts) < 2 or parts[1].upper() != "ALLOW":
            continue
        target = parts[0]
        proto = ""
        if "/" in target:
            target, proto = target.split("/", 1)
            proto = f"/{proto}"
        for spec in target.split(","):
            try:
                allowed.append(PortRange.parse(spec + proto))
            except ValueError:
                # named application profiles (e.g. "OpenSSH") carry no port
                continue
    return FirewallState(kind="ufw", active=active, allowed=tuple(allowed))


def parse_firewalld_ports(text: str) -> FirewallState:
    allowed = tuple(PortRange.parse(p) for p in text.split() if p.strip())
    return FirewallState(kind="firewalld", active=True, allowed=allowed)


# ---------------------------------------------------------------------
# SSH implementation
# ---------------------------------------------------------------------
class SshNodeProbe:
    """
    Gathers node facts over SSH (paramiko). Runs read-only commands only.
    """

    def __init__(self, settings: Optional[PreflightSettings] = None):
        self.settings = settings or PreflightSettings()

    def reachable(self, node: NodeSpec) -> bool:
        port = node.ssh_port or self.settings.ssh_port
        try:
            with socket.create_connection((node.access_address, port), timeout=self.settings.connect_timeout):
                return True
        except OSError as e:
            log.debug(f"[preflight] {node.hostname} {node.access_address}:{port} unreachable: {e}")
            return False

    def facts(self, node: NodeSpec) -> NodeFacts:
        client = self._connect(node)
        try:
            _, swaps, _ = self._run(client, "cat /proc/swaps")
            _, fwd, _ = self._run(client, "cat /proc/sys/net/ipv4/ip_forward")
            firewall = self._firewall(client)
        finally:
            client.close()

        return NodeFacts(
            swap_devices=parse_proc_swaps(swaps),
            ip_forward=fwd.strip() == "1",
            firewall=firewall,
        )

    # ------------------ connection & utils ------------------

    @retry(retries=2, delay=2, retry_on=(paramiko.SSHException, OSError))
    def _connect(self, node: NodeSpec) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = None
        key_path = self.settings.ssh_key_path
        if key_path:
            for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
                try:
                    pkey = key_cls.from_private_key_file(str(key_path))
                    break
                except paramiko.SSHException:
                    continue

        client.connect(
            hostname=str(node.management_address),
            port=node.ssh_port or self.settings.ssh_port,
            username=node.ssh_user or self.settings.ssh_user,
            password=self.settings.ssh_password if not pkey else None,
            pkey=pkey,
            timeout=self.settings.connect_timeout,
            allow_agent=True,
            look_for_keys=pkey is None,
        )
        return client

    def _run(self, client: paramiko.SSHClient, cmd: str) -> Tuple[int, str, str]:
        _, stdout, stderr = client.exec_command(cmd, timeout=self.settings.command_timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        return rc, out, err

    def _firewall(self, client: paramiko.SSHClient) -> FirewallState:
        rc, out, err = self._run(client, "sudo -n ufw status")
        if rc == 0:
            return parse_ufw_status(out)

        rc_fd, state, _ = self._run(client, "systemctl is-active firewalld")
        if rc_fd == 0 and state.strip() == "active":
            rc, out, err = self._run(client, "sudo -n firewall-cmd --list-ports")
            if rc == 0:
                return parse_firewalld_ports(out)
            return FirewallState(kind="firewalld", active=True, error=err.strip() or f"rc={rc}")

        if "command not found" in err or rc == 127:
            return FirewallState(kind="none", active=False)
        # ufw exists but its state could not be read (e.g. sudo needs a password)
        return FirewallState(kind="ufw", active=True, error=err.strip() or f"rc={rc}")
