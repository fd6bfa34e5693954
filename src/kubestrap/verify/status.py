# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/verify/status.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Sequence

from kubernetes import client, config

from kubestrap.errors import RunCancelledError, VerificationTimeoutError
from kubestrap.utils.cancel import CancellationToken
from kubestrap.utils.retry import backoff_delays

log = logging.getLogger("kubestrap")


class NodeStatusSource(Protocol):
    def node_readiness(self) -> Dict[str, bool]:
        """Return {node name: Ready condition is True}."""
        ...


class KubernetesNodeStatus:
    """
    Reads node readiness from the cluster API with the official client.
    """

    def __init__(self, kubeconfig: Optional[Path] = None, context: Optional[str] = None):
        self.kubeconfig = kubeconfig
        self.context = context
        self._api: Optional[client.CoreV1Api] = None

    def _core(self) -> client.CoreV1Api:
        if self._api is None:
            api_client = config.new_client_from_config(
                config_file=str(self.kubeconfig) if self.kubeconfig else None,
                context=self.context,
            )
            self._api = client.CoreV1Api(api_client)
        return self._api

    def node_readiness(self) -> Dict[str, bool]:
        resp = self._core().list_node()
        out: Dict[str, bool] = {}
        for node in resp.items:
            conditions = (node.status.conditions if node.status else None) or []
            out[node.metadata.name] = any(c.type == "Ready" and c.status == "True" for c in conditions)
        return out


def wait_for_nodes_ready(
    source: NodeStatusSource,
    expected: Sequence[str],
    *,
    attempts: int = 30,
    backoff_seconds: float = 10.0,
    max_backoff_seconds: float = 60.0,
    cancel: Optional[CancellationToken] = None,
    on_attempt: Optional[Callable[[int, int, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, bool]:
    """
    Poll until every expected node reports Ready, with exponential backoff.

    Raises VerificationTimeoutError when `attempts` polls pass without all
    nodes Ready; errors from the API count as a failed poll.
    """
    delays = backoff_delays(attempts, backoff_seconds, max_backoff_seconds)
    readiness: Dict[str, bool] = {h: False for h in expected}

    for attempt in range(1, attempts + 1):
        try:
            reported = source.node_readiness()
            readiness = {h: bool(reported.get(h, False)) for h in expected}
        except Exception as e:
            log.warning(f"[verify] attempt {attempt}/{attempts}: node status unavailable: {e}")

        ready = sum(1 for ok in readiness.values() if ok)
        log.info(f"[verify] attempt {attempt}/{attempts}: {ready}/{len(expected)} nodes Ready")
        if on_attempt is not None:
            on_attempt(attempt, ready, len(expected))

        if expected and ready == len(expected):
            return readiness

        if attempt < attempts:
            delay = delays[attempt - 1]
            if cancel is not None:
                if cancel.wait(delay):
                    raise RunCancelledError("verifying")
            else:
                sleep(delay)

    raise VerificationTimeoutError(attempts, readiness)
