# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single run
    env: str          # dev/staging/prod
    context: Optional[str]  # cluster name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    mode: str          # "deploy" | "reset" | "verify"
    nodes: int

@dataclass(frozen=True)
class StateChanged(BaseEvent):
    previous: str
    state: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    state: str
    error: Optional[str] = None
    partial: bool = False


# ---------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodePreflightFailed(BaseEvent):
    hostname: str
    reasons: List[str]

@dataclass(frozen=True)
class PreflightCompleted(BaseEvent):
    ready: int
    failed: int


# ---------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class InventoryRendered(BaseEvent):
    path: str
    digest: str
    changed: bool


# ---------------------------------------------------------------------
# Playbook execution
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlaybookStarted(BaseEvent):
    playbook: str
    mode: str
    attempt: int

@dataclass(frozen=True)
class PlaybookOutput(BaseEvent):
    line: str

@dataclass(frozen=True)
class StaleCacheCleared(BaseEvent):
    path: str
    reason: str

@dataclass(frozen=True)
class PlaybookFinished(BaseEvent):
    playbook: str
    mode: str
    status: str       # "SUCCEEDED" | "FAILED" | "ABORTED"
    rc: Optional[int]
    duration_ms: int


# ---------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class VerifyAttempt(BaseEvent):
    attempt: int
    ready: int
    total: int
