# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
import json
from pathlib import Path
from .interface import Observer
from .events import BaseEvent, PlaybookOutput


class JsonFileObserver(Observer):
    """Appends one JSON object per event; playbook output lines are skipped (they live in the run log)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_run(cls, base_dir: Path, run_id: str) -> "JsonFileObserver":
        return cls(Path(base_dir) / f"{run_id}.jsonl")

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, PlaybookOutput):
            return
        with self.path.open("a", encoding="utf-8") as f:
            json.dump({"type": event.__class__.__name__, **event.dict()}, f, default=str)
            f.write("\n")
