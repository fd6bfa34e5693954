# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/observers/console.py
import typer

from .events import BaseEvent, PlaybookOutput


class ConsoleObserver:
    def __init__(self, show_output: bool = True):
        self.show_output = show_output

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, PlaybookOutput):
            if self.show_output:
                typer.echo(event.line)
            return
        d = event.dict()
        k = event.__class__.__name__
        typer.echo(f"[{d['ts']}] {k} cluster={d['context']} "
                   + " ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "env", "context")))
