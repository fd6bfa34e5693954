# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/cli/app.py
from __future__ import annotations

import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
import yaml
from pydantic import ValidationError as ConfigValidationError

from kubestrap.config.loader import load_config
from kubestrap.config.models import KubestrapConfig
from kubestrap.errors import (
    ExecutionError,
    KubestrapError,
    ReadinessError,
    RunCancelledError,
    RunInProgressError,
    ValidationError,
    VerificationTimeoutError,
)
from kubestrap.execution.executor import PlaybookExecutor
from kubestrap.inventory.renderer import render, write_inventory
from kubestrap.logging.log import DEFAULT_LOG_DIR, init_logging
from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver
from kubestrap.orchestrator.orchestrator import ClusterOrchestrator, RunReport
from kubestrap.preflight.checker import PreflightChecker, run_preflight
from kubestrap.utils.cancel import CancellationToken


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Kubestrap cluster bootstrap CLI")

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_PREFLIGHT = 3
EXIT_EXECUTION = 4
EXIT_VERIFY = 5
EXIT_CANCELLED = 6
EXIT_IN_PROGRESS = 7


def exit_code_for(exc: Optional[BaseException]) -> int:
    if exc is None:
        return EXIT_OK
    if isinstance(exc, ValidationError):
        return EXIT_CONFIG
    if isinstance(exc, ReadinessError):
        return EXIT_PREFLIGHT
    if isinstance(exc, ExecutionError):
        return EXIT_EXECUTION
    if isinstance(exc, VerificationTimeoutError):
        return EXIT_VERIFY
    if isinstance(exc, RunCancelledError):
        return EXIT_CANCELLED
    if isinstance(exc, RunInProgressError):
        return EXIT_IN_PROGRESS
    return 1


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _load(config: Path) -> KubestrapConfig:
    try:
        return load_config(config)
    except (OSError, yaml.YAMLError, ConfigValidationError) as e:
        typer.secho(f"Invalid configuration {config}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_CONFIG)


def _start(title: str, debug: bool, quiet: bool):
    logger, run_id, log_path = init_logging(verbose=debug)

    typer.echo("")
    typer.secho(title, bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    observers = [
        ConsoleObserver(show_output=not quiet),
        LoggerObserver(logger),
        JsonFileObserver.for_run(DEFAULT_LOG_DIR, run_id),
    ]
    return logger, run_id, observers


@contextmanager
def _interrupts(cancel: CancellationToken) -> Iterator[None]:
    """First Ctrl-C cancels the run gracefully; the handler is restored afterwards."""

    def _handler(signum, frame):
        typer.secho("\nInterrupt received, cancelling run...", fg=typer.colors.YELLOW, err=True)
        cancel.cancel("interrupted by operator")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _report(report: RunReport) -> None:
    if report.succeeded:
        typer.secho(f"\n{report.mode} finished: {report.state.value}", fg=typer.colors.GREEN, bold=True)
        raise typer.Exit(EXIT_OK)

    failure = report.failure
    typer.secho(f"\n{report.mode} finished: {report.state.value}", fg=typer.colors.RED, bold=True)
    if failure is not None:
        typer.echo(f"  stage : {failure.stage}")
        typer.echo(f"  error : {failure.error}")
        typer.echo(f"  reason: {failure.message}")
        for host, reasons in failure.nodes.items():
            typer.echo(f"    {host}:")
            for r in reasons:
                typer.echo(f"      - {r}")
    if report.partial:
        typer.secho("  cluster may be partially deployed; run `kubestrap reset` before retrying",
                    fg=typer.colors.YELLOW)
    raise typer.Exit(exit_code_for(report.exception))


def _orchestrator(cfg: KubestrapConfig, run_id: str, observers: List,
                  inventory_out: Optional[Path]) -> ClusterOrchestrator:
    return ClusterOrchestrator.from_config(
        cfg,
        observers=observers,
        run_id=run_id,
        inventory_path=inventory_out,
    )


def _guarded(fn, cancel: CancellationToken) -> RunReport:
    try:
        with _interrupts(cancel):
            return fn(cancel)
    except RunInProgressError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_IN_PROGRESS)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def deploy(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    inventory_out: Optional[Path] = typer.Option(
        None, "--inventory-out", help="Also write the rendered inventory to this path"
    ),
    quiet: bool = typer.Option(False, "--quiet", help="Do not echo playbook output"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Preflight, render, deploy and verify the cluster."""
    cfg = _load(config)
    _, run_id, observers = _start("Kubestrap Deployment Started", debug, quiet)
    orch = _orchestrator(cfg, run_id, observers, inventory_out)
    _report(_guarded(orch.run, CancellationToken()))


@app.command()
def reset(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    clear_cache: bool = typer.Option(
        False, "--clear-cache", help="Wipe the fact cache before running the reset playbook"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    quiet: bool = typer.Option(False, "--quiet", help="Do not echo playbook output"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Tear the cluster down with the reset playbook."""
    cfg = _load(config)
    if not yes:
        typer.confirm(f"Reset cluster '{cfg.cluster.name}' ({len(cfg.cluster.nodes)} nodes)?", abort=True)

    _, run_id, observers = _start("Kubestrap Reset Started", debug, quiet)
    executor = PlaybookExecutor(cfg.executor)
    if clear_cache:
        executor.clear_cache()
    orch = ClusterOrchestrator.from_config(cfg, executor=executor, observers=observers, run_id=run_id)
    _report(_guarded(orch.reset, CancellationToken()))


@app.command()
def verify(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    attempts: Optional[int] = typer.Option(None, "--attempts", min=1),
    debug: bool = typer.Option(False, "--debug"),
):
    """Poll the cluster until every node reports Ready."""
    cfg = _load(config)
    if attempts is not None:
        cfg = cfg.model_copy(update={"verify": cfg.verify.model_copy(update={"attempts": attempts})})
    _, run_id, observers = _start("Kubestrap Verification Started", debug, True)
    orch = _orchestrator(cfg, run_id, observers, None)
    _report(_guarded(orch.verify, CancellationToken()))


@app.command()
def preflight(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Run the preflight checks only; nothing is changed on the nodes."""
    cfg = _load(config)
    init_logging(verbose=debug)

    checker = PreflightChecker(settings=cfg.preflight)
    results = run_preflight(list(cfg.cluster.nodes), checker, max_workers=cfg.preflight.max_workers)

    failed = 0
    for r in results:
        if r.ok:
            typer.secho(f"  {r.hostname:<24} {r.status.value}", fg=typer.colors.GREEN)
            continue
        failed += 1
        typer.secho(f"  {r.hostname:<24} {r.status.value}", fg=typer.colors.RED)
        for reason in r.reasons:
            typer.echo(f"      - {reason}")

    typer.echo(f"\n{len(results) - failed}/{len(results)} nodes ready")
    raise typer.Exit(EXIT_PREFLIGHT if failed else EXIT_OK)


@app.command("render")
def render_inventory(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    fmt: Optional[str] = typer.Option(None, "--format", help="yaml or ini (defaults to executor.inventory_format)"),
):
    """Render the inventory document for the cluster."""
    cfg = _load(config)
    fmt = fmt or cfg.executor.inventory_format
    try:
        doc = render(cfg.cluster, fmt)
    except (KubestrapError, ValueError) as e:
        typer.secho(f"Cannot render inventory: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_CONFIG)

    if output is None:
        typer.echo(doc.content, nl=False)
        return

    changed = write_inventory(doc, output)
    typer.echo(f"{output} {'written' if changed else 'unchanged'} (sha256 {doc.digest[:12]})")


if __name__ == "__main__":
    app()
