import json
import logging
from pathlib import Path

from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import PlaybookOutput, RunSummary, StateChanged, new_ctx
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver


def _ctx():
    return new_ctx(env="dev", context="lab", run_id="run-1")


def test_new_ctx_generates_run_id():
    ctx = new_ctx(env="prod", context=None)
    assert ctx["env"] == "prod"
    assert ctx["run_id"]
    assert ctx["ts"].endswith("Z")


def test_bus_keeps_going_when_an_observer_fails(caplog):
    seen = []

    class Broken:
        def notify(self, event):
            raise RuntimeError("disk full")

    class Recorder:
        def notify(self, event):
            seen.append(event)

    bus = EventBus([Broken(), Recorder()])
    with caplog.at_level(logging.ERROR, logger="kubestrap"):
        bus.emit(StateChanged(previous="Idle", state="Preflighting", **_ctx()))

    assert len(seen) == 1
    assert "Broken failed on StateChanged" in caplog.text


def test_json_file_observer_skips_output_lines(tmp_path: Path):
    ob = JsonFileObserver.for_run(tmp_path / "logs", "run-1")
    ob.notify(PlaybookOutput(line="ok: [knode01]", **_ctx()))
    ob.notify(RunSummary(state="Failed", error="ExecutionError: rc=2", **_ctx()))

    lines = (tmp_path / "logs" / "run-1.jsonl").read_text().splitlines()
    assert len(lines) == 1
    rec = json.loads(lines[0])
    assert rec["type"] == "RunSummary"
    assert rec["state"] == "Failed"
    assert rec["run_id"] == "run-1"


def test_console_observer(capsys):
    ConsoleObserver(show_output=False).notify(PlaybookOutput(line="TASK [x]", **_ctx()))
    ConsoleObserver().notify(StateChanged(previous="Idle", state="Preflighting", **_ctx()))
    out = capsys.readouterr().out
    assert "TASK [x]" not in out
    assert "StateChanged cluster=lab previous=Idle state=Preflighting" in out


def test_logger_observer_logs_output_at_debug(caplog):
    logger = logging.getLogger("observer-test")
    with caplog.at_level(logging.DEBUG, logger="observer-test"):
        ob = LoggerObserver(logger)
        ob.notify(PlaybookOutput(line="ok: [knode01]", **_ctx()))
        ob.notify(RunSummary(state="Succeeded", **_ctx()))

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels[0] == (logging.DEBUG, "[playbook] ok: [knode01]")
    assert levels[1][0] == logging.INFO
    assert levels[1][1].startswith("[EVENT] RunSummary:")
