import logging
import textwrap
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

import kubestrap.cli.app as cli
from kubestrap.errors import ExecutionError, ReadinessError, RunInProgressError
from kubestrap.orchestrator.orchestrator import FailureReason, RunReport, RunState
from kubestrap.preflight.checker import PreflightResult

runner = CliRunner()

CONFIG = textwrap.dedent("""
    environment: dev
    cluster:
      options:
        name: lab
      nodes:
        - hostname: knode01
          management_address: 10.255.0.51
          roles: [control-plane, etcd, worker]
        - hostname: knode02
          management_address: 10.255.0.52
          roles: [worker]
""")


@pytest.fixture
def config_file(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text(CONFIG)
    return f


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch, tmp_path: Path):
    def fake_init_logging(**kw):
        return logging.getLogger("kubestrap-cli-test"), "run-cli", tmp_path / "run.log"

    monkeypatch.setattr(cli, "init_logging", fake_init_logging)
    monkeypatch.setattr(cli, "DEFAULT_LOG_DIR", tmp_path / "logs")


class FakeOrchestrator:
    report = None
    raises = None
    built = {}

    @classmethod
    def from_config(cls, cfg, **kw):
        cls.built = {"cfg": cfg, **kw}
        return cls()

    def _result(self, cancel):
        if FakeOrchestrator.raises:
            raise FakeOrchestrator.raises
        return FakeOrchestrator.report

    run = reset = verify = _result


@pytest.fixture
def fake_orch(monkeypatch):
    FakeOrchestrator.report = None
    FakeOrchestrator.raises = None
    FakeOrchestrator.built = {}
    monkeypatch.setattr(cli, "ClusterOrchestrator", FakeOrchestrator)
    return FakeOrchestrator


def test_render_to_stdout(config_file):
    result = runner.invoke(cli.app, ["render", str(config_file)])
    assert result.exit_code == 0
    data = yaml.safe_load(result.output)
    assert list(data["all"]["children"]["kube_control_plane"]["hosts"]) == ["knode01"]


def test_render_to_file_ini(config_file, tmp_path: Path):
    out = tmp_path / "hosts.ini"
    result = runner.invoke(cli.app, ["render", str(config_file), "--format", "ini", "-o", str(out)])
    assert result.exit_code == 0
    assert "written" in result.output
    assert "[kube_node]" in out.read_text()


def test_render_invalid_cluster_exit_code(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text("cluster:\n  nodes: []\n")
    result = runner.invoke(cli.app, ["render", str(f)])
    assert result.exit_code == cli.EXIT_CONFIG
    assert "has no nodes" in result.output


def test_bad_config_exit_code(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text("environment: qa\ncluster: {}\n")
    result = runner.invoke(cli.app, ["deploy", str(f)])
    assert result.exit_code == cli.EXIT_CONFIG


def test_deploy_success(config_file, fake_orch):
    fake_orch.report = RunReport(cluster="lab", mode="deploy", state=RunState.SUCCEEDED)
    result = runner.invoke(cli.app, ["deploy", str(config_file), "--quiet"])
    assert result.exit_code == 0
    assert "deploy finished: Succeeded" in result.output
    assert fake_orch.built["run_id"] == "run-cli"


def test_deploy_preflight_failure_prints_reasons(config_file, fake_orch):
    failed = PreflightResult.failed("knode02", ["swap enabled (/swap.img)"])
    fake_orch.report = RunReport(
        cluster="lab",
        mode="deploy",
        state=RunState.FAILED,
        failure=FailureReason(
            stage="preflight",
            error="ReadinessError",
            message="1 node(s) failed preflight",
            nodes={"knode02": ["swap enabled (/swap.img)"]},
        ),
        exception=ReadinessError([failed]),
    )
    result = runner.invoke(cli.app, ["deploy", str(config_file)])
    assert result.exit_code == cli.EXIT_PREFLIGHT
    assert "knode02:" in result.output
    assert "- swap enabled (/swap.img)" in result.output


def test_deploy_partial_cancel_hint(config_file, fake_orch):
    from kubestrap.errors import RunCancelledError

    fake_orch.report = RunReport(
        cluster="lab",
        mode="deploy",
        state=RunState.FAILED,
        failure=FailureReason(stage="deploying", error="RunCancelledError", message="cancelled"),
        exception=RunCancelledError("deploying", partial=True),
        partial=True,
    )
    result = runner.invoke(cli.app, ["deploy", str(config_file)])
    assert result.exit_code == cli.EXIT_CANCELLED
    assert "partially deployed" in result.output


def test_deploy_run_in_progress(config_file, fake_orch):
    fake_orch.raises = RunInProgressError("lab")
    result = runner.invoke(cli.app, ["deploy", str(config_file)])
    assert result.exit_code == cli.EXIT_IN_PROGRESS


def test_reset_requires_confirmation(config_file, fake_orch):
    fake_orch.report = RunReport(cluster="lab", mode="reset", state=RunState.IDLE)
    result = runner.invoke(cli.app, ["reset", str(config_file)], input="n\n")
    assert result.exit_code == 1
    assert fake_orch.built == {}


def test_reset_with_clear_cache(config_file, fake_orch, tmp_path: Path, monkeypatch):
    cleared = []
    monkeypatch.setattr(cli.PlaybookExecutor, "clear_cache", lambda self: cleared.append(True))
    fake_orch.report = RunReport(cluster="lab", mode="reset", state=RunState.IDLE)

    result = runner.invoke(cli.app, ["reset", str(config_file), "--yes", "--clear-cache"])

    assert result.exit_code == 0
    assert cleared == [True]
    assert isinstance(fake_orch.built["executor"], cli.PlaybookExecutor)


def test_verify_attempts_override(config_file, fake_orch):
    fake_orch.report = RunReport(cluster="lab", mode="verify", state=RunState.SUCCEEDED)
    result = runner.invoke(cli.app, ["verify", str(config_file), "--attempts", "3"])
    assert result.exit_code == 0
    assert fake_orch.built["cfg"].verify.attempts == 3


def test_preflight_command(config_file, monkeypatch):
    class Checker:
        def __init__(self, settings=None):
            pass

        def check(self, node):
            if node.hostname == "knode02":
                return PreflightResult.failed(node.hostname, ["IPv4 forwarding disabled"])
            return PreflightResult.ready(node.hostname)

    monkeypatch.setattr(cli, "PreflightChecker", Checker)
    result = runner.invoke(cli.app, ["preflight", str(config_file)])

    assert result.exit_code == cli.EXIT_PREFLIGHT
    assert "IPv4 forwarding disabled" in result.output
    assert "1/2 nodes ready" in result.output


def test_exit_code_mapping():
    assert cli.exit_code_for(None) == 0
    assert cli.exit_code_for(ExecutionError(2)) == cli.EXIT_EXECUTION
    assert cli.exit_code_for(KeyError("x")) == 1
