"""Tests for the command line interface."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from stack_controller.cli import cli
from stack_controller.config import CONTROLLER_VERSION
from stack_controller.reconciler import ReconcileResult

GIT_MANIFEST = """\
apiVersion: pulumi.com/v1
kind: Stack
metadata:
  name: infra
spec:
  stack: acme/infra/dev
  projectRepo: https://github.com/acme/infra.git
  branch: main
"""

SOURCE_REF_MANIFEST = """\
apiVersion: pulumi.com/v1
kind: Stack
metadata:
  name: infra
  namespace: platform
spec:
  stack: acme/infra/dev
  sourceRef:
    apiVersion: source.toolkit.fluxcd.io/v1
    kind: GitRepository
    name: infra-repo
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert CONTROLLER_VERSION in result.output


class TestValidate:
    """Tests for the validate command."""

    def test_git_manifest(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "stack.yaml"
        path.write_text(GIT_MANIFEST)

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 0
        assert "default/infra is valid" in result.output
        assert "git https://github.com/acme/infra.git (main)" in result.output

    def test_source_ref_manifest(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "stack.yaml"
        path.write_text(SOURCE_REF_MANIFEST)

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 0
        assert "GitRepository infra-repo (source.toolkit.fluxcd.io/v1)" in result.output

    def test_invalid_manifest(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "stack.yaml"
        path.write_text(GIT_MANIFEST.replace("  branch: main\n", ""))

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Validation failed" in result.output


class TestReconcile:
    """Tests for the reconcile command."""

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("stack_controller.cli.setup_logging", lambda level: None)

    def test_success(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_reconcile(config, namespace, name, post_events=True):
            return ReconcileResult(namespace=namespace, name=name, requeue_after=60.0)

        monkeypatch.setattr("stack_controller.cli.reconcile_once", fake_reconcile)

        result = runner.invoke(cli, ["reconcile", "default", "infra"])

        assert result.exit_code == 0
        assert "Reconciled default/infra" in result.output
        assert "Next pass due in 60s" in result.output

    def test_failure(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_reconcile(config, namespace, name, post_events=True):
            return ReconcileResult(namespace=namespace, name=name, error=RuntimeError("clone failed"))

        monkeypatch.setattr("stack_controller.cli.reconcile_once", fake_reconcile)

        result = runner.invoke(cli, ["reconcile", "default", "infra"])

        assert result.exit_code == 1

    def test_bad_config(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_CONCURRENT_RECONCILES", "lots")

        result = runner.invoke(cli, ["reconcile", "default", "infra"])

        assert result.exit_code == 1
        assert "MAX_CONCURRENT_RECONCILES must be an integer" in result.output

    def test_no_post_events(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: list[bool] = []

        async def fake_reconcile(config, namespace, name, post_events=True):
            seen.append(post_events)
            return ReconcileResult(namespace=namespace, name=name)

        monkeypatch.setattr("stack_controller.cli.reconcile_once", fake_reconcile)

        result = runner.invoke(cli, ["reconcile", "--no-post-events", "default", "infra"])

        assert result.exit_code == 0
        assert seen == [False]
