"""
CLI tests: exit codes and end-to-end plan/apply/destroy against the local provider.
"""
import json
import os

import pytest
from click.testing import CliRunner

from conftest import FIXTURES
from stackplan.cli import cli

STACK = os.path.join(FIXTURES, "stack.tf")


def _manifest(path, tags):
    path.write_text(
        "resources:\n"
        "  - type: aws_iam_role\n"
        "    name: task\n"
        "    attributes:\n"
        "      name: task\n"
        f"      tags: {{team: {tags}}}\n"
    )
    return str(path)


class TestCli:
    @pytest.fixture(autouse=True)
    def _isolated(self, tmp_path):
        self.runner = CliRunner(env={"COLUMNS": "200"})
        self.tmp_path = tmp_path
        with self.runner.isolated_filesystem(temp_dir=tmp_path):
            yield

    def _invoke(self, *args, input=None):
        return self.runner.invoke(cli, list(args), input=input, catch_exceptions=False)

    def _state_files(self):
        state_dir = os.path.join(".stackplan", "state")
        if not os.path.isdir(state_dir):
            return []
        return sorted(f for f in os.listdir(state_dir) if f.endswith(".json"))

    def test_help(self):
        result = self._invoke("--help")
        assert result.exit_code == 0
        for command in ("plan", "apply", "destroy", "graph", "state"):
            assert command in result.output

    def test_plan_text(self):
        result = self._invoke("plan", STACK)
        assert result.exit_code == 0
        assert "5 to create" in result.output
        assert self._state_files() == []

    def test_plan_json_report(self):
        result = self._invoke("plan", STACK, "--format", "json", "--output", "plan.json")
        assert result.exit_code == 0
        with open("plan.json") as fh:
            report = json.load(fh)
        assert report["summary"]["create"] == 5
        assert [a["resource_id"] for a in report["actions"]][:3] == [
            "aws_vpc.main",
            "aws_ecr_repository.app",
            "aws_iam_role.task",
        ]

    def test_plan_markdown_and_html(self):
        assert self._invoke("plan", STACK, "--format", "markdown", "-o", "plan.md").exit_code == 0
        assert self._invoke("plan", STACK, "--format", "html", "-o", "plan.html").exit_code == 0
        with open("plan.md", encoding="utf-8") as fh:
            assert "```mermaid" in fh.read()
        with open("plan.html", encoding="utf-8") as fh:
            assert "<table" in fh.read()

    def test_plan_variable_override(self):
        result = self._invoke("plan", STACK, "--var", "service_name=api", "--format", "json", "-o", "p.json")
        assert result.exit_code == 0
        with open("p.json") as fh:
            actions = {a["resource_id"]: a for a in json.load(fh)["actions"]}
        assert actions["aws_iam_role.task"]["attributes"]["name"] == "api-task"

    def test_cycle_exits_2(self):
        result = self._invoke("plan", os.path.join(FIXTURES, "cyclic.tf"))
        assert result.exit_code == 2

    def test_undeclared_reference_exits_2(self):
        result = self._invoke("apply", os.path.join(FIXTURES, "undeclared.tf"), "--yes")
        assert result.exit_code == 2
        assert self._state_files() == []

    def test_missing_config_exits_2(self):
        result = self._invoke("plan", STACK, "--config", "nope.yaml")
        assert result.exit_code == 2

    def test_apply_then_noop(self):
        result = self._invoke("apply", STACK, "--yes")
        assert result.exit_code == 0
        assert len(self._state_files()) == 5

        result = self._invoke("apply", STACK, "--yes")
        assert result.exit_code == 0
        assert "No changes" in result.output

    def test_apply_declined(self):
        result = self._invoke("apply", STACK, input="n\n")
        assert result.exit_code == 0
        assert self._state_files() == []

    def test_apply_report(self):
        result = self._invoke("apply", STACK, "--yes", "--output", "run.json")
        assert result.exit_code == 0
        with open("run.json") as fh:
            report = json.load(fh)
        assert report["result"]["ok"] is True
        assert report["result"]["succeeded"] == 5

    def test_apply_failure_exits_1(self):
        manifest = self.tmp_path / "stack.yaml"
        assert self._invoke("apply", _manifest(manifest, "a"), "--yes").exit_code == 0

        # the provider forgets the role; the next update must refuse to proceed
        os.remove(os.path.join(".stackplan", "local-provider.json"))
        result = self._invoke("apply", _manifest(manifest, "b"), "--yes")
        assert result.exit_code == 1
        assert len(self._state_files()) == 1

    def test_unsafe_resource_name_rejected_before_any_change(self):
        manifest = self.tmp_path / "stack.yaml"
        manifest.write_text("resources:\n  - type: aws_iam_role\n    name: team/web\n")
        for _ in range(2):
            result = self._invoke("apply", str(manifest), "--yes")
            assert result.exit_code == 2
        assert self._state_files() == []
        assert not os.path.exists(os.path.join(".stackplan", "local-provider.json"))

    def test_locked_state_exits_1(self):
        os.makedirs(os.path.join(".stackplan", "state"))
        open(os.path.join(".stackplan", "state", ".lock"), "w").close()
        result = self._invoke("apply", STACK, "--yes")
        assert result.exit_code == 1
        assert self._state_files() == []

    def test_destroy(self):
        assert self._invoke("apply", STACK, "--yes").exit_code == 0
        result = self._invoke("destroy", "--yes")
        assert result.exit_code == 0
        assert self._state_files() == []
        with open(os.path.join(".stackplan", "local-provider.json")) as fh:
            assert json.load(fh) == {}

    def test_state_listing(self):
        assert "State is empty" in self._invoke("state").output
        self._invoke("apply", STACK, "--yes")
        result = self._invoke("state", "--no-color")
        assert result.exit_code == 0
        assert "aws_vpc.main" in result.output

    def test_graph_layers(self):
        result = self._invoke("graph", STACK)
        assert result.exit_code == 0
        assert "layer 0:" in result.output
        assert "layer 2:" in result.output

    def test_graph_mermaid(self):
        result = self._invoke("graph", STACK, "--format", "mermaid")
        assert result.exit_code == 0
        assert "flowchart LR" in result.output

    def test_state_dir_option(self):
        result = self._invoke("apply", STACK, "--yes", "--state-dir", "elsewhere")
        assert result.exit_code == 0
        assert len(os.listdir("elsewhere")) == 5
        assert self._state_files() == []


def test_module_execution():
    """'python -m stackplan' exposes the same CLI."""
    import subprocess
    import sys

    result = subprocess.run(
        [sys.executable, "-m", "stackplan", "--help"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0
    assert "stackplan" in result.stdout
