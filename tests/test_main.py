"""Tests for the worker entry point."""

import json

import pytest

from rpa_engine.core.config import EngineConfig
from rpa_engine.core.errors import ConfigError
from rpa_engine.engine.models import ExecutionStatus
from rpa_engine.main import build_parser, load_config, main, run_workflow_file, select_workflow


WORKFLOW_YAML = """
workflows:
  - id: double
    name: Double it
    nodes:
      - {id: start, type: start}
      - {id: calc, type: script, code: "result = x * 2"}
      - {id: check, type: decision}
      - {id: big, type: end}
      - {id: small, type: end}
    edges:
      - {source: start, target: calc}
      - {source: calc, target: check}
      - {source: check, target: big, condition: "calc.result > 10"}
      - {source: check, target: small}
  - id: noop
    nodes:
      - {id: start, type: start}
      - {id: end, type: end}
    edges:
      - {source: start, target: end}
"""


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "workflows.yaml"
    path.write_text(WORKFLOW_YAML)
    return path


class TestConfigLoading:

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))

        config = load_config()

        assert config.orchestration.backend == "local"

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "absent.yaml"))

    def test_explicit_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("health_port: 9001\nengine:\n  on_revisit: complete\n")

        config = load_config(str(path))

        assert config.health_port == 9001
        assert config.engine.on_revisit == "complete"


class TestRunWorkflowFile:

    @pytest.mark.asyncio
    async def test_run_first_workflow(self, workflow_file):
        outcome = await run_workflow_file(str(workflow_file), {"x": 8}, EngineConfig())

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.workflow_id == "double"
        assert "big" in outcome.results

    @pytest.mark.asyncio
    async def test_run_by_id(self, workflow_file):
        outcome = await run_workflow_file(str(workflow_file), {}, EngineConfig(), workflow_id="noop")

        assert list(outcome.results) == ["input", "start", "end"]

    def test_select_unknown_workflow(self):
        with pytest.raises(ConfigError):
            select_workflow([], None)


class TestCommandLine:

    def test_parser(self):
        args = build_parser().parse_args(["run", "flow.yaml", "--input", '{"a": 1}'])

        assert args.command == "run"
        assert args.workflow_file == "flow.yaml"
        assert json.loads(args.input) == {"a": 1}

    def test_run_command(self, workflow_file, capsys, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))

        code = main(["run", str(workflow_file), "--input", '{"x": 1}'])

        assert code == 0
        assert '"small"' in capsys.readouterr().out

    def test_bad_input(self, workflow_file, capsys, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))

        assert main(["run", str(workflow_file), "--input", "[1, 2]"]) == 2
        assert main(["run", str(workflow_file), "--input", "{broken"]) == 2
