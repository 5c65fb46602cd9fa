import json
import tempfile
import os
import pytest
from argparse import ArgumentTypeError
from unittest.mock import patch
from deployment_orchestrator.cli import (
    load_fleet, load_request, parse_error_rate, save_fleet, scale_params, simulate,
)
from deployment_orchestrator.failure import FailureInjector
from deployment_orchestrator.models import DeploymentRequest, DeploymentState, ServiceInstance, StrategyKind


def _write_json(data):
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump(data, f)
        return f.name


def _fleet(size=3):
    return [ServiceInstance(f"web-v1-{i}", "web", "v1") for i in range(size)]


class TestCLIFileOperations:
    """Test CLI file loading and saving operations with real files."""

    def test_load_fleet_valid_json(self):
        """Test loading a fleet from a valid JSON file."""
        temp_path = _write_json([
            {"instance_id": "id1", "service_name": "web", "version": "v1", "address": "http://10.0.0.1"},
            {"instance_id": "id2", "service_name": "web", "version": "v1"},
        ])
        try:
            instances = load_fleet(temp_path)
            assert [i.instance_id for i in instances] == ["id1", "id2"]
            assert instances[0].metadata == {"address": "http://10.0.0.1"}
            assert instances[1].metadata == {}
        finally:
            os.unlink(temp_path)

    def test_save_and_load_fleet_roundtrip(self):
        """Test saving and loading a fleet keeps ids, versions and addresses."""
        instances = _fleet(2)
        instances[0].metadata["address"] = "http://10.0.0.9:8080"
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            temp_path = f.name

        try:
            save_fleet(temp_path, instances)
            loaded = load_fleet(temp_path)
            assert [(i.instance_id, i.service_name, i.version) for i in loaded] == \
                [("web-v1-0", "web", "v1"), ("web-v1-1", "web", "v1")]
            assert loaded[0].metadata["address"] == "http://10.0.0.9:8080"
        finally:
            os.unlink(temp_path)

    def test_load_fleet_file_not_found(self):
        """Test loading a fleet from a non-existent file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_fleet("non_existent_file.json")

    def test_load_fleet_missing_field(self):
        """Test a fleet entry without a version is rejected."""
        temp_path = _write_json([{"instance_id": "id1", "service_name": "web"}])
        try:
            with pytest.raises(KeyError):
                load_fleet(temp_path)
        finally:
            os.unlink(temp_path)

    def test_load_request(self):
        """Test loading a deployment request."""
        temp_path = _write_json({"service_name": "web", "target_version": "v2",
                                 "strategy_kind": "canary", "strategy_params": {"steps": [50, 100]}})
        try:
            request = load_request(temp_path)
            assert request.strategy_kind == StrategyKind.CANARY
            assert request.strategy_params == {"steps": [50, 100]}
        finally:
            os.unlink(temp_path)

    def test_load_request_unknown_strategy(self):
        """Test an unknown strategy kind is rejected."""
        temp_path = _write_json({"service_name": "web", "target_version": "v2", "strategy_kind": "yolo"})
        try:
            with pytest.raises(ValueError):
                load_request(temp_path)
        finally:
            os.unlink(temp_path)


class TestCLIHelpers:
    """Test argument helpers."""

    def test_parse_error_rate(self):
        assert parse_error_rate("v2=0.3") == ("v2", 0.3)
        for bad in ("v2", "v2=abc", "=0.1", "v2=1.5"):
            with pytest.raises(ArgumentTypeError):
                parse_error_rate(bad)

    def test_scale_params_only_touches_durations(self):
        params = {"evaluation_window_s": 60, "steps": [10, 100], "max_error_rate": 0.05}
        assert scale_params(params, 0.5) == {"evaluation_window_s": 30.0, "steps": [10, 100],
                                             "max_error_rate": 0.05}


class TestCLIArgumentParsing:
    """Test CLI argument parsing without executing commands."""

    def _run(self, argv):
        with patch('sys.argv', ['deployment-orchestrator'] + argv):
            with pytest.raises(SystemExit) as exc_info:
                from deployment_orchestrator.cli import main
                main()
        return exc_info.value.code

    def test_help_displays_correctly(self):
        """Test that help commands exit cleanly."""
        assert self._run(['--help']) == 0
        assert self._run(['simulate', '--help']) == 0
        assert self._run(['audit', '--help']) == 0

    def test_missing_command_fails(self):
        """Test CLI fails when no command is provided."""
        assert self._run([]) != 0

    def test_missing_required_arguments_fails(self):
        """Test CLI fails when required arguments are missing."""
        assert self._run(['simulate']) != 0
        assert self._run(['simulate', '--fleet', 'fleet.json']) != 0
        assert self._run(['audit']) != 0

    def test_invalid_argument_values_fail(self):
        """Test CLI fails with invalid argument values."""
        assert self._run(['--log-level', 'INVALID', 'simulate', '--fleet', 'f.json', '--request', 'r.json']) != 0
        assert self._run(['simulate', '--fleet', 'f.json', '--request', 'r.json', '--error-rate', 'v2']) != 0
        assert self._run(['simulate', '--fleet', 'f.json', '--request', 'r.json', '--speed', 'fast']) != 0

    def test_unreadable_fleet_exits_with_error(self, capsys):
        """Test a missing fleet file is reported and exits 1."""
        assert self._run(['simulate', '--fleet', 'missing.json', '--request', 'missing.json']) == 1
        assert "Error" in capsys.readouterr().out

    def test_audit_command_filters_by_deployment(self, capsys):
        """Test the audit command prints the events of one deployment."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.jsonl', delete=False) as f:
            f.write(json.dumps({"deployment_id": "a", "seq": 1}) + "\n")
            f.write(json.dumps({"deployment_id": "b", "seq": 1}) + "\n")
            temp_path = f.name
        try:
            with patch('sys.argv', ['deployment-orchestrator', 'audit', '--file', temp_path, '--deployment', 'b']):
                from deployment_orchestrator.cli import main
                main()
            lines = capsys.readouterr().out.strip().splitlines()
            assert [json.loads(line)["deployment_id"] for line in lines] == ["b"]
        finally:
            os.unlink(temp_path)


class TestCLISimulation:
    """End-to-end simulated rollouts with real probe loops."""

    @pytest.mark.asyncio
    async def test_healthy_canary_completes(self):
        request = DeploymentRequest("web", "v2", "canary", {"steps": [50, 100]})
        deployment, registry = await simulate(_fleet(), request, FailureInjector(seed=1), speed=0.001)
        assert deployment.state == DeploymentState.COMPLETED
        assert {i.version for i in registry.all()} == {"v2"}

    @pytest.mark.asyncio
    async def test_unhealthy_version_rolls_back(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.jsonl', delete=False) as f:
            audit_path = f.name
        try:
            request = DeploymentRequest("web", "v2", "blue_green", {"timeout_s": 100})
            deployment, registry = await simulate(_fleet(), request, FailureInjector(unhealthy_versions={"v2"}),
                                                  speed=0.001, audit_path=audit_path)
            assert deployment.state == DeploymentState.ROLLED_BACK
            assert {i.version for i in registry.all()} == {"v1"}
            with open(audit_path) as f:
                events = [json.loads(line) for line in f]
            assert events[-1]["to_state"] == "rolled_back"
            assert {e["deployment_id"] for e in events} == {deployment.deployment_id}
        finally:
            os.unlink(audit_path)
