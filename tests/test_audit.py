import json
import os
import tempfile

import pytest
from deployment_orchestrator.audit import AuditTrail, JsonLinesSink
from deployment_orchestrator.models import DeploymentState, RolloutStep, StrategyKind


class TestAuditTrail:
    """Submission, intent, checkpoint and applied events."""

    @pytest.mark.asyncio
    async def test_each_transition_logged_as_intent_and_applied(self, fleet):
        events = []
        fleet.audit.add_sink(events.append)
        deployment_id = fleet.submit(StrategyKind.ROLLING)
        await fleet.tick(deployment_id)

        assert [e["event"] for e in events] == ["submitted", "intent", "checkpoint", "applied"]
        submitted, intent, checkpoint, applied = events
        assert submitted["deployment_id"] == deployment_id
        assert submitted["strategy_kind"] == "rolling" and submitted["state"] == "pending"
        assert "history" not in submitted
        assert intent["seq"] == checkpoint["seq"] == applied["seq"] == 1
        assert intent["applied"] is False and applied["applied"] is True
        assert intent["effects"] == {}
        assert checkpoint["effects"]["provisioned"] == fleet.candidate_ids()
        assert intent["from_state"] == "pending" and intent["to_state"] == "provisioning"
        assert applied["effects"]["provisioned"] == fleet.candidate_ids()
        assert intent["service_name"] == "web"

    @pytest.mark.asyncio
    async def test_rollback_sequence_in_export(self, fleet):
        deployment_id = fleet.submit(StrategyKind.ROLLING)
        await fleet.tick(deployment_id)
        await fleet.controller.abort(deployment_id)

        exported = list(fleet.audit.export(deployment_id))
        assert exported[0]["event"] == "submitted"
        exported = exported[1:]
        assert [e["to_state"] for e in exported] == ["provisioning", "rolling_back", "rolled_back"]
        assert all(e["event"] == "transition" and e["applied"] for e in exported)
        assert exported[1]["step"]["retire"] == ["web-v2-1"]
        assert len(fleet.audit) == 3

    @pytest.mark.asyncio
    async def test_export_filters_by_deployment(self, fleet):
        first = fleet.submit(StrategyKind.ROLLING)
        await fleet.controller.abort(first)
        second = fleet.submit(StrategyKind.CANARY, version="v3")
        await fleet.tick(second)
        assert {e["deployment_id"] for e in fleet.audit.export(second)} == {second}
        exported = list(fleet.audit.export())
        assert [e["deployment_id"] for e in exported if e["event"] == "submitted"] == [first, second]
        assert len([e for e in exported if e["event"] == "transition"]) == len(fleet.audit)

    def test_history_records_intent_before_apply(self, fleet):
        deployment_id = fleet.submit(StrategyKind.ROLLING)
        deployment = fleet.controller.get_deployment(deployment_id)
        audit = AuditTrail()
        transition = audit.record(deployment, DeploymentState.PROVISIONING, RolloutStep(provision=1, reason="go"))
        assert deployment.history == [transition]
        assert deployment.pending_transitions() == [transition]
        assert transition.reason == "go"
        assert deployment.state == DeploymentState.PENDING


class TestJsonLinesSink:
    """Durable JSON-lines audit files."""

    @pytest.mark.asyncio
    async def test_write_and_read_back(self, fleet):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.jsonl', delete=False) as f:
            temp_path = f.name
        try:
            fleet.audit.add_sink(JsonLinesSink(temp_path))
            deployment_id = fleet.submit(StrategyKind.BLUE_GREEN)
            await fleet.tick(deployment_id)
            await fleet.controller.abort(deployment_id, "change freeze")

            with open(temp_path) as f:
                lines = [json.loads(line) for line in f]
            kinds = [line["event"] for line in lines]
            assert kinds.count("submitted") == 1
            assert kinds.count("intent") == kinds.count("applied") == 3
            assert kinds.count("checkpoint") > 0
            events = list(JsonLinesSink.read(temp_path, deployment_id))
            assert events == lines
            assert events[-1]["reason"] == "change freeze"
            assert list(JsonLinesSink.read(temp_path, "other")) == []
        finally:
            os.unlink(temp_path)
