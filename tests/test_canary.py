import pytest
from deployment_orchestrator.canary import CanaryStrategy
from deployment_orchestrator.config import CanaryParams
from deployment_orchestrator.models import (
    DeploymentState, EnvironmentTag, HealthSnapshot, StrategyKind,
)

STABLE = EnvironmentTag.STABLE
CANDIDATE = EnvironmentTag.CANDIDATE


async def _start(fleet, deployment_id):
    assert await fleet.tick(deployment_id) == DeploymentState.PROVISIONING
    fleet.heal_candidates()
    assert await fleet.tick(deployment_id) == DeploymentState.ADVANCING


class TestCanaryComparison:
    """Error-rate comparison modes."""

    def test_relative_mode_ignores_shared_outage(self):
        strategy = CanaryStrategy(CanaryParams(max_error_rate=0.05, comparison="relative"))
        snapshot = HealthSnapshot(now=0.0, error_rates={STABLE: 0.30, CANDIDATE: 0.32})
        assert strategy.compare(snapshot) is None

    def test_absolute_mode_counts_every_error(self):
        strategy = CanaryStrategy(CanaryParams(max_error_rate=0.05, comparison="absolute"))
        snapshot = HealthSnapshot(now=0.0, error_rates={STABLE: 0.30, CANDIDATE: 0.32})
        assert "absolute" in strategy.compare(snapshot)

    def test_relative_mode_flags_candidate_only_errors(self):
        strategy = CanaryStrategy(CanaryParams(max_error_rate=0.05))
        snapshot = HealthSnapshot(now=0.0, error_rates={STABLE: 0.0, CANDIDATE: 0.2})
        assert "relative" in strategy.compare(snapshot)


class TestCanaryDeployment:
    """Canary rollouts driven through the controller."""

    @pytest.mark.asyncio
    async def test_partial_failure_at_fifty_percent(self, fleet):
        deployment_id = fleet.submit(StrategyKind.CANARY, steps=[10, 50, 100], evaluation_window_s=60)
        await _start(fleet, deployment_id)
        assert fleet.weights()[CANDIDATE] == 10

        assert await fleet.tick(deployment_id, advance=60) == DeploymentState.ADVANCING
        assert fleet.weights()[CANDIDATE] == 50

        fleet.samples(fleet.candidate_ids(), failures=2)
        assert await fleet.tick(deployment_id, advance=60) == DeploymentState.ROLLED_BACK

        deployment = fleet.controller.get_deployment(deployment_id)
        assert [w[CANDIDATE] for w in deployment.committed_weights()] == [10, 50, 0]
        assert fleet.committed_candidate_weights() == [10, 50, 0]
        assert fleet.candidates() == []
        assert deployment.abort_reason.startswith("at 50%")

    @pytest.mark.asyncio
    async def test_full_ramp_completes(self, fleet):
        deployment_id = fleet.submit(StrategyKind.CANARY, steps=[25, 100], evaluation_window_s=30, instances=2)
        await _start(fleet, deployment_id)
        assert await fleet.tick(deployment_id, advance=30) == DeploymentState.ADVANCING
        assert fleet.weights() == {STABLE: 0, CANDIDATE: 100}
        assert await fleet.tick(deployment_id, advance=30) == DeploymentState.COMPLETED

        instances = fleet.registry.list("web")
        assert len(instances) == 2
        assert {i.version for i in instances} == {"v2"}
        assert fleet.committed_candidate_weights() == [25, 100, 0]

    @pytest.mark.asyncio
    async def test_no_evaluation_before_window_ends(self, fleet):
        deployment_id = fleet.submit(StrategyKind.CANARY, steps=[10, 100], evaluation_window_s=60)
        await _start(fleet, deployment_id)
        fleet.samples(fleet.candidate_ids(), failures=2)
        # Inside the window nothing is decided
        assert await fleet.tick(deployment_id, advance=30) == DeploymentState.ADVANCING
        assert fleet.weights()[CANDIDATE] == 10
        assert await fleet.tick(deployment_id, advance=30) == DeploymentState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_shared_outage_does_not_abort(self, fleet):
        deployment_id = fleet.submit(StrategyKind.CANARY, steps=[10, 100], evaluation_window_s=60)
        await _start(fleet, deployment_id)
        fleet.samples(fleet.stable_ids, failures=2)
        fleet.samples(fleet.candidate_ids(), failures=2)
        assert await fleet.tick(deployment_id, advance=60) == DeploymentState.ADVANCING
        assert fleet.weights()[CANDIDATE] == 100

    @pytest.mark.asyncio
    async def test_unhealthy_canary_aborts(self, fleet):
        deployment_id = fleet.submit(StrategyKind.CANARY, steps=[10, 100])
        await fleet.tick(deployment_id)
        fleet.samples(fleet.candidate_ids(), failures=5)
        assert await fleet.tick(deployment_id, advance=400) == DeploymentState.ROLLED_BACK
        assert fleet.traffic.history("web") == []
