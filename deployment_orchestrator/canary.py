from .config import CanaryParams
from .models import DeploymentState, RolloutStep, StrategyKind
from .strategy import CANDIDATE, STABLE, RolloutStrategy, weights


class CanaryStrategy(RolloutStrategy):
    """Ramp candidate weight through `steps`, judging each for one evaluation window"""

    kind = StrategyKind.CANARY
    params_class = CanaryParams

    def decide(self, deployment, snapshot):
        progress = deployment.progress
        phase = progress.get("phase")
        steps = self.params.steps

        if phase is None:
            return RolloutStep(
                state=DeploymentState.PROVISIONING,
                provision=self.params.instances,
                progress={"phase": "provisioning", "phase_started_at": snapshot.now},
                reason=f"provisioning {self.params.instances} canary instances",
            )

        if phase == "provisioning":
            healthy = snapshot.healthy(CANDIDATE)
            if len(healthy) >= self.params.instances:
                return self._shift(snapshot, 0, f"canary healthy, shifting {steps[0]}% of traffic")
            if self.elapsed(deployment, snapshot) > self.params.provision_timeout_s:
                return self.abort(f"canary not healthy within {self.params.provision_timeout_s}s "
                                  f"({len(healthy)}/{self.params.instances} healthy)")
            return self.wait()

        index = progress["step_index"]
        weight = steps[index]
        unhealthy = snapshot.unhealthy(CANDIDATE)
        if unhealthy:
            return self.abort(f"at {weight}%: {len(unhealthy)} candidate instances unhealthy")
        if self.elapsed(deployment, snapshot) < self.params.evaluation_window_s:
            return self.wait()

        problem = self.compare(snapshot)
        if problem:
            return self.abort(f"at {weight}%: {problem}")
        if weight == 100:
            return RolloutStep(
                state=DeploymentState.COMPLETED,
                retire=[i.instance_id for i in snapshot.stable],
                promote=True,
                reason=f"100% passed final evaluation, retiring {len(snapshot.stable)} previous instances",
            )
        return self._shift(snapshot, index + 1, f"{weight}% passed, shifting to {steps[index + 1]}%")

    def compare(self, snapshot):
        """Reason the candidate fails its error budget, or None"""
        candidate = snapshot.error_rate(CANDIDATE)
        stable = snapshot.error_rate(STABLE)
        if self.params.comparison == "absolute":
            excess = candidate
        else:
            # Errors the stable fleet sees too (shared outages) are not held against the canary
            excess = candidate - stable
        if excess > self.params.max_error_rate:
            return (f"candidate error rate {candidate:.3f} vs stable {stable:.3f} exceeds "
                    f"max_error_rate {self.params.max_error_rate} ({self.params.comparison})")
        return None

    def _shift(self, snapshot, index, reason):
        return RolloutStep(
            next_weights=weights(self.params.steps[index]),
            state=DeploymentState.ADVANCING,
            wait_before_evaluate=self.params.evaluation_window_s,
            progress={"phase": "evaluating", "step_index": index, "phase_started_at": snapshot.now},
            reason=reason,
        )
