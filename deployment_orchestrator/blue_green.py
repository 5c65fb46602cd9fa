from .config import BlueGreenParams
from .models import DeploymentState, RolloutStep, StrategyKind
from .strategy import CANDIDATE, RolloutStrategy, weights


class BlueGreenStrategy(RolloutStrategy):
    """Full candidate environment, soak at 100/0, one-commit cutover, drain.

    Any abort before cutover leaves traffic untouched; after cutover the
    rollback is a single commit back to 100/0.
    """

    kind = StrategyKind.BLUE_GREEN
    params_class = BlueGreenParams

    def decide(self, deployment, snapshot):
        phase = deployment.progress.get("phase")
        if phase is None:
            capacity = self.params.capacity or len(snapshot.stable) or 1
            return RolloutStep(
                state=DeploymentState.PROVISIONING,
                provision=capacity,
                progress={"phase": "provisioning", "capacity": capacity, "phase_started_at": snapshot.now},
                reason=f"provisioning {capacity} instances in {deployment.environment_label}",
            )

        capacity = deployment.progress["capacity"]
        elapsed = self.elapsed(deployment, snapshot)

        if phase == "provisioning":
            healthy = snapshot.healthy(CANDIDATE)
            if len(healthy) >= capacity:
                return RolloutStep(
                    state=DeploymentState.EVALUATING,
                    progress={"phase": "soak", "phase_started_at": snapshot.now},
                    reason=f"all {capacity} candidate instances healthy, soaking "
                           f"for {self.params.soak_duration_s}s",
                )
            if elapsed > self.params.timeout_s:
                return self.abort(f"candidate environment not healthy within {self.params.timeout_s}s "
                                  f"({len(healthy)}/{capacity} healthy)")
            return self.wait()

        if phase == "soak":
            problem = self._problem(snapshot, capacity)
            if problem:
                return self.abort(f"soak failed before cutover: {problem}")
            if elapsed < self.params.soak_duration_s:
                return self.wait()
            return RolloutStep(
                next_weights=weights(100),
                state=DeploymentState.CUTOVER,
                progress={"phase": "drain", "phase_started_at": snapshot.now},
                reason=f"soak passed, cutting traffic over to {deployment.environment_label}",
            )

        # drain
        problem = self._problem(snapshot, capacity)
        if problem:
            return self.abort(f"candidate failed after cutover: {problem}")
        if elapsed < self.params.drain_duration_s:
            return self.wait()
        return RolloutStep(
            state=DeploymentState.COMPLETED,
            retire=[i.instance_id for i in snapshot.stable],
            promote=True,
            reason=f"drain complete, retiring {len(snapshot.stable)} previous instances",
        )

    def _problem(self, snapshot, capacity):
        unhealthy = snapshot.unhealthy(CANDIDATE)
        if unhealthy:
            return f"{len(unhealthy)} candidate instances unhealthy"
        if len(snapshot.candidate) < capacity:
            return f"candidate capacity dropped to {len(snapshot.candidate)}/{capacity}"
        rate = snapshot.error_rate(CANDIDATE)
        if rate > self.params.max_error_rate:
            return f"candidate error rate {rate:.3f} exceeds max_error_rate {self.params.max_error_rate}"
        return None
