from .config import RollingParams
from .models import DeploymentState, Health, RolloutStep, StrategyKind
from .strategy import CANDIDATE, STABLE, RolloutStrategy, split_weights


class RollingStrategy(RolloutStrategy):
    """Replace the fleet batch by batch.

    Each batch is provisioned, must turn healthy within step_timeout_s, and
    then an equal number of old instances leave: first their share of the
    traffic, then the instances themselves.
    """

    kind = StrategyKind.ROLLING
    params_class = RollingParams

    def decide(self, deployment, snapshot):
        progress = deployment.progress
        target = progress.get("target") or len(snapshot.stable) or self.params.replicas

        if progress.get("phase", "provision") == "provision":
            return self._next_batch(progress, snapshot, target)
        return self._evaluate_batch(deployment, snapshot)

    def _next_batch(self, progress, snapshot, target):
        stable, candidate = snapshot.stable, snapshot.candidate
        if not stable and len(candidate) >= target:
            return RolloutStep(state=DeploymentState.COMPLETED, promote=True,
                               reason=f"all {target} instances replaced")

        missing = target - len(candidate)
        if missing <= 0:
            # Enough new capacity already; only old instances are left to go
            retire = [i.instance_id for i in stable]
            return RolloutStep(next_weights=split_weights(0, len(snapshot.healthy(CANDIDATE))),
                               retire=retire, state=DeploymentState.ADVANCING,
                               reason=f"retiring remaining {len(retire)} old instances")

        count = min(self.params.batch_size, missing)
        batch = progress.get("batch", 0) + 1
        return RolloutStep(
            state=DeploymentState.PROVISIONING,
            provision=count,
            progress={"target": target, "phase": "waiting", "batch": batch,
                      "batch_started_at": snapshot.now},
            reason=f"batch {batch}: provisioning {count} instances",
        )

    def _evaluate_batch(self, deployment, snapshot):
        batch_no = deployment.progress["batch"]
        batch_ids = set(deployment.last_provisioned)
        batch = [i for i in snapshot.candidate if i.instance_id in batch_ids]
        # Instances that vanished from the registry count as failed
        unhealthy = len(batch_ids) - len(batch) + len([i for i in batch if i.health == Health.UNHEALTHY])
        ratio = unhealthy / len(batch_ids) if batch_ids else 0.0
        if ratio > self.params.failure_threshold:
            return self.abort(f"batch {batch_no}: {unhealthy}/{len(batch_ids)} instances unhealthy "
                              f"(ratio {ratio:.2f} > failure_threshold {self.params.failure_threshold})")

        healthy = [i for i in batch if i.health == Health.HEALTHY]
        if any(i.health == Health.UNKNOWN for i in batch):
            if self.elapsed(deployment, snapshot, "batch_started_at") > self.params.step_timeout_s:
                return self.abort(f"batch {batch_no}: only {len(healthy)}/{len(batch_ids)} instances "
                                  f"healthy after step_timeout {self.params.step_timeout_s}s")
            return RolloutStep(state=DeploymentState.EVALUATING)
        if not healthy:
            return self.abort(f"batch {batch_no}: no instance became healthy")

        # Tolerated failures never got traffic; they leave now and the next batch replaces them
        failed = [i.instance_id for i in batch if i.health == Health.UNHEALTHY]
        # Unhealthy old instances go first, then the oldest
        old = sorted(snapshot.stable, key=lambda i: (i.health == Health.HEALTHY, i.created_at, i.instance_id))
        retire = [i.instance_id for i in old[:len(healthy)]]
        remaining = [i for i in snapshot.healthy(STABLE) if i.instance_id not in retire]
        reason = f"batch {batch_no} healthy: retiring {len(retire)} old instances"
        if failed:
            reason += f" and {len(failed)} failed new ones"
        return RolloutStep(
            next_weights=split_weights(len(remaining), len(snapshot.healthy(CANDIDATE))),
            retire=retire + failed,
            state=DeploymentState.ADVANCING,
            progress={"phase": "provision"},
            reason=reason,
        )
