import asyncio
import time
import uuid

from .audit import AuditTrail
from .blue_green import BlueGreenStrategy
from .canary import CanaryStrategy
from .config import ControllerConfig
from .errors import (
    ConflictingDeployment, InvalidPolicy, ProvisionError, RollbackFailure, UnknownDeployment,
)
from .logger import get_logger
from .models import (
    TRANSITIONS, Deployment, DeploymentState, EnvironmentTag, HealthSnapshot, RolloutStep,
    ServiceInstance, Transition,
)
from .rolling import RollingStrategy
from .traffic import DEFAULT_WEIGHTS


def default_strategies():
    return {cls.kind: cls for cls in (RollingStrategy, BlueGreenStrategy, CanaryStrategy)}


class DeploymentController:
    """Owns deployment lifecycles and drives them through their strategies.

    Every decision is written to the deployment's history before it is
    applied and marked applied afterwards, so a restarted controller can
    finish what it had started instead of deciding again. Within one
    transition the order is fixed: new instances are registered, then at
    most one traffic commit, then retirements.
    """

    def __init__(self, registry, traffic, provisioner, probe=None, config=None, audit=None,
                 strategies=None, clock=time.time, sleep=asyncio.sleep):
        self.registry = registry
        self.traffic = traffic
        self.provisioner = provisioner
        self.probe = probe
        self.config = config if config else ControllerConfig()
        self.audit = audit if audit is not None else AuditTrail()
        self.strategies = default_strategies()
        self.strategies.update(strategies or {})
        self.clock = clock
        self.sleep = sleep
        self.logger = get_logger("controller")
        self.deployments = {}
        self._strategy_by_id = {}
        self._leases = {}  # service_name -> deployment_id holding it
        self._stable_labels = {}  # service_name -> colour of the stable population
        self._locks = {}
        self._tasks = {}
        self._running = False

    # Submission and status

    def submit(self, request, start=True):
        """Accept a deployment request and return its id"""
        strategy = self._build_strategy(request.strategy_kind, request.strategy_params)
        holder = self._leases.get(request.service_name)
        if holder is not None:
            self.logger.error(f"Rejected deployment of {request.service_name} {request.target_version}: "
                              f"{holder} is still active")
            raise ConflictingDeployment(request.service_name, holder)
        leftovers = self.registry.list(request.service_name, EnvironmentTag.CANDIDATE)
        if leftovers:
            self.logger.warning(f"{request.service_name} still has {len(leftovers)} candidate instances "
                                f"from an earlier deployment: {', '.join(i.instance_id for i in leftovers)}")

        deployment_id = f"{request.service_name}-{uuid.uuid4().hex[:8]}"
        stable_label = self._stable_labels.get(request.service_name, "blue")
        deployment = Deployment(
            deployment_id=deployment_id,
            service_name=request.service_name,
            target_version=request.target_version,
            strategy_kind=request.strategy_kind,
            strategy_params=dict(request.strategy_params),
            started_at=self.clock(),
            environment_label="green" if stable_label == "blue" else "blue",
        )
        self._leases[request.service_name] = deployment_id
        self.deployments[deployment_id] = deployment
        self._strategy_by_id[deployment_id] = strategy
        self.audit.submitted(deployment)
        self.logger.info(f"Accepted {request.strategy_kind.value} deployment {deployment_id}: "
                         f"{request.service_name} -> {request.target_version}")
        if start and self._running:
            self._spawn(deployment_id)
        return deployment_id

    def get_deployment(self, deployment_id):
        deployment = self.deployments.get(deployment_id)
        if deployment is None:
            raise UnknownDeployment(f"no deployment {deployment_id}")
        return deployment

    def list_active(self):
        return [d for d in self.deployments.values() if d.active]

    def list_deployments(self):
        return list(self.deployments.values())

    def acknowledge(self, deployment_id):
        """Record that an operator has seen a failed deployment"""
        deployment = self.get_deployment(deployment_id)
        if deployment.state != DeploymentState.FAILED:
            raise ValueError(f"deployment {deployment_id} is {deployment.state.value}, not failed")
        if not deployment.acknowledged:
            deployment.acknowledged = True
            self.logger.info(f"Operator acknowledged failed deployment {deployment_id}")

    def snapshot(self, service_name, now=None):
        weights, revision = self.traffic.current(service_name)
        return HealthSnapshot(
            now=self.clock() if now is None else now,
            stable=self.registry.list(service_name, EnvironmentTag.STABLE),
            candidate=self.registry.list(service_name, EnvironmentTag.CANDIDATE),
            error_rates={tag: self.registry.error_rate(service_name, tag) for tag in EnvironmentTag},
            weights=weights,
            revision=revision,
        )

    # Driving deployments

    async def tick(self, deployment_id):
        """One decision cycle; returns the deployment's state afterwards"""
        deployment = self.get_deployment(deployment_id)
        async with self._lock(deployment_id):
            if not deployment.active:
                return deployment.state
            if deployment.state == DeploymentState.ROLLING_BACK:
                await self._roll_back(deployment, deployment.abort_reason or "resuming rollback")
                return deployment.state
            now = self.clock()
            if now < deployment.next_evaluation_at:
                return deployment.state
            strategy = self._strategy_of(deployment)
            step = strategy.decide(deployment, self.snapshot(deployment.service_name, now))
            await self._execute(deployment, step)
        return deployment.state

    async def abort(self, deployment_id, reason="aborted by operator"):
        """Operator abort; takes the same path as an automatic rollback"""
        deployment = self.get_deployment(deployment_id)
        async with self._lock(deployment_id):
            if deployment.active:
                self.logger.warning(f"Abort requested for {deployment_id}: {reason}")
                await self._execute(deployment, RolloutStep.aborting(reason))
        return deployment.state

    async def run(self, deployment_id):
        deployment = self.get_deployment(deployment_id)
        while deployment.active:
            try:
                await self.tick(deployment_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Tick of {deployment_id} failed: {e!r}")
                await self.abort(deployment_id, f"controller error: {e}")
            if deployment.active:
                await self.sleep(self.config.tick_interval_s)
        return deployment

    async def start(self):
        self._running = True
        if self.probe:
            await self.probe.start()
        await self.recover()
        for deployment in self.list_active():
            self._spawn(deployment.deployment_id)
        self.logger.info(f"Controller started with {len(self.list_active())} active deployments")

    async def shutdown(self):
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if self.probe:
            await self.probe.stop()
        self.logger.info("Controller stopped")

    async def wait(self, deployment_id):
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_deployment(deployment_id)

    # Crash recovery

    def restore(self, events):
        """Rebuild deployments from audit events written by an earlier controller.

        Accepts the events in the order they were written (a JSON-lines audit
        file) or an AuditTrail export. Intents that never got marked applied
        stay pending; call recover() afterwards to finish them. Returns the
        number of deployments restored.
        """
        restored = {}
        for event in events:
            kind = event.get("event")
            deployment_id = event["deployment_id"]
            if kind == "submitted":
                if deployment_id in self.deployments or deployment_id in restored:
                    raise ValueError(f"deployment {deployment_id} is already known")
                restored[deployment_id] = Deployment.from_dict(event)
                continue
            deployment = restored.get(deployment_id)
            if deployment is None:
                self.logger.warning(f"Skipping {kind} event #{event.get('seq')} of unknown deployment {deployment_id}")
                continue
            self._restore_transition(deployment, Transition.from_dict(event))

        for deployment in restored.values():
            if not deployment.active:
                continue
            holder = self._leases.get(deployment.service_name)
            if holder is not None:
                raise ConflictingDeployment(deployment.service_name, holder)

        now = self.clock()
        for deployment_id, deployment in restored.items():
            self.deployments[deployment_id] = deployment
            self.audit.adopt(deployment)
            if deployment.state == DeploymentState.COMPLETED:
                self._stable_labels[deployment.service_name] = deployment.environment_label
            if deployment.active:
                self._leases[deployment.service_name] = deployment_id
                # Health verdicts predate the restart; give them time to settle
                deployment.next_evaluation_at = now + self.config.propagation_latency_s
                if self._running:
                    self._spawn(deployment_id)
            self.logger.info(f"Restored deployment {deployment_id} ({deployment.state.value}, "
                             f"{len(deployment.pending_transitions())} pending transitions)")
        return len(restored)

    def _restore_transition(self, deployment, transition):
        index = transition.seq - 1
        if index < len(deployment.history):
            deployment.history[index] = transition
        elif index == len(deployment.history):
            deployment.history.append(transition)
        else:
            raise ValueError(f"transition #{transition.seq} of {deployment.deployment_id} is out of order")
        if transition.to_state == DeploymentState.ROLLING_BACK:
            deployment.abort_reason = transition.reason
        if not transition.applied:
            return

        step, effects = transition.step, transition.effects
        deployment.state = transition.to_state
        deployment.progress.update(step.progress)
        if "provisioned" in effects:
            deployment.last_provisioned = list(effects["provisioned"])
        if transition.to_state == DeploymentState.FAILED:
            deployment.failure_reason = transition.reason
        if transition.to_state.terminal:
            deployment.finished_at = transition.recorded_at

    async def recover(self):
        """Re-apply every logged intent that was never marked applied"""
        replayed = 0
        for deployment in self.list_active():
            async with self._lock(deployment.deployment_id):
                for transition in deployment.pending_transitions():
                    self.logger.warning(f"Replaying transition #{transition.seq} of {deployment.deployment_id} "
                                        f"({transition.from_state.value} -> {transition.to_state.value})")
                    await self._apply_or_roll_back(deployment, transition)
                    replayed += 1
        return replayed

    async def replay(self, deployment_id, seq):
        """Apply one logged transition again; effects already recorded are not repeated"""
        deployment = self.get_deployment(deployment_id)
        transition = next((t for t in deployment.history if t.seq == seq), None)
        if transition is None:
            raise ValueError(f"deployment {deployment_id} has no transition #{seq}")
        if not transition.applied and not deployment.active:
            raise ValueError(f"transition #{seq} of {deployment_id} was abandoned; "
                             f"the deployment is {deployment.state.value}")
        async with self._lock(deployment_id):
            await self._apply(deployment, transition)
        return transition

    # Internals

    def _build_strategy(self, kind, params):
        strategy_class = self.strategies.get(kind)
        if strategy_class is None:
            raise ValueError(f"no strategy registered for {kind}")
        return strategy_class.from_params(params)

    def _strategy_of(self, deployment):
        strategy = self._strategy_by_id.get(deployment.deployment_id)
        if strategy is None:
            strategy = self._build_strategy(deployment.strategy_kind, deployment.strategy_params)
            self._strategy_by_id[deployment.deployment_id] = strategy
        return strategy

    def _lock(self, deployment_id):
        return self._locks.setdefault(deployment_id, asyncio.Lock())

    def _spawn(self, deployment_id):
        task = self._tasks.get(deployment_id)
        if task is None or task.done():
            self._tasks[deployment_id] = asyncio.create_task(self.run(deployment_id))

    async def _execute(self, deployment, step):
        if step.abort:
            await self._roll_back(deployment, step.reason)
            return
        to_state = step.state or deployment.state
        if to_state == deployment.state and not step.has_effects:
            return
        if to_state != deployment.state and to_state not in TRANSITIONS[deployment.state]:
            raise RuntimeError(f"illegal transition {deployment.state.value} -> {to_state.value} "
                               f"for {deployment.deployment_id}")
        transition = self.audit.record(deployment, to_state, step)
        self.logger.info(f"{deployment.deployment_id}: {deployment.state.value} -> {to_state.value} "
                         f"{step.reason}".rstrip())
        await self._apply_or_roll_back(deployment, transition)

    async def _apply_or_roll_back(self, deployment, transition):
        try:
            await self._apply(deployment, transition)
        except ProvisionError as e:
            transition.error = str(e)
            self.audit.checkpoint(deployment, transition)
            await self._roll_back(deployment, f"provisioning failed: {e}")
        except InvalidPolicy as e:
            transition.error = str(e)
            self.audit.checkpoint(deployment, transition)
            await self._roll_back(deployment, f"invalid traffic policy: {e}")

    async def _apply(self, deployment, transition):
        """Apply a logged intent. Safe to call again for the same transition."""
        step, effects = transition.step, transition.effects
        service = deployment.service_name
        if step.promote and step.next_weights is not None:
            raise ValueError("a promoting step cannot also carry weights")

        # 1. new instances enter the registry (Unknown, so no traffic yet)
        if step.provision:
            if "provisioned" not in effects:
                effects["provisioned"] = await self._with_retries(
                    f"provision {step.provision} x {service} {deployment.target_version}",
                    self.provisioner.provision, service, deployment.target_version, step.provision)
                self.audit.checkpoint(deployment, transition)
            registered = effects.setdefault("registered", [])
            for instance_id in effects["provisioned"]:
                if instance_id in registered:
                    continue
                if instance_id not in self.registry:
                    self.registry.register(ServiceInstance(
                        instance_id, service, deployment.target_version, EnvironmentTag.CANDIDATE,
                        metadata=self.provisioner.describe(instance_id)))
                registered.append(instance_id)

        # 2. at most one traffic commit
        committed = False
        if step.next_weights is not None:
            if "revision" not in effects:
                effects["revision"] = self.traffic.commit(service, step.next_weights)
                self.audit.checkpoint(deployment, transition)
            committed = True

        # 3. retirements, only after their traffic is gone
        if step.retire:
            retired = effects.setdefault("retired", [])
            for instance_id in step.retire:
                if instance_id not in retired:
                    await self._retire(instance_id)
                    retired.append(instance_id)
                    self.audit.checkpoint(deployment, transition)

        # 4. the candidate population becomes the stable one; re-tag and commit
        #    happen without a suspension point in between
        if step.promote:
            if "revision" not in effects:
                self.traffic.validate(service, {EnvironmentTag.CANDIDATE: 100})
                effects["promoted"] = self.registry.promote(service)
                effects["revision"] = self.traffic.commit(service, DEFAULT_WEIGHTS)
                self.audit.checkpoint(deployment, transition)
            self._stable_labels[service] = deployment.environment_label
            committed = True

        if transition.applied:
            # Replaying an old entry must not rewind progress or state
            return
        if step.provision:
            deployment.last_provisioned = list(effects["provisioned"])
        deployment.progress.update(step.progress)
        wait = step.wait_before_evaluate
        if committed:
            wait = max(wait, self.config.propagation_latency_s)
        deployment.next_evaluation_at = self.clock() + wait
        self._set_state(deployment, transition.to_state)
        self.audit.mark_applied(deployment, transition)

    async def _retire(self, instance_id):
        await self._with_retries(f"deprovision {instance_id}", self.provisioner.deprovision, instance_id)
        self.registry.retire(instance_id)

    async def _with_retries(self, description, func, *args):
        max_attempts = self.config.provision_retries + 1
        for attempt in range(1, max_attempts + 1):
            try:
                return await func(*args)
            except ProvisionError as e:
                self.logger.warning(f"{description}: attempt {attempt} failed: {e}")
                if attempt >= max_attempts:
                    raise
                backoff_time = min((2 ** (attempt - 1)) * self.config.provision_retry_base_delay_s, 30.0)
                self.logger.info(f"Retrying in {backoff_time} seconds...")
                await self.sleep(backoff_time)

    async def _roll_back(self, deployment, reason):
        """Withdraw candidate traffic, then retire every candidate instance"""
        service = deployment.service_name
        if deployment.state != DeploymentState.ROLLING_BACK:
            deployment.abort_reason = reason
            self.logger.warning(f"Rolling back {deployment.deployment_id}: {reason}")
            weights, _ = self.traffic.current(service)
            restore = dict(DEFAULT_WEIGHTS) if weights.get(EnvironmentTag.CANDIDATE, 0) > 0 else None
            candidates = [i.instance_id for i in self.registry.list(service, EnvironmentTag.CANDIDATE)]
            step = RolloutStep(next_weights=restore, retire=candidates, abort=True, reason=reason)
            transition = self.audit.record(deployment, DeploymentState.ROLLING_BACK, step, reason)
        else:
            transition = next((t for t in reversed(deployment.history)
                               if t.to_state == DeploymentState.ROLLING_BACK), None)

        try:
            if transition is not None and not transition.applied:
                try:
                    await self._apply(deployment, transition)
                except (InvalidPolicy, ProvisionError) as e:
                    transition.error = str(e)
                    self.audit.checkpoint(deployment, transition)
                    raise RollbackFailure(f"rollback of {deployment.deployment_id} failed: {e}") from e
        except RollbackFailure as e:
            deployment.failure_reason = str(e)
            self.logger.error(f"{e}; operator intervention required")
            self._set_state(deployment, DeploymentState.ROLLING_BACK)
            self._finish(deployment, DeploymentState.FAILED, str(e))
            return

        self._finish(deployment, DeploymentState.ROLLED_BACK, reason)

    def _finish(self, deployment, state, reason):
        transition = self.audit.record(deployment, state, RolloutStep(state=state, reason=reason), reason)
        self._set_state(deployment, state)
        self.audit.mark_applied(deployment, transition)

    def _set_state(self, deployment, state):
        if state == deployment.state:
            return
        if state not in TRANSITIONS.get(deployment.state, ()):
            raise RuntimeError(f"illegal transition {deployment.state.value} -> {state.value} "
                               f"for {deployment.deployment_id}")
        deployment.state = state
        if state.terminal:
            deployment.finished_at = self.clock()
            if self._leases.get(deployment.service_name) == deployment.deployment_id:
                del self._leases[deployment.service_name]
            self.logger.info(f"Deployment {deployment.deployment_id} finished: {state.value}")
