import pytest
from deployment_orchestrator.audit import AuditTrail
from deployment_orchestrator.config import ControllerConfig
from deployment_orchestrator.controller import DeploymentController
from deployment_orchestrator.failure import FailureInjector
from deployment_orchestrator.models import (
    DeploymentRequest, EnvironmentTag, HealthSample, ServiceInstance,
)
from deployment_orchestrator.provisioner import InMemoryProvisioner
from deployment_orchestrator.registry import InstanceRegistry
from deployment_orchestrator.traffic import TrafficPolicyStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def no_sleep(seconds):
    pass


class Fleet:
    """A service with a healthy stable fleet, a controller, and a hand-driven clock"""

    def __init__(self, service="web", version="v1", size=4, injector=None, config=None):
        self.service = service
        self.clock = FakeClock()
        self.registry = InstanceRegistry()
        self.traffic = TrafficPolicyStore(self.registry)
        self.provisioner = InMemoryProvisioner(injector if injector else FailureInjector())
        self.audit = AuditTrail()
        self.controller = DeploymentController(
            self.registry, self.traffic, self.provisioner,
            config=config if config else ControllerConfig(),
            audit=self.audit, clock=self.clock, sleep=no_sleep,
        )
        self.stable_ids = []
        for i in range(size):
            instance_id = f"{service}-{version}-old{i}"
            self.registry.register(ServiceInstance(instance_id, service, version, EnvironmentTag.STABLE,
                                                   created_at=float(i)))
            self.provisioner.adopt(instance_id, service, version)
            self.stable_ids.append(instance_id)
        self.samples(self.stable_ids)

    def samples(self, instance_ids, failures=0, window=5):
        """Fill each instance's window; `failures` of the samples fail"""
        for instance_id in instance_ids:
            for n in range(window):
                self.registry.mark_health(instance_id, HealthSample(instance_id, n >= failures, 10.0, self.clock()))

    def stable(self):
        return self.registry.list(self.service, EnvironmentTag.STABLE)

    def candidates(self):
        return self.registry.list(self.service, EnvironmentTag.CANDIDATE)

    def candidate_ids(self):
        return [i.instance_id for i in self.candidates()]

    def heal_candidates(self):
        self.samples(self.candidate_ids())

    def submit(self, kind, version="v2", **params):
        return self.controller.submit(DeploymentRequest(self.service, version, kind, params))

    async def tick(self, deployment_id, advance=5.0):
        self.clock.advance(advance)
        return await self.controller.tick(deployment_id)

    def weights(self):
        weights, _ = self.traffic.current(self.service)
        return weights

    def committed_candidate_weights(self):
        return [p.weight(EnvironmentTag.CANDIDATE) for p in self.traffic.history(self.service)]


@pytest.fixture
def fleet():
    return Fleet()


@pytest.fixture
def make_fleet():
    return Fleet
