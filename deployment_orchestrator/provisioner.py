import asyncio
import itertools

from .errors import ProvisionError
from .failure import FailureInjector
from .logger import get_logger


class Provisioner:
    """Creates and destroys the running instances of a service.

    Subclasses implement provision() and deprovision(); describe() is optional.
    Failures must be raised as ProvisionError; the controller retries those
    a bounded number of times. deprovision() of an unknown id must succeed.
    """

    async def provision(self, service_name, version, count):
        raise NotImplementedError

    async def deprovision(self, instance_id):
        raise NotImplementedError

    def describe(self, instance_id):
        """Metadata for the registry, e.g. {"address": ...}"""
        return {}


class InMemoryProvisioner(Provisioner):
    """A fleet that only exists in memory, with optional injected faults"""

    def __init__(self, failure_injector=None, address_template=None):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.address_template = address_template  # e.g. "http://{instance_id}.internal:8080"
        self.instances = {}
        self.calls = []
        self.logger = get_logger("provisioner")
        self._counter = itertools.count(1)

    def adopt(self, instance_id, service_name, version):
        """Track an instance that was started outside the provisioner"""
        self.instances[instance_id] = (service_name, version)

    async def provision(self, service_name, version, count):
        self.calls.append(("provision", service_name, version, count))
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if self.failure_injector.should_fail(service_name):
            raise ProvisionError(f"no capacity for {count} x {service_name} {version}")
        ids = []
        for _ in range(count):
            instance_id = f"{service_name}-{version}-{next(self._counter)}"
            self.instances[instance_id] = (service_name, version)
            ids.append(instance_id)
        self.logger.info(f"Provisioned {count} x {service_name} {version}: {', '.join(ids)}")
        return ids

    async def deprovision(self, instance_id):
        self.calls.append(("deprovision", instance_id))
        if self.failure_injector.should_fail_deprovision(instance_id):
            raise ProvisionError(f"could not stop {instance_id}")
        if self.instances.pop(instance_id, None) is not None:
            self.logger.info(f"Deprovisioned {instance_id}")

    def describe(self, instance_id):
        if not self.address_template:
            return {}
        return {"address": self.address_template.format(instance_id=instance_id)}
