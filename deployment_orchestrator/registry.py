import threading
from dataclasses import replace

from .errors import DuplicateInstance, UnknownInstance
from .health import HealthAggregator
from .logger import get_logger
from .models import EnvironmentTag, Health


class InstanceRegistry:
    """Live instances of every service, with their tag and health verdict.

    Writes are serialized by a single lock; reads hand out copies so callers
    never hold a reference to a record the registry may change.
    """

    def __init__(self, aggregator=None):
        self.aggregator = aggregator if aggregator else HealthAggregator()
        self.logger = get_logger("registry")
        self._lock = threading.Lock()
        self._instances = {}

    def register(self, instance):
        with self._lock:
            if instance.instance_id in self._instances:
                raise DuplicateInstance(f"instance {instance.instance_id} is already registered")
            record = replace(instance, health=Health.UNKNOWN, last_probe_at=None)
            self._instances[instance.instance_id] = record
        self.logger.info(f"Registered {record.environment_tag.value} instance {record.instance_id} "
                         f"({record.service_name} {record.version})")
        return record.instance_id

    def mark_health(self, instance_id, sample):
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None:
                raise UnknownInstance(f"instance {instance_id} is not registered")
            previous = record.health
            record.health = self.aggregator.record(sample)
            record.last_probe_at = sample.observed_at
        if record.health != previous:
            self.logger.info(f"Instance {instance_id} is now {record.health.value} (was {previous.value})")
        return record.health

    def get(self, instance_id):
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None:
                raise UnknownInstance(f"instance {instance_id} is not registered")
            return replace(record)

    def __contains__(self, instance_id):
        with self._lock:
            return instance_id in self._instances

    def list(self, service_name, environment_tag=None):
        with self._lock:
            return [replace(i) for i in self._instances.values()
                    if i.service_name == service_name
                    and (environment_tag is None or i.environment_tag == environment_tag)]

    def all(self):
        with self._lock:
            return [replace(i) for i in self._instances.values()]

    def retire(self, instance_id):
        with self._lock:
            record = self._instances.pop(instance_id, None)
            self.aggregator.forget(instance_id)
        if record is None:
            self.logger.debug(f"Instance {instance_id} already retired")
        else:
            self.logger.info(f"Retired {record.environment_tag.value} instance {instance_id}")

    def error_rate(self, service_name, environment_tag):
        """Failed share of the samples currently held for one population"""
        with self._lock:
            failed = total = 0
            for record in self._instances.values():
                if record.service_name == service_name and record.environment_tag == environment_tag:
                    f, t = self.aggregator.counts(record.instance_id)
                    failed += f
                    total += t
        return failed / total if total else 0.0

    def promote(self, service_name):
        """Re-tag every candidate instance of a service as stable"""
        with self._lock:
            promoted = []
            for record in self._instances.values():
                if record.service_name == service_name and record.environment_tag == EnvironmentTag.CANDIDATE:
                    record.environment_tag = EnvironmentTag.STABLE
                    promoted.append(record.instance_id)
        self.logger.info(f"Promoted {len(promoted)} candidate instances of {service_name} to stable")
        return promoted
