import threading
from types import MappingProxyType

from .errors import InvalidPolicy
from .logger import get_logger
from .models import EnvironmentTag, Health, TrafficPolicy

DEFAULT_WEIGHTS = {EnvironmentTag.STABLE: 100, EnvironmentTag.CANDIDATE: 0}


def normalize_weights(weights):
    """Accept tag names or tags as keys; fill missing tags with 0"""
    result = {tag: 0 for tag in EnvironmentTag}
    for key, value in weights.items():
        try:
            tag = EnvironmentTag(key)
        except ValueError:
            raise InvalidPolicy(f"unknown environment tag: {key!r}")
        result[tag] = value
    return result


class TrafficPolicyStore:
    """Committed traffic splits, one published revision per service.

    Publishing swaps in a new frozen TrafficPolicy under the lock, so a
    reader gets either the previous revision or the new one, never a mix.
    """

    def __init__(self, registry):
        self.registry = registry
        self.logger = get_logger("traffic")
        self._lock = threading.Lock()
        self._current = {}
        self._history = {}
        self._listeners = []

    def subscribe(self, listener):
        """listener(policy) is called after every publish"""
        self._listeners.append(listener)

    def validate(self, service_name, weights):
        weights = normalize_weights(weights)
        for tag, weight in weights.items():
            if isinstance(weight, bool) or not isinstance(weight, int):
                raise InvalidPolicy(f"weight for {tag.value} must be an integer, got {weight!r}")
            if not 0 <= weight <= 100:
                raise InvalidPolicy(f"weight for {tag.value} must be within 0..100, got {weight}")
        total = sum(weights.values())
        if total != 100:
            raise InvalidPolicy(f"weights must sum to 100, got {total}")
        for tag, weight in weights.items():
            if weight == 0:
                continue
            healthy = [i for i in self.registry.list(service_name, tag) if i.health == Health.HEALTHY]
            if not healthy:
                raise InvalidPolicy(f"{tag.value} has weight {weight} but no healthy instances")
        return weights

    def commit(self, service_name, weights):
        weights = self.validate(service_name, weights)
        with self._lock:
            previous = self._current.get(service_name)
            revision = previous.revision + 1 if previous else 1
            policy = TrafficPolicy(service_name, MappingProxyType(dict(weights)), revision)
            self._current[service_name] = policy
            self._history.setdefault(service_name, []).append(policy)
        self.logger.info(f"Committed revision {revision} for {service_name}: "
                         + ", ".join(f"{tag.value}={w}" for tag, w in weights.items()))
        for listener in self._listeners:
            listener(policy)
        return revision

    def policy(self, service_name):
        with self._lock:
            policy = self._current.get(service_name)
        if policy is None:
            return TrafficPolicy(service_name, MappingProxyType(dict(DEFAULT_WEIGHTS)), 0)
        return policy

    def current(self, service_name):
        policy = self.policy(service_name)
        return dict(policy.weights), policy.revision

    def history(self, service_name):
        with self._lock:
            return list(self._history.get(service_name, []))

    def routing_table(self, service_name):
        """Per tag: weight and the healthy instances allowed to receive it"""
        policy = self.policy(service_name)
        table = {}
        for tag in EnvironmentTag:
            healthy = [i.instance_id for i in self.registry.list(service_name, tag)
                       if i.health == Health.HEALTHY]
            weight = policy.weight(tag)
            table[tag] = (weight, healthy if weight > 0 else [])
        return table
