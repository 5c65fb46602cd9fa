import random


class FailureInjector:
    """Scripted faults for simulated provisioning and health checks"""

    def __init__(self, fail_provision=None, fail_deprovision=None, unhealthy_versions=None,
                 error_rates=None, latency_ms=5.0, delay=0, seed=None):
        self.fail_map = fail_provision or {}  # service_name -> provision calls that fail first
        self.fail_deprovision = set(fail_deprovision or ())  # instance ids that cannot be removed
        self.unhealthy_versions = set(unhealthy_versions or ())  # versions failing every check
        self.error_rates = dict(error_rates or {})  # version -> probability that a check fails
        self.latency_ms = latency_ms
        self.delay = delay
        self.attempts = {}
        self.random = random.Random(seed)

    def delay_seconds(self):
        return self.delay

    def should_fail(self, service_name):
        self.attempts[service_name] = self.attempts.get(service_name, 0) + 1
        return self.attempts[service_name] <= self.fail_map.get(service_name, 0)

    def should_fail_deprovision(self, instance_id):
        return instance_id in self.fail_deprovision

    def probe_outcome(self, instance):
        if instance.version in self.unhealthy_versions:
            return False, self.latency_ms
        rate = self.error_rates.get(instance.version, 0.0)
        return self.random.random() >= rate, self.latency_ms
