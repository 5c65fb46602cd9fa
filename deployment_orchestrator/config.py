from dataclasses import dataclass, field, fields
from typing import List, Optional


def _from_dict(cls, data):
    data = dict(data or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown {cls.__name__} option(s): {', '.join(unknown)}")
    return cls(**data)


def _require(condition, message):
    if not condition:
        raise ValueError(message)


@dataclass
class ProbeConfig:
    """How instances are checked and judged"""
    interval_s: float = 5.0  # Time between checks of one instance
    timeout_s: float = 2.0  # Bound on a single check
    window_size: int = 5  # Samples kept per instance
    quorum: int = 3  # Successful samples needed to be healthy
    max_latency_ms: float = 1000.0  # Mean latency ceiling for a healthy verdict
    reconcile_interval_s: Optional[float] = None  # Registry scan period, defaults to interval_s

    def __post_init__(self):
        _require(self.interval_s > 0, "interval_s must be > 0")
        _require(self.timeout_s > 0, "timeout_s must be > 0")
        _require(self.window_size > 0, "window_size must be > 0")
        _require(0 < self.quorum <= self.window_size, "quorum must be between 1 and window_size")
        _require(self.max_latency_ms > 0, "max_latency_ms must be > 0")

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)


@dataclass
class ControllerConfig:
    """Controller cadence and retry behavior"""
    tick_interval_s: float = 5.0  # Time between strategy decisions
    propagation_latency_s: float = 5.0  # Minimum wait after a commit before re-evaluating
    provision_retries: int = 2  # Extra attempts after a failed provisioner call
    provision_retry_base_delay_s: float = 0.5  # Base delay between provisioner retries

    def __post_init__(self):
        _require(self.tick_interval_s > 0, "tick_interval_s must be > 0")
        _require(self.propagation_latency_s >= 0, "propagation_latency_s must be >= 0")
        _require(self.provision_retries >= 0, "provision_retries must be >= 0")
        _require(self.provision_retry_base_delay_s >= 0, "provision_retry_base_delay_s must be >= 0")

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)


@dataclass
class RollingParams:
    batch_size: int = 1  # Instances replaced per batch
    step_timeout_s: float = 60.0  # Time a batch has to become healthy
    failure_threshold: float = 0.2  # Max unhealthy ratio in a batch (0-1)
    replicas: int = 1  # Target size when the service has no stable instances

    def __post_init__(self):
        _require(self.batch_size > 0, "batch_size must be > 0")
        _require(self.step_timeout_s > 0, "step_timeout_s must be > 0")
        _require(0 <= self.failure_threshold <= 1, "failure_threshold must be between 0 and 1")
        _require(self.replicas > 0, "replicas must be > 0")

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)


@dataclass
class BlueGreenParams:
    capacity: Optional[int] = None  # Candidate size, defaults to the stable size
    timeout_s: float = 300.0  # Time the candidate environment has to become healthy
    soak_duration_s: float = 30.0  # Observation window before cutover
    drain_duration_s: float = 30.0  # Observation window after cutover, before retiring stable
    max_error_rate: float = 0.05

    def __post_init__(self):
        _require(self.capacity is None or self.capacity > 0, "capacity must be > 0")
        _require(self.timeout_s > 0, "timeout_s must be > 0")
        _require(self.soak_duration_s >= 0, "soak_duration_s must be >= 0")
        _require(self.drain_duration_s >= 0, "drain_duration_s must be >= 0")
        _require(0 <= self.max_error_rate <= 1, "max_error_rate must be between 0 and 1")

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)


COMPARISON_MODES = ("relative", "absolute")


@dataclass
class CanaryParams:
    steps: List[int] = field(default_factory=lambda: [5, 10, 25, 50, 100])  # Candidate weights
    evaluation_window_s: float = 60.0  # Observation time at each weight
    max_error_rate: float = 0.05
    comparison: str = "relative"  # "relative": candidate minus stable, "absolute": candidate alone
    instances: int = 1  # Canary instances to provision
    provision_timeout_s: float = 300.0

    def __post_init__(self):
        self.steps = list(self.steps)
        _require(self.steps, "steps must not be empty")
        _require(all(isinstance(s, int) and 0 < s <= 100 for s in self.steps),
                 "steps must be integers in 1..100")
        _require(self.steps == sorted(set(self.steps)), "steps must be strictly increasing")
        _require(self.steps[-1] == 100, "the last step must be 100")
        _require(self.evaluation_window_s >= 0, "evaluation_window_s must be >= 0")
        _require(0 <= self.max_error_rate <= 1, "max_error_rate must be between 0 and 1")
        _require(self.comparison in COMPARISON_MODES,
                 f"comparison must be one of {', '.join(COMPARISON_MODES)}")
        _require(self.instances > 0, "instances must be > 0")
        _require(self.provision_timeout_s > 0, "provision_timeout_s must be > 0")

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)
