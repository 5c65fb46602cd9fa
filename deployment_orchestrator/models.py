import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional


class EnvironmentTag(str, Enum):
    STABLE = "stable"
    CANDIDATE = "candidate"


class Health(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class StrategyKind(str, Enum):
    ROLLING = "rolling"
    BLUE_GREEN = "blue_green"
    CANARY = "canary"


class DeploymentState(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    EVALUATING = "evaluating"
    ADVANCING = "advancing"
    CUTOVER = "cutover"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def terminal(self):
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    DeploymentState.COMPLETED,
    DeploymentState.ROLLED_BACK,
    DeploymentState.FAILED,
})

# Legal moves of the controller state machine
TRANSITIONS = {
    DeploymentState.PENDING: {
        DeploymentState.PROVISIONING,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.PROVISIONING: {
        DeploymentState.PROVISIONING,
        DeploymentState.EVALUATING,
        DeploymentState.ADVANCING,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.EVALUATING: {
        DeploymentState.EVALUATING,
        DeploymentState.PROVISIONING,
        DeploymentState.ADVANCING,
        DeploymentState.CUTOVER,
        DeploymentState.COMPLETED,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.ADVANCING: {
        DeploymentState.ADVANCING,
        DeploymentState.EVALUATING,
        DeploymentState.PROVISIONING,
        DeploymentState.CUTOVER,
        DeploymentState.COMPLETED,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.CUTOVER: {
        DeploymentState.CUTOVER,
        DeploymentState.COMPLETED,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.ROLLING_BACK: {
        DeploymentState.ROLLED_BACK,
        DeploymentState.FAILED,
    },
}


@dataclass
class ServiceInstance:
    instance_id: str
    service_name: str
    version: str
    environment_tag: EnvironmentTag = EnvironmentTag.STABLE
    health: Health = Health.UNKNOWN
    last_probe_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    metadata: Dict = field(default_factory=dict)  # e.g. {"address": "http://10.0.0.4:8080"}


@dataclass(frozen=True)
class HealthSample:
    instance_id: str
    success: bool
    latency_ms: float
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TrafficPolicy:
    """One published revision of a service's traffic split"""
    service_name: str
    weights: Dict[EnvironmentTag, int]
    revision: int

    def weight(self, tag):
        return self.weights.get(tag, 0)


@dataclass
class RolloutStep:
    """A strategy's decision for one tick, applied by the controller"""
    next_weights: Optional[Dict[EnvironmentTag, int]] = None  # None means no commit
    wait_before_evaluate: float = 0.0
    abort: bool = False
    state: Optional[DeploymentState] = None  # None keeps the current state
    provision: int = 0  # candidate instances to create
    retire: List[str] = field(default_factory=list)  # instance ids, retired after the commit
    promote: bool = False  # re-tag candidates as stable and reset weights to 100/0
    progress: Dict = field(default_factory=dict)  # merged into deployment.progress
    reason: str = ""

    @property
    def has_effects(self):
        return bool(self.next_weights is not None or self.provision or self.retire
                    or self.promote or self.progress or self.abort)

    @classmethod
    def aborting(cls, reason):
        return cls(abort=True, reason=reason)

    def to_dict(self):
        data = asdict(self)
        if self.next_weights is not None:
            data["next_weights"] = {tag.value: w for tag, w in self.next_weights.items()}
        data["state"] = self.state.value if self.state else None
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        if data.get("next_weights") is not None:
            data["next_weights"] = {EnvironmentTag(t): w for t, w in data["next_weights"].items()}
        if data.get("state"):
            data["state"] = DeploymentState(data["state"])
        data["retire"] = list(data.get("retire") or [])
        data["progress"] = dict(data.get("progress") or {})
        return cls(**data)


@dataclass
class HealthSnapshot:
    """What a strategy sees when it decides: copies, never live registry objects"""
    now: float
    stable: List[ServiceInstance] = field(default_factory=list)
    candidate: List[ServiceInstance] = field(default_factory=list)
    error_rates: Dict[EnvironmentTag, float] = field(default_factory=dict)
    weights: Dict[EnvironmentTag, int] = field(default_factory=dict)
    revision: int = 0

    def healthy(self, tag):
        return [i for i in self._population(tag) if i.health == Health.HEALTHY]

    def unhealthy(self, tag):
        return [i for i in self._population(tag) if i.health == Health.UNHEALTHY]

    def error_rate(self, tag):
        return self.error_rates.get(tag, 0.0)

    def _population(self, tag):
        return self.stable if tag == EnvironmentTag.STABLE else self.candidate


@dataclass
class DeploymentRequest:
    service_name: str
    target_version: str
    strategy_kind: StrategyKind
    strategy_params: Dict = field(default_factory=dict)

    def __post_init__(self):
        self.strategy_kind = StrategyKind(self.strategy_kind)


def _copy_effects(effects):
    return {k: list(v) if isinstance(v, list) else v for k, v in effects.items()}


@dataclass
class Transition:
    """One write-ahead history entry: the intent, and whether it was applied"""
    seq: int
    deployment_id: str
    from_state: DeploymentState
    to_state: DeploymentState
    step: RolloutStep
    reason: str = ""
    applied: bool = False
    effects: Dict = field(default_factory=dict)  # provisioned ids, committed revision, retired ids
    error: Optional[str] = None  # set when applying failed and the intent was abandoned
    recorded_at: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "seq": self.seq,
            "deployment_id": self.deployment_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "step": self.step.to_dict(),
            "reason": self.reason,
            "applied": self.applied,
            "effects": _copy_effects(self.effects),
            "error": self.error,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            seq=data["seq"],
            deployment_id=data["deployment_id"],
            from_state=DeploymentState(data["from_state"]),
            to_state=DeploymentState(data["to_state"]),
            step=RolloutStep.from_dict(data["step"]),
            reason=data.get("reason", ""),
            applied=data.get("applied", False),
            effects=_copy_effects(data.get("effects") or {}),
            error=data.get("error"),
            recorded_at=data.get("recorded_at", 0.0),
        )


@dataclass
class Deployment:
    deployment_id: str
    service_name: str
    target_version: str
    strategy_kind: StrategyKind
    strategy_params: Dict = field(default_factory=dict)
    state: DeploymentState = DeploymentState.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    history: List[Transition] = field(default_factory=list)
    progress: Dict = field(default_factory=dict)  # strategy cursor
    last_provisioned: List[str] = field(default_factory=list)
    next_evaluation_at: float = 0.0
    environment_label: str = "green"  # colour of the candidate population
    abort_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    acknowledged: bool = False  # an operator has seen the failure

    @property
    def active(self):
        return not self.state.terminal

    def pending_transitions(self):
        return [t for t in self.history if not t.applied and t.error is None]

    def committed_weights(self):
        """Weights of every commit this deployment made, in order"""
        return [t.step.next_weights for t in self.history if t.step.next_weights is not None]

    def to_dict(self):
        return {
            "deployment_id": self.deployment_id,
            "service_name": self.service_name,
            "target_version": self.target_version,
            "strategy_kind": self.strategy_kind.value,
            "strategy_params": dict(self.strategy_params),
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "environment_label": self.environment_label,
            "abort_reason": self.abort_reason,
            "failure_reason": self.failure_reason,
            "acknowledged": self.acknowledged,
            "progress": dict(self.progress),
            "last_provisioned": list(self.last_provisioned),
            "history": [t.to_dict() for t in self.history],
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            deployment_id=data["deployment_id"],
            service_name=data["service_name"],
            target_version=data["target_version"],
            strategy_kind=StrategyKind(data["strategy_kind"]),
            strategy_params=dict(data.get("strategy_params") or {}),
            state=DeploymentState(data.get("state", DeploymentState.PENDING.value)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            history=[Transition.from_dict(t) for t in data.get("history", [])],
            progress=dict(data.get("progress") or {}),
            last_provisioned=list(data.get("last_provisioned") or []),
            environment_label=data.get("environment_label", "green"),
            abort_reason=data.get("abort_reason"),
            failure_reason=data.get("failure_reason"),
            acknowledged=data.get("acknowledged", False),
        )
