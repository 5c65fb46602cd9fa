from .models import (
    EnvironmentTag, Health, StrategyKind, DeploymentState, ServiceInstance, HealthSample,
    TrafficPolicy, RolloutStep, HealthSnapshot, DeploymentRequest, Deployment, Transition
)
from .errors import (
    DeploymentError, ProvisionError, ProbeError, InvalidPolicy, ConflictingDeployment,
    RollbackFailure, DuplicateInstance, UnknownInstance, UnknownDeployment
)
from .config import ProbeConfig, ControllerConfig, RollingParams, BlueGreenParams, CanaryParams
from .registry import InstanceRegistry
from .health import HealthAggregator, HealthProbe, HealthChecker, HttpHealthChecker, SimulatedHealthChecker
from .traffic import TrafficPolicyStore
from .audit import AuditTrail, JsonLinesSink, LoggingSink
from .strategy import RolloutStrategy
from .rolling import RollingStrategy
from .blue_green import BlueGreenStrategy
from .canary import CanaryStrategy
from .provisioner import Provisioner, InMemoryProvisioner
from .failure import FailureInjector
from .controller import DeploymentController

__all__ = [
    "EnvironmentTag", "Health", "StrategyKind", "DeploymentState", "ServiceInstance",
    "HealthSample", "TrafficPolicy", "RolloutStep", "HealthSnapshot", "DeploymentRequest",
    "Deployment", "Transition",
    "DeploymentError", "ProvisionError", "ProbeError", "InvalidPolicy", "ConflictingDeployment",
    "RollbackFailure", "DuplicateInstance", "UnknownInstance", "UnknownDeployment",
    "ProbeConfig", "ControllerConfig", "RollingParams", "BlueGreenParams", "CanaryParams",
    "InstanceRegistry", "HealthAggregator", "HealthProbe", "HealthChecker", "HttpHealthChecker",
    "SimulatedHealthChecker", "TrafficPolicyStore", "AuditTrail", "JsonLinesSink", "LoggingSink",
    "RolloutStrategy", "RollingStrategy", "BlueGreenStrategy", "CanaryStrategy",
    "Provisioner", "InMemoryProvisioner", "FailureInjector", "DeploymentController"
]
