class DeploymentError(Exception):
    """Base class for every error raised by the orchestrator"""


class ProvisionError(DeploymentError):
    """The provisioner could not create or destroy an instance"""


class ProbeError(DeploymentError):
    """A single health check failed to complete (timeout, transport failure)"""


class InvalidPolicy(DeploymentError):
    """A traffic split that must not be published"""


class ConflictingDeployment(DeploymentError):
    def __init__(self, service_name, active_id):
        super().__init__(f"service {service_name!r} already has active deployment {active_id}")
        self.service_name = service_name
        self.active_id = active_id


class RollbackFailure(DeploymentError):
    """Rollback could not restore weights or retire candidates; needs an operator"""


class DuplicateInstance(DeploymentError):
    pass


class UnknownInstance(DeploymentError):
    pass


class UnknownDeployment(DeploymentError):
    pass
