from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error raised by the control plane."""


class NotFound(OrchestratorError):
    """Unknown service, instance or deployment."""


class NoHealthyInstances(NotFound):
    """A service exists but has nothing routable right now."""


class CircuitOpen(OrchestratorError):
    def __init__(self, service_id: str, retry_after_s: float | None = None):
        self.service_id = service_id
        self.retry_after_s = retry_after_s
        msg = f"Circuit breaker is open for service '{service_id}'"
        if retry_after_s is not None:
            msg += f", retry after {retry_after_s:.0f}s"
        super().__init__(msg)


class ProvisioningFailure(OrchestratorError):
    """Instance creation/removal failed after bounded retries."""


class HealthCheckTimeout(OrchestratorError):
    """A probe did not answer within the service's health-check timeout."""


class DeploymentConflict(OrchestratorError):
    """A deployment is already pending or in progress for the service."""


class DeploymentFailed(OrchestratorError):
    """A rollout step failed; the deployment is marked failed."""
