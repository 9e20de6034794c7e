"""Domain errors raised by the deployment engine.

A remote command exiting non-zero is not an error here: it comes back as a
CommandResult and the caller decides what it means.
"""
from typing import Dict, Optional


class DeploymentError(Exception):
    """Base class for deployment engine errors."""


class ConnectivityError(DeploymentError):
    """The managed host could not be reached, even after reconnecting."""


class QuotaExceeded(DeploymentError):
    def __init__(self, role: str, limits: Dict[str, int], message: Optional[str] = None):
        self.role = role
        self.limits = limits
        super().__init__(
            message
            or f"Your plan allows {limits.get(f'max_{role}', 0)} {role} deployment(s). Please upgrade your plan."
        )


class PortExhausted(DeploymentError):
    def __init__(self, range_min: int, range_max: int):
        self.range_min = range_min
        self.range_max = range_max
        super().__init__(f"No free port available in range {range_min}-{range_max}")


class SubdomainExhausted(DeploymentError):
    """Could not produce an unused subdomain within the allowed number of attempts."""


class SubdomainTaken(DeploymentError):
    """Insert hit the unique constraint on deployments.subdomain."""


class BuildRpcFailure(DeploymentError):
    """The remote build/start tool reported failure."""


class VerificationInconclusive(DeploymentError):
    """Process is online but its listening port could not be confirmed."""


class ProxyProvisioningFailure(DeploymentError):
    """Reverse proxy config was invalid or nginx could not be reloaded."""
