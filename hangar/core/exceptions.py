"""Custom exception hierarchy for hangar.

All hangar-specific exceptions inherit from HangarError, enabling
callers to catch every provisioning failure with a single except clause.
IaaS failures are further split by how callers should react to them.
"""

from __future__ import annotations


class HangarError(Exception):
    """Base exception for all hangar errors."""


class ConfigurationError(HangarError):
    """Raised for invalid configuration or missing required settings."""


class InvalidArgument(HangarError, ValueError):
    """Raised by the pipeline step for unknown clouds or templates."""


class CloudNotFound(HangarError, LookupError):
    """Raised when no cloud has the requested display name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No cloud named '{name}'")


class InvalidKey(HangarError):
    """Raised when a PEM private key cannot be parsed."""


class DecryptFailed(HangarError):
    """Raised when a Windows password blob cannot be decrypted."""


class InvalidTemplate(HangarError):
    """Raised when a template cannot produce a valid launch request."""


class CapacityExhausted(HangarError):
    """Raised when a launch would exceed the template or cloud cap."""

    def __init__(self, scope: str, live: int, requested: int, cap: int) -> None:
        self.scope = scope
        self.live = live
        self.requested = requested
        self.cap = cap
        super().__init__(
            f"{scope} cap reached: {live} live + {requested} requested > {cap}"
        )


# =============================================================================
# IaaS errors
# =============================================================================


class IaasError(HangarError):
    """Raised when an EC2 API call fails."""

    retryable: bool = False

    def __init__(self, message: str, code: str | None = None, operation: str | None = None) -> None:
        self.code = code
        self.operation = operation
        super().__init__(message)


class IaasTransient(IaasError):
    """Server-side or network failure worth retrying."""

    retryable = True


class IaasThrottled(IaasError):
    """Request rate exceeded."""

    retryable = True


class IaasPermanent(IaasError):
    """Request rejected; retrying will not help."""


class IaasNotFound(IaasPermanent):
    """Referenced resource does not exist."""


class AuthFailed(IaasPermanent):
    """Credentials rejected by EC2 or by the instance's SSH daemon."""


class InsufficientCapacity(IaasPermanent):
    """The availability zone behind a subnet has no capacity for the type."""

    def __init__(self, message: str, subnet_id: str | None = None, **kwargs: str | None) -> None:
        self.subnet_id = subnet_id
        super().__init__(message, **kwargs)


# =============================================================================
# Lifecycle errors
# =============================================================================


class BootTimeout(HangarError):
    """Instance did not reach the running state in time."""


class SshTimeout(HangarError):
    """SSH port did not answer before the boot timeout."""


class BootstrapFailed(HangarError):
    """Agent upload or start failed on the instance."""

    def __init__(self, instance_id: str, reason: str) -> None:
        self.instance_id = instance_id
        self.reason = reason
        super().__init__(f"Bootstrap of {instance_id} failed: {reason}")


class HostKeyRejected(BootstrapFailed):
    """Host key verification policy refused the server key."""


class Cancelled(HangarError):
    """Operation interrupted by an explicit terminate request."""
