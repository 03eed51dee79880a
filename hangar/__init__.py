"""hangar - ephemeral EC2 build agents for a CI controller.

Example:

    from hangar import DemandLedger, EC2Cloud, resolve_clouds

    ledger = DemandLedger()
    clouds = [EC2Cloud(c, ledger=ledger) for c in resolve_clouds()]

    async with clouds[0]:
        receipt = ledger.request_capacity("linux", 2)
        ...
        ledger.release_capacity(receipt)
"""

# Logging (disabled until setup_logging is called)
from hangar.logging import LogConfig, setup_logging, teardown_logging

# Errors
from hangar.core.exceptions import (
    AuthFailed,
    BootstrapFailed,
    BootTimeout,
    CapacityExhausted,
    Cancelled,
    CloudNotFound,
    ConfigurationError,
    DecryptFailed,
    HangarError,
    IaasError,
    IaasPermanent,
    IaasThrottled,
    IaasTransient,
    InsufficientCapacity,
    InvalidArgument,
    InvalidKey,
    InvalidTemplate,
    SshTimeout,
)

# Model
from hangar.model import (
    BlockDevice,
    CloudConfig,
    ConnectionStrategy,
    Credentials,
    Flavor,
    HostKeyPolicy,
    InstanceRecord,
    LaunchState,
    ProvisionOption,
    SpotConfig,
    Template,
    Timeouts,
    UsageMode,
)

# Engine
from hangar.keys import PrivateKey
from hangar.cloud import EC2Cloud, get_by_display_name
from hangar.config import build_clouds, load_config, resolve_clouds
from hangar.demand import DemandLedger, Receipt
from hangar.node import Node, NodeChannel
from hangar.step import ProvisionedInstance, ec2

__all__ = [
    "AuthFailed",
    "BlockDevice",
    "BootTimeout",
    "BootstrapFailed",
    "Cancelled",
    "CapacityExhausted",
    "CloudConfig",
    "CloudNotFound",
    "ConfigurationError",
    "ConnectionStrategy",
    "Credentials",
    "DecryptFailed",
    "DemandLedger",
    "EC2Cloud",
    "Flavor",
    "HangarError",
    "HostKeyPolicy",
    "IaasError",
    "IaasPermanent",
    "IaasThrottled",
    "IaasTransient",
    "InstanceRecord",
    "InsufficientCapacity",
    "InvalidArgument",
    "InvalidKey",
    "InvalidTemplate",
    "LaunchState",
    "LogConfig",
    "Node",
    "NodeChannel",
    "PrivateKey",
    "ProvisionOption",
    "ProvisionedInstance",
    "Receipt",
    "SpotConfig",
    "SshTimeout",
    "Template",
    "Timeouts",
    "UsageMode",
    "build_clouds",
    "ec2",
    "get_by_display_name",
    "load_config",
    "resolve_clouds",
    "setup_logging",
    "teardown_logging",
]
