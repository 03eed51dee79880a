"""Clouds, templates and instance records.

Configuration objects are immutable; an ``InstanceRecord`` is the single
mutable value describing one EC2 instance the cloud is responsible for.
"""

from __future__ import annotations

import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum, StrEnum
from typing import Final
from urllib.parse import urlparse

from hangar import constants
from hangar.core.exceptions import InvalidTemplate


# =============================================================================
# Enums
# =============================================================================


class LaunchState(StrEnum):
    """Lifecycle state of an instance record."""

    PENDING = "pending"
    BOOTING = "booting"
    CONNECTING = "connecting"
    ONLINE = "online"
    STOPPING = "stopping"
    RESUMABLE = "resumable"
    FAILED = "failed"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


TERMINAL_STATES: Final = frozenset({LaunchState.TERMINATED, LaunchState.FAILED})
IN_FLIGHT_STATES: Final = frozenset({
    LaunchState.PENDING,
    LaunchState.BOOTING,
    LaunchState.CONNECTING,
    LaunchState.ONLINE,
})

TRANSITIONS: Final[dict[LaunchState, frozenset[LaunchState]]] = {
    LaunchState.PENDING: frozenset({LaunchState.BOOTING, LaunchState.FAILED, LaunchState.TERMINATING}),
    LaunchState.BOOTING: frozenset({LaunchState.CONNECTING, LaunchState.FAILED, LaunchState.TERMINATING}),
    LaunchState.CONNECTING: frozenset({LaunchState.ONLINE, LaunchState.FAILED, LaunchState.TERMINATING}),
    LaunchState.ONLINE: frozenset({LaunchState.STOPPING, LaunchState.TERMINATING}),
    LaunchState.STOPPING: frozenset({LaunchState.RESUMABLE, LaunchState.TERMINATING}),
    LaunchState.RESUMABLE: frozenset({LaunchState.PENDING, LaunchState.TERMINATING}),
    LaunchState.FAILED: frozenset({LaunchState.TERMINATING}),
    LaunchState.TERMINATING: frozenset({LaunchState.TERMINATED}),
    LaunchState.TERMINATED: frozenset(),
}


def can_transition(current: LaunchState, new: LaunchState) -> bool:
    return new in TRANSITIONS[current]


class Flavor(StrEnum):
    ONDEMAND = "ondemand"
    SPOT = "spot"


class UsageMode(StrEnum):
    NORMAL = "NORMAL"
    EXCLUSIVE = "EXCLUSIVE"


class ConnectionStrategy(StrEnum):
    PUBLIC_DNS = "PUBLIC_DNS"
    PRIVATE_DNS = "PRIVATE_DNS"
    PRIVATE_IP = "PRIVATE_IP"
    PUBLIC_IP = "PUBLIC_IP"


class HostKeyPolicy(StrEnum):
    CHECK_NEW_HARD = "CHECK_NEW_HARD"
    CHECK_NEW_SOFT = "CHECK_NEW_SOFT"
    ACCEPT_NEW = "ACCEPT_NEW"
    OFF = "OFF"


class ProvisionOption(Enum):
    ALLOW_CREATE = "allow_create"
    FORCE_CREATE = "force_create"
    FAIL_FAST = "fail_fast"


# =============================================================================
# Configuration values
# =============================================================================


@dataclass(frozen=True, slots=True)
class Credentials:
    """How the cloud authenticates against EC2.

    With neither keys nor a profile, the default chain (instance role,
    environment) is used.
    """

    access_key_id: str | None = None
    secret_access_key: str | None = None
    profile: str | None = None

    @property
    def source(self) -> str:
        if self.access_key_id:
            return "static"
        if self.profile:
            return "profile"
        return "instance-role"


@dataclass(frozen=True, slots=True)
class Timeouts:
    """Lifecycle timings in seconds."""

    iaas_call: float = constants.IAAS_CALL_TIMEOUT
    running: float = constants.RUNNING_TIMEOUT
    boot: float = constants.BOOT_TIMEOUT
    ssh_probe_interval: float = constants.SSH_PROBE_INTERVAL
    launch: float = constants.LAUNCH_TIMEOUT
    ssh_handshake: float = constants.SSH_HANDSHAKE_TIMEOUT
    scp: float = constants.SCP_TIMEOUT
    remote_command: float = constants.REMOTE_COMMAND_TIMEOUT
    reaper: float = constants.REAPER_TIMEOUT
    eviction_grace: float = constants.EVICTION_GRACE
    reconcile_interval: float = constants.RECONCILE_INTERVAL
    idle_check_interval: float = constants.IDLE_CHECK_INTERVAL
    state_poll_interval: float = constants.STATE_POLL_INTERVAL
    max_attempts: int = constants.MAX_ATTEMPTS


@dataclass(frozen=True, slots=True)
class SpotConfig:
    """Spot market settings for a template.

    Args:
        max_bid: Maximum hourly price as a decimal string. None bids the on-demand price.
        persistent: Persistent requests relaunch after interruption.
        product: Product description, e.g. "Linux/UNIX".
        host_type: Tenancy of the launched instance ("default", "dedicated", "host").
        spot_only: Never fall back to on-demand templates for the same label.
    """

    max_bid: str | None = None
    persistent: bool = False
    product: str = "Linux/UNIX"
    host_type: str = "default"
    spot_only: bool = False


@dataclass(frozen=True, slots=True)
class BlockDevice:
    """Block-device mapping override, keyed by device name."""

    device_name: str
    volume_size: int | None = None
    volume_type: str | None = None
    delete_on_termination: bool = True
    encrypted: bool | None = None
    virtual_name: str | None = None
    no_device: bool = False

    def to_mapping(self) -> dict[str, object]:
        if self.no_device:
            return {"DeviceName": self.device_name, "NoDevice": ""}
        if self.virtual_name:
            return {"DeviceName": self.device_name, "VirtualName": self.virtual_name}
        ebs: dict[str, object] = {"DeleteOnTermination": self.delete_on_termination}
        if self.volume_size is not None:
            ebs["VolumeSize"] = self.volume_size
        if self.volume_type is not None:
            ebs["VolumeType"] = self.volume_type
        if self.encrypted is not None:
            ebs["Encrypted"] = self.encrypted
        return {"DeviceName": self.device_name, "Ebs": ebs}


@dataclass(frozen=True, slots=True)
class Template:
    """Plan for one class of build agent.

    Example:
        >>> Template(ami="ami-0abc", instance_type="t3.large", labels="linux docker")
    """

    ami: str
    instance_type: str
    labels: str = ""
    id: str = ""
    description: str = ""
    zone: str = "any"
    subnets: tuple[str, ...] = ()
    security_groups: tuple[str, ...] = ()
    key_pair_name: str | None = None
    iam_instance_profile: str | None = None
    tags: tuple[tuple[str, str], ...] = ()
    user_data: str = ""
    instance_cap: int = constants.UNLIMITED
    mode: UsageMode = UsageMode.NORMAL
    idle_termination_minutes: int = 30
    spot: SpotConfig | None = None
    block_devices: tuple[BlockDevice, ...] = ()
    connection_strategy: ConnectionStrategy = ConnectionStrategy.PRIVATE_IP
    remote_user: str = "ec2-user"
    ssh_port: int = 22
    host_key_policy: HostKeyPolicy = HostKeyPolicy.CHECK_NEW_SOFT
    windows: bool = False
    windows_password: str | None = None
    stop_on_terminate: bool = False
    remote_fs: str = constants.DEFAULT_REMOTE_FS
    agent_command: str = ""
    init_script: str = ""
    num_executors: int = 1
    associate_public_ip: bool = False
    ebs_optimized: bool = False
    monitoring: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            first = self.label_list[0] if self.label_list else f"{self.ami}-{self.instance_type}"
            object.__setattr__(self, "id", first)

    @property
    def label_list(self) -> tuple[str, ...]:
        return tuple(self.labels.split())

    @property
    def display_label(self) -> str:
        return self.label_list[0] if self.label_list else self.id

    @property
    def flavor(self) -> Flavor:
        return Flavor.SPOT if self.spot is not None else Flavor.ONDEMAND

    @property
    def tag_map(self) -> dict[str, str]:
        return dict(self.tags)

    @property
    def agent_path(self) -> str:
        return f"{self.remote_fs.rstrip('/')}/{constants.DEFAULT_AGENT_JAR}"

    def matches(self, label: str | None) -> bool:
        """Whether this template can serve demand for ``label``.

        Unlabelled demand is served only by NORMAL templates.
        """
        if not label:
            return self.mode == UsageMode.NORMAL
        return label in self.label_list

    def validate(self) -> None:
        """Raise InvalidTemplate for values EC2 would reject anyway."""
        if not self.ami.strip():
            raise InvalidTemplate(f"Template '{self.id}' has no AMI")
        if not self.instance_type.strip():
            raise InvalidTemplate(f"Template '{self.id}' has no instance type")
        if self.instance_cap < 0:
            raise InvalidTemplate(f"Template '{self.id}' has a negative instance cap")
        if self.ssh_port <= 0 or self.ssh_port > 65535:
            raise InvalidTemplate(f"Template '{self.id}' has invalid SSH port {self.ssh_port}")
        if self.spot is not None and self.spot.max_bid is not None:
            try:
                bid = Decimal(self.spot.max_bid)
            except InvalidOperation as e:
                raise InvalidTemplate(
                    f"Template '{self.id}' has invalid spot bid '{self.spot.max_bid}'"
                ) from e
            if bid <= 0:
                raise InvalidTemplate(f"Template '{self.id}' spot bid must be positive")


@dataclass(frozen=True, slots=True)
class CloudConfig:
    """Credentialed endpoint into one EC2 region."""

    name: str
    region: str = "us-east-1"
    endpoint_url: str | None = None
    credentials: Credentials = field(default_factory=Credentials)
    instance_cap: int = constants.UNLIMITED
    templates: tuple[Template, ...] = ()
    private_key: str = field(default="", repr=False)
    proxy: str | None = None
    no_delay_provisioning: bool = False
    controller_url: str = "http://localhost:8080/"
    timeouts: Timeouts = field(default_factory=Timeouts)

    @property
    def owner_tag(self) -> str:
        """Value of the owner tag identifying this controller's instances."""
        host = urlparse(self.controller_url).hostname or self.controller_url
        return f"{constants.OWNER_TAG_PREFIX}{host}"

    def template(self, template_id: str) -> Template | None:
        return next((t for t in self.templates if t.id == template_id), None)


# =============================================================================
# Runtime records
# =============================================================================


class InstanceLog:
    """Bounded, append-only log for one instance.

    Returned by ``Node.get_log()``; failures append their full cause chain.
    """

    __slots__ = ("_lines",)

    def __init__(self, max_lines: int = 2000) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)

    def append(self, message: str) -> None:
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        for line in message.splitlines() or [""]:
            self._lines.append(f"{stamp} {line}")

    def failure(self, message: str, error: BaseException) -> None:
        self.append(message)
        chain = "".join(traceback.format_exception(error)).rstrip()
        self.append(chain)

    def lines(self) -> list[str]:
        return list(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


@dataclass(slots=True, eq=False)
class InstanceRecord:
    """One EC2 instance (or open spot request) owned by a cloud."""

    instance_id: str
    template_id: str
    cloud_id: str
    flavor: Flavor = Flavor.ONDEMAND
    state: LaunchState = LaunchState.PENDING
    launch_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    iaas_state: str = constants.InstanceState.PENDING
    last_seen: float = field(default_factory=time.monotonic)
    endpoint: str | None = None
    public_dns: str | None = None
    private_dns: str | None = None
    public_ip: str | None = None
    private_ip: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    spot_request_id: str | None = None
    subnet_id: str | None = None
    attempts: int = 0
    retain_until: float | None = None
    labels: tuple[str, ...] = ()
    log: InstanceLog = field(default_factory=InstanceLog, repr=False)

    @property
    def awaiting_spot(self) -> bool:
        """Spot request not yet fulfilled; ``instance_id`` is the request id."""
        return self.spot_request_id is not None and self.instance_id == self.spot_request_id

    @property
    def short_id(self) -> str:
        return self.instance_id.removeprefix("i-").removeprefix("sir-")[:8]

    def transition(self, expected: LaunchState, new: LaunchState) -> bool:
        """Compare-and-set the lifecycle state.

        Returns False, leaving the record untouched, when the current state
        is not ``expected`` or the edge is not permitted.
        """
        if self.state != expected or not can_transition(expected, new):
            return False
        self.state = new
        self.log.append(f"state {expected} -> {new}")
        return True

    def observe(self, instance: dict[str, object]) -> None:
        """Refresh network attributes and EC2 state from a describe entry."""
        state = instance.get("State")
        if isinstance(state, dict) and state.get("Name"):
            self.iaas_state = str(state["Name"])
        self.public_dns = str(instance.get("PublicDnsName") or "") or None
        self.private_dns = str(instance.get("PrivateDnsName") or "") or None
        self.public_ip = str(instance.get("PublicIpAddress") or "") or None
        self.private_ip = str(instance.get("PrivateIpAddress") or "") or None
        tags = instance.get("Tags")
        if isinstance(tags, list):
            self.tags = {t["Key"]: t["Value"] for t in tags if isinstance(t, dict)}
        self.last_seen = time.monotonic()
