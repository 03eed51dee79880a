"""Centralized constants and enums for hangar.

All magic strings and default timings are defined here to ensure
consistency and enable type-safe usage throughout the codebase.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class HangarTag(StrEnum):
    """AWS resource tag keys used by hangar."""

    OWNER = "jenkins_slave_type"
    TEMPLATE = "hangar_template"
    NAME = "Name"


OWNER_TAG_PREFIX: Final = "demand_"


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    RUNNING = "running"
    STOPPED = "stopped"
    PENDING = "pending"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    SHUTTING_DOWN = "shutting-down"


GONE_STATES: Final = frozenset({InstanceState.TERMINATED, InstanceState.SHUTTING_DOWN})
KNOWN_ROOT_DEVICE_TYPES: Final = frozenset({"ebs", "instance-store"})


# =============================================================================
# Limits
# =============================================================================

SPOT_PAGE_MIN: Final = 5
SPOT_PAGE_MAX: Final = 1000
DEFAULT_SPOT_PAGE: Final = 100
UNLIMITED: Final = 2**31 - 1


# =============================================================================
# Timeouts (in seconds)
# =============================================================================

IAAS_CALL_TIMEOUT: Final = 30.0
RUNNING_TIMEOUT: Final = 300.0
BOOT_TIMEOUT: Final = 180.0
SSH_PROBE_INTERVAL: Final = 15.0
LAUNCH_TIMEOUT: Final = 300.0
SSH_HANDSHAKE_TIMEOUT: Final = 30.0
SCP_TIMEOUT: Final = 300.0
REMOTE_COMMAND_TIMEOUT: Final = 3600.0
REAPER_TIMEOUT: Final = 300.0
EVICTION_GRACE: Final = 120.0
RECONCILE_INTERVAL: Final = 10.0
IDLE_CHECK_INTERVAL: Final = 60.0
STATE_POLL_INTERVAL: Final = 5.0
MAX_ATTEMPTS: Final = 3


# =============================================================================
# Remote paths
# =============================================================================

INIT_MARKER: Final = "~/.hangar-run-init"
DEFAULT_REMOTE_FS: Final = "/tmp/hangar"
DEFAULT_AGENT_JAR: Final = "agent.jar"
