"""SSH bootstrap of build agents."""

from .host_keys import HostKey, HostKeyStore, parse_console_host_keys
from .launcher import AgentSession, Launcher, SSHLauncher, resolve_endpoint, wait_completion

__all__ = [
    "AgentSession",
    "HostKey",
    "HostKeyStore",
    "Launcher",
    "SSHLauncher",
    "parse_console_host_keys",
    "resolve_endpoint",
    "wait_completion",
]
