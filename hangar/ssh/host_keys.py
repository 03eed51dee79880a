"""Host-key verification for freshly booted instances.

EC2 prints the instance's SSH host keys to the console between
``-----BEGIN SSH HOST KEY KEYS-----`` markers on first boot. Those keys are
the only out-of-band source of truth; everything else is trust-on-first-use
pinning kept in a ``HostKeyStore``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

import asyncssh
from loguru import logger

from hangar.core.exceptions import HostKeyRejected
from hangar.model import HostKeyPolicy

log = logger.bind(component="host-keys")

BEGIN_KEYS: Final = "-----BEGIN SSH HOST KEY KEYS-----"
END_KEYS: Final = "-----END SSH HOST KEY KEYS-----"

_KEY_LINE = re.compile(r"(?:^|\s)((?:ssh|ecdsa)-[\w@.-]+)\s+([A-Za-z0-9+/=]{20,})")


@dataclass(frozen=True, slots=True)
class HostKey:
    algorithm: str
    data: str

    @property
    def openssh(self) -> str:
        return f"{self.algorithm} {self.data}"


def parse_console_host_keys(console: str) -> list[HostKey]:
    """Host keys advertised between the console key markers.

    Lines may carry a ``ec2:`` prefix; anything that does not look like an
    OpenSSH public key line is ignored.
    """
    keys: list[HostKey] = []
    inside = False
    for line in console.splitlines():
        if BEGIN_KEYS in line:
            inside = True
            continue
        if END_KEYS in line:
            inside = False
            continue
        if not inside:
            continue
        match = _KEY_LINE.search(line)
        if match:
            key = HostKey(match.group(1), match.group(2))
            if key not in keys:
                keys.append(key)
    return keys


def known_hosts_for(keys: list[HostKey]) -> asyncssh.SSHKnownHosts:
    lines = "\n".join(f"* {k.openssh}" for k in keys) + "\n"
    return asyncssh.import_known_hosts(lines)


class HostKeyStore:
    """Pinned host keys, by instance id."""

    def __init__(self) -> None:
        self._pinned: dict[str, HostKey] = {}

    def get(self, instance_id: str) -> HostKey | None:
        return self._pinned.get(instance_id)

    def pin(self, instance_id: str, key: HostKey) -> None:
        current = self._pinned.get(instance_id)
        if current is not None and current != key:
            raise HostKeyRejected(
                instance_id, f"host key changed from {current.algorithm} to {key.algorithm} key"
            )
        self._pinned[instance_id] = key

    def forget(self, instance_id: str) -> None:
        self._pinned.pop(instance_id, None)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._pinned


@dataclass(frozen=True, slots=True)
class Verification:
    """How to verify one connection.

    ``known_hosts`` is None when the server key is accepted unchecked; in
    that case ``pin_after_connect`` tells the caller to pin whatever key the
    server presented.
    """

    known_hosts: asyncssh.SSHKnownHosts | None
    pin_after_connect: bool


def plan_verification(
    policy: HostKeyPolicy,
    instance_id: str,
    console_keys: list[HostKey],
    store: HostKeyStore,
) -> Verification:
    """Decide how the server key is checked under ``policy``.

    Raises:
        HostKeyRejected: CHECK_NEW_HARD with no key on the console.
    """
    pinned = store.get(instance_id)
    match policy:
        case HostKeyPolicy.OFF:
            log.warning("Host key verification disabled for {iid}", iid=instance_id)
            return Verification(None, pin_after_connect=False)
        case HostKeyPolicy.CHECK_NEW_HARD:
            if not console_keys:
                raise HostKeyRejected(instance_id, "no host key advertised on the console")
            return Verification(known_hosts_for(console_keys), pin_after_connect=True)
        case HostKeyPolicy.CHECK_NEW_SOFT:
            if console_keys:
                return Verification(known_hosts_for(console_keys), pin_after_connect=True)
            if pinned is not None:
                return Verification(known_hosts_for([pinned]), pin_after_connect=False)
            log.info("No console host key for {iid}, trusting first use", iid=instance_id)
            return Verification(None, pin_after_connect=True)
        case HostKeyPolicy.ACCEPT_NEW:
            if pinned is not None:
                return Verification(known_hosts_for([pinned]), pin_after_connect=False)
            return Verification(None, pin_after_connect=True)
        case _:
            raise ValueError(f"Unknown host key policy: {policy}")


def host_key_of(key: asyncssh.SSHKey) -> HostKey:
    algorithm, data = key.export_public_key("openssh").decode().split()[:2]
    return HostKey(algorithm, data)
