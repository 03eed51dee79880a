"""Build agents as the controller sees them."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from hangar.model import InstanceRecord, Template


class Session(Protocol):
    async def read(self, n: int = ...) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def wait(self, timeout: float) -> int: ...

    async def close(self) -> None: ...

    @property
    def closed(self) -> bool: ...


class NodeChannel:
    """Bidirectional byte stream to the agent process (its stdin and stdout)."""

    __slots__ = ("_session",)

    def __init__(self, session: Session) -> None:
        self._session = session

    async def read(self, n: int = 65536) -> bytes:
        return await self._session.read(n)

    async def write(self, data: bytes) -> None:
        await self._session.write(data)

    async def close(self) -> None:
        await self._session.close()

    @property
    def closed(self) -> bool:
        return self._session.closed


class Node:
    """An online agent backed by one EC2 instance.

    The controller reports work through ``mark_busy``/``mark_idle``; the
    launch state machine reads ``idle_seconds`` to decide when to stop or
    terminate the instance.
    """

    def __init__(
        self,
        record: InstanceRecord,
        template: Template,
        session: Session,
        on_disconnect: Callable[[str], None],
    ) -> None:
        self._record = record
        self._template = template
        self._session = session
        self._on_disconnect = on_disconnect
        self._channel = NodeChannel(session)
        self._busy = 0
        self._idle_since = time.monotonic()

    @property
    def name(self) -> str:
        title = self._template.description or self._template.display_label
        return f"EC2 ({self._record.cloud_id}) - {title} ({self._record.instance_id})"

    @property
    def instance_id(self) -> str:
        return self._record.instance_id

    @property
    def labels(self) -> tuple[str, ...]:
        return self._record.labels

    @property
    def num_executors(self) -> int:
        return self._template.num_executors

    @property
    def channel(self) -> NodeChannel:
        return self._channel

    @property
    def session(self) -> Session:
        return self._session

    def disconnect(self, cause: str) -> None:
        """Take the node offline; the instance is terminated."""
        self._record.log.append(f"disconnect requested: {cause}")
        self._on_disconnect(cause)

    def get_log(self) -> str:
        return self._record.log.text()

    def mark_busy(self) -> None:
        self._busy += 1

    def mark_idle(self) -> None:
        self._busy = max(0, self._busy - 1)
        if self._busy == 0:
            self._idle_since = time.monotonic()

    @property
    def busy(self) -> bool:
        return self._busy > 0

    def idle_seconds(self, now: float | None = None) -> float:
        if self._busy:
            return 0.0
        now = time.monotonic() if now is None else now
        return max(0.0, now - self._idle_since)

    def __repr__(self) -> str:
        return f"Node({self.name!r}, labels={' '.join(self.labels)!r})"
