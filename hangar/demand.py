"""Capacity requests from the CI controller."""

from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from hangar.core.exceptions import InvalidArgument
from hangar.node import Node

log = logger.bind(component="demand")

type NodeSource = Callable[[], Iterable[Node]]
type DemandListener = Callable[[str | None], None]


@dataclass(frozen=True, slots=True)
class Receipt:
    """Handle for one outstanding capacity request."""

    label: str | None
    count: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DemandLedger:
    """Outstanding ``(label, count)`` demand, summed over open receipts.

    Example:
        >>> ledger = DemandLedger()
        >>> receipt = ledger.request_capacity("linux", 2)
        >>> ledger.outstanding()
        {'linux': 2}
        >>> ledger.release_capacity(receipt)
    """

    def __init__(self) -> None:
        self._receipts: dict[str, Receipt] = {}
        self._sources: list[NodeSource] = []
        self._listeners: list[DemandListener] = []

    def attach(self, source: NodeSource) -> None:
        """Register a provider of online nodes (normally a cloud)."""
        self._sources.append(source)

    def subscribe(self, listener: DemandListener) -> None:
        self._listeners.append(listener)

    def request_capacity(self, label: str | None, count: int) -> Receipt:
        if count <= 0:
            raise InvalidArgument(f"Capacity request for {label!r} must be positive, got {count}")
        receipt = Receipt(label=label or None, count=count)
        self._receipts[receipt.id] = receipt
        log.debug("Demand +{n} for {label} ({id})", n=count, label=label, id=receipt.id)
        for listener in self._listeners:
            listener(receipt.label)
        return receipt

    def release_capacity(self, receipt: Receipt) -> None:
        """Withdraw a request; releasing twice is a no-op."""
        if self._receipts.pop(receipt.id, None) is not None:
            log.debug("Demand -{n} for {label} ({id})", n=receipt.count, label=receipt.label, id=receipt.id)

    def outstanding(self) -> dict[str | None, int]:
        totals: Counter[str | None] = Counter()
        for receipt in self._receipts.values():
            totals[receipt.label] += receipt.count
        return dict(totals)

    def list_online_nodes(self) -> list[Node]:
        return [node for source in self._sources for node in source()]

    def __len__(self) -> int:
        return len(self._receipts)
