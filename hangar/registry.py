"""In-memory registry of instance records.

Records are keyed by instance id with secondary indexes by template,
lifecycle state and label. Writes to one key are serialised with a
per-key lock; different keys proceed concurrently.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from hangar.constants import EVICTION_GRACE, GONE_STATES, HangarTag
from hangar.model import (
    TERMINAL_STATES,
    Flavor,
    InstanceRecord,
    LaunchState,
    Template,
)

log = logger.bind(component="registry")

type StateListener = Callable[[InstanceRecord, str, str], None]


@dataclass(frozen=True, slots=True)
class RemoteSnapshot:
    """Describe results collected before a reconcile pass mutates anything.

    Attributes:
        instances: Instances carrying this controller's owner tag.
        spot_requests: Spot requests carrying the owner tag.
        taken_at: Monotonic time the snapshot was collected.
    """

    instances: tuple[dict[str, Any], ...] = ()
    spot_requests: tuple[dict[str, Any], ...] = ()
    taken_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    evicted: tuple[str, ...] = ()
    adopted: tuple[InstanceRecord, ...] = ()
    orphans: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    rekeyed: tuple[tuple[str, str], ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.evicted or self.adopted or self.orphans or self.updated or self.rekeyed)


class InstanceRegistry:
    """Local view of every instance a cloud is responsible for.

    Example:
        >>> registry = InstanceRegistry("prod", templates)
        >>> await registry.add(record)
        >>> registry.count_live()
        1
    """

    def __init__(
        self,
        cloud_id: str,
        templates: Iterable[Template],
        *,
        grace: float = EVICTION_GRACE,
    ) -> None:
        self.cloud_id = cloud_id
        self._templates = {t.id: t for t in templates}
        self._grace = grace
        self._records: dict[str, InstanceRecord] = {}
        self._by_template: defaultdict[str, set[str]] = defaultdict(set)
        self._by_state: defaultdict[LaunchState, set[str]] = defaultdict(set)
        self._by_label: defaultdict[str, set[str]] = defaultdict(set)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: list[StateListener] = []

    # -------------------------------------------------------------------------
    # Index maintenance
    # -------------------------------------------------------------------------

    def _index(self, record: InstanceRecord) -> None:
        iid = record.instance_id
        self._by_template[record.template_id].add(iid)
        self._by_state[record.state].add(iid)
        for label in record.labels:
            self._by_label[label].add(iid)

    def _unindex(self, record: InstanceRecord) -> None:
        iid = record.instance_id
        self._by_template[record.template_id].discard(iid)
        for ids in self._by_state.values():
            ids.discard(iid)
        for label in record.labels:
            self._by_label[label].discard(iid)

    def template(self, template_id: str) -> Template | None:
        return self._templates.get(template_id)

    def lock(self, instance_id: str) -> asyncio.Lock:
        return self._locks[instance_id]

    def add_listener(self, listener: StateListener) -> None:
        """Called with (record, old_iaas_state, new_iaas_state) on divergence."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def add(self, record: InstanceRecord) -> InstanceRecord:
        if record.template_id not in self._templates:
            raise KeyError(f"Unknown template '{record.template_id}' for {record.instance_id}")
        async with self.lock(record.instance_id):
            if not record.labels:
                record.labels = self._templates[record.template_id].label_list
            existing = self._records.get(record.instance_id)
            if existing is not None:
                self._unindex(existing)
            self._records[record.instance_id] = record
            self._index(record)
        return record

    async def remove(self, instance_id: str) -> InstanceRecord | None:
        async with self.lock(instance_id):
            record = self._records.pop(instance_id, None)
            if record is not None:
                self._unindex(record)
        self._locks.pop(instance_id, None)
        return record

    async def set_state(self, instance_id: str, expected: LaunchState, new: LaunchState) -> bool:
        """CAS the record's lifecycle state and keep the state index in step."""
        async with self.lock(instance_id):
            record = self._records.get(instance_id)
            if record is None or not record.transition(expected, new):
                return False
            self._by_state[expected].discard(instance_id)
            self._by_state[new].add(instance_id)
            return True

    async def rekey(self, old_id: str, new_id: str) -> InstanceRecord | None:
        """Move a record from its spot request id to the fulfilled instance id."""
        async with self.lock(old_id):
            record = self._records.pop(old_id, None)
            if record is None:
                return None
            self._unindex(record)
            record.instance_id = new_id
            self._records[new_id] = record
            self._index(record)
        self._locks.pop(old_id, None)
        record.log.append(f"spot request {old_id} fulfilled by {new_id}")
        return record

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, instance_id: str) -> InstanceRecord | None:
        return self._records.get(instance_id)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def snapshot(self) -> list[InstanceRecord]:
        return list(self._records.values())

    def _resolve(self, ids: Iterable[str]) -> list[InstanceRecord]:
        return [r for iid in sorted(ids) if (r := self._records.get(iid)) is not None]

    def by_template(self, template_id: str) -> list[InstanceRecord]:
        return self._resolve(set(self._by_template.get(template_id, ())))

    def by_state(self, *states: LaunchState) -> list[InstanceRecord]:
        ids: set[str] = set()
        for state in states:
            ids |= self._by_state.get(state, set())
        return self._resolve(ids)

    def by_label(self, label: str) -> list[InstanceRecord]:
        return self._resolve(set(self._by_label.get(label, ())))

    def count_live(self, template_id: str | None = None) -> int:
        """Records not yet TERMINATED or FAILED, optionally for one template."""
        records = self.by_template(template_id) if template_id else self.snapshot()
        return sum(1 for r in records if r.state not in TERMINAL_STATES)

    def headroom(self, template: Template, cloud_cap: int, *, force: bool = False) -> int:
        """How many more instances the caps allow for ``template``."""
        cloud_room = cloud_cap - self.count_live()
        if force:
            return max(0, cloud_room)
        template_room = template.instance_cap - self.count_live(template.id)
        return max(0, min(cloud_room, template_room))

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def _template_for(self, instance: Mapping[str, Any]) -> Template | None:
        tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
        template_id = tags.get(HangarTag.TEMPLATE)
        if template_id and template_id in self._templates:
            return self._templates[template_id]
        for template in self._templates.values():
            if (
                template.ami == instance.get("ImageId")
                and template.instance_type == instance.get("InstanceType")
            ):
                return template
        return None

    async def reconcile(
        self,
        remote: RemoteSnapshot,
        cloud_cap: int,
        now: float | None = None,
    ) -> ReconcileReport:
        """Align local records with a describe snapshot.

        - local records missing remotely beyond the grace period are evicted
        - owner-tagged remote instances unknown locally are adopted when a
          template matches and caps allow, otherwise reported as orphans
        - EC2 state divergence updates the record and notifies listeners
        """
        now = time.monotonic() if now is None else now
        remote_by_id = {i["InstanceId"]: i for i in remote.instances if i.get("InstanceId")}

        rekeyed: list[tuple[str, str]] = []
        for request in remote.spot_requests:
            request_id = request.get("SpotInstanceRequestId")
            instance_id = request.get("InstanceId")
            if not request_id or not instance_id:
                continue
            record = self._records.get(request_id)
            if record is not None and record.awaiting_spot:
                await self.rekey(request_id, instance_id)
                rekeyed.append((request_id, instance_id))

        open_requests = {
            r.get("SpotInstanceRequestId")
            for r in remote.spot_requests
            if r.get("State") in ("open", "active")
        }

        evicted: list[str] = []
        updated: list[str] = []
        for record in self.snapshot():
            if record.state == LaunchState.TERMINATED:
                continue
            iid = record.instance_id
            if record.awaiting_spot:
                if iid in open_requests:
                    record.last_seen = now
                elif now - record.last_seen > self._grace:
                    evicted.append(iid)
                continue

            instance = remote_by_id.get(iid)
            if instance is None:
                if now - record.last_seen > self._grace:
                    evicted.append(iid)
                continue

            old = record.iaas_state
            record.observe(instance)
            record.last_seen = now
            if record.iaas_state != old:
                updated.append(iid)
                record.log.append(f"EC2 state {old} -> {record.iaas_state}")
                for listener in self._listeners:
                    listener(record, old, record.iaas_state)

        for iid in evicted:
            record = await self.remove(iid)
            if record is not None:
                log.warning(
                    "Evicting {iid}: absent from EC2 for more than {grace:.0f}s",
                    iid=iid, grace=self._grace,
                )

        adopted: list[InstanceRecord] = []
        orphans: list[str] = []
        for iid, instance in remote_by_id.items():
            if iid in self._records:
                continue
            state = instance.get("State", {}).get("Name", "")
            if state in GONE_STATES:
                continue
            template = self._template_for(instance)
            if template is None or self.headroom(template, cloud_cap) < 1:
                orphans.append(iid)
                continue
            record = InstanceRecord(
                instance_id=iid,
                template_id=template.id,
                cloud_id=self.cloud_id,
                flavor=Flavor.SPOT if instance.get("SpotInstanceRequestId") else Flavor.ONDEMAND,
                state=LaunchState.RESUMABLE if state == "stopped" else LaunchState.PENDING,
                spot_request_id=instance.get("SpotInstanceRequestId"),
                subnet_id=instance.get("SubnetId"),
                last_seen=now,
            )
            if instance.get("LaunchTime") is not None:
                record.launch_time = instance["LaunchTime"]
            record.observe(instance)
            record.last_seen = now
            record.log.append(f"adopted running instance {iid}")
            await self.add(record)
            adopted.append(record)
            log.info("Adopted {iid} into template {tpl}", iid=iid, tpl=template.id)

        return ReconcileReport(
            evicted=tuple(evicted),
            adopted=tuple(adopted),
            orphans=tuple(orphans),
            updated=tuple(updated),
            rekeyed=tuple(rekeyed),
        )
