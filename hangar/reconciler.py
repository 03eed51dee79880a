"""Periodic control loop matching observed instances to demand.

Each pass collects every describe result first, reconciles the registry
against that snapshot, terminates orphans and finally provisions for the
outstanding demand. Stable demand produces no new launches on repeated
passes.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from loguru import logger

from hangar.aws.facade import EC2Facade
from hangar.constants import HangarTag
from hangar.core.exceptions import HangarError, IaasError
from hangar.model import (
    IN_FLIGHT_STATES,
    CloudConfig,
    Flavor,
    InstanceRecord,
    LaunchState,
    Template,
)
from hangar.planner import DEFAULT_OPTIONS, TemplatePlanner
from hangar.registry import InstanceRegistry, ReconcileReport, RemoteSnapshot

log = logger.bind(component="reconciler")

type Demand = Mapping[str | None, int]
type DemandSource = Callable[[], Demand]
type Seeder = Callable[[InstanceRecord], None]


def template_order(templates: Iterable[Template], registry: InstanceRegistry) -> list[Template]:
    """Preference order among templates serving the same label.

    Templates below half their cap come first, then on-demand before spot
    (a spot-only template is not demoted), then template id.
    """

    def key(template: Template) -> tuple[int, int, str]:
        below_half = registry.count_live(template.id) * 2 < template.instance_cap
        spot_last = template.flavor == Flavor.SPOT and not (template.spot and template.spot.spot_only)
        return (0 if below_half else 1, 1 if spot_last else 0, template.id)

    return sorted(templates, key=key)


@dataclass(frozen=True, slots=True)
class PassResult:
    report: ReconcileReport
    terminated: tuple[str, ...] = ()
    launched: tuple[InstanceRecord, ...] = ()


class Reconciler:
    """Single task reconciling one cloud every ``interval`` seconds.

    Example:
        >>> reconciler = Reconciler(config, facade, registry, planner, ledger.outstanding, seed)
        >>> await reconciler.run_once()
        >>> reconciler.start()
    """

    def __init__(
        self,
        cloud: CloudConfig,
        facade: EC2Facade,
        registry: InstanceRegistry,
        planner: TemplatePlanner,
        demand: DemandSource,
        seed: Seeder,
        *,
        interval: float | None = None,
    ) -> None:
        self._cloud = cloud
        self._ec2 = facade
        self._registry = registry
        self._planner = planner
        self._demand = demand
        self._seed = seed
        self._interval = cloud.timeouts.reconcile_interval if interval is None else interval
        self._wakeup = asyncio.Event()
        self._pass_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Task control
    # -------------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=f"reconciler-{self._cloud.name}")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def poke(self) -> None:
        """Run the next pass now instead of at the next tick."""
        self._wakeup.set()

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                log.exception("Reconcile pass for {cloud} failed: {err}", cloud=self._cloud.name, err=e)
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(self._interval):
                    await self._wakeup.wait()
            self._wakeup.clear()

    # -------------------------------------------------------------------------
    # One pass
    # -------------------------------------------------------------------------

    async def collect(self) -> RemoteSnapshot:
        """Describe everything this controller owns, before any mutation."""
        owner = [{"Name": f"tag:{HangarTag.OWNER}", "Values": [self._cloud.owner_tag]}]
        instances = await self._ec2.describe_instances(filters=owner)
        spot_requests = await self._ec2.describe_spot_instance_requests(filters=owner)
        return RemoteSnapshot(instances=tuple(instances), spot_requests=tuple(spot_requests))

    async def run_once(self) -> PassResult:
        async with self._pass_lock:
            snapshot = await self.collect()
            report = await self._registry.reconcile(snapshot, self._cloud.instance_cap)
            for record in report.adopted:
                self._seed(record)
            terminated = await self._terminate_orphans(report.orphans)
            launched = await self.serve_demand(self._demand())
            if report.changed or terminated or launched:
                log.debug(
                    "Pass for {cloud}: adopted={a} evicted={e} orphans={o} launched={n}",
                    cloud=self._cloud.name, a=len(report.adopted), e=len(report.evicted),
                    o=len(terminated), n=len(launched),
                )
            return PassResult(report, tuple(terminated), tuple(launched))

    async def _terminate_orphans(self, orphans: Iterable[str]) -> list[str]:
        ids = list(orphans)
        if not ids:
            return []
        log.warning("Terminating {n} orphan instance(s): {ids}", n=len(ids), ids=ids)
        try:
            await self._ec2.terminate_instances(ids)
        except IaasError as e:
            log.error("Could not terminate orphans {ids}: {err}", ids=ids, err=e)
            return []
        return ids

    def in_flight(self, label: str | None) -> int:
        """Records of templates matching ``label`` that are on their way up or online."""
        count = 0
        for template in self._cloud.templates:
            if template.matches(label):
                count += sum(
                    1 for r in self._registry.by_template(template.id) if r.state in IN_FLIGHT_STATES
                )
        return count

    async def serve_demand(self, demand: Demand) -> list[InstanceRecord]:
        launched: list[InstanceRecord] = []
        for label, count in sorted(demand.items(), key=lambda kv: kv[0] or ""):
            shortfall = count - self.in_flight(label)
            if shortfall <= 0:
                continue
            candidates = template_order(
                (t for t in self._cloud.templates if t.matches(label)), self._registry,
            )
            if not candidates:
                log.debug("No template of {cloud} serves label {label}", cloud=self._cloud.name, label=label)
                continue

            for template in candidates:
                if shortfall <= 0:
                    break
                room = self._registry.headroom(template, self._cloud.instance_cap)
                want = min(shortfall, self._stopped_count(template) + room)
                if want <= 0:
                    continue
                try:
                    records = await self._planner.provision(template, want, DEFAULT_OPTIONS)
                except HangarError as e:
                    log.error(
                        "Provisioning {tpl} for {label} failed: {err}",
                        tpl=template.id, label=label, err=e,
                    )
                    continue
                for record in records:
                    self._seed(record)
                launched.extend(records)
                shortfall -= len(records)
        return launched

    def _stopped_count(self, template: Template) -> int:
        return sum(
            1 for r in self._registry.by_template(template.id) if r.state == LaunchState.RESUMABLE
        )

