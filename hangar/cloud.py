"""One credentialed EC2 endpoint and everything it owns.

An ``EC2Cloud`` holds its EC2 client (opened on ``start``, released on
``close``), the instance registry, the template planner, the reconciler
task and one launch state machine per live instance record.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection, Iterable
from pathlib import Path

from injector import Injector
from loguru import logger

from hangar.aws.clients import AWSModule, EC2ClientFactory
from hangar.aws.facade import EC2Facade
from hangar.core.exceptions import CloudNotFound
from hangar.demand import DemandLedger
from hangar.keys import PrivateKey
from hangar.lifecycle import LaunchStateMachine
from hangar.model import (
    CloudConfig,
    InstanceRecord,
    LaunchState,
    ProvisionOption,
    Template,
)
from hangar.node import Node
from hangar.planner import DEFAULT_OPTIONS, TemplatePlanner
from hangar.reconciler import Reconciler
from hangar.registry import InstanceRegistry
from hangar.ssh.host_keys import HostKeyStore
from hangar.ssh.launcher import Launcher, SSHLauncher

log = logger.bind(component="cloud")


def _report_crash(task: asyncio.Task[LaunchState]) -> None:
    if task.cancelled():
        return
    if (err := task.exception()) is not None:
        log.opt(exception=err).error("{task} crashed: {err}", task=task.get_name(), err=err)


class EC2Cloud:
    """Provisioning engine for one cloud.

    Example:
        >>> cloud = EC2Cloud(config, ledger=ledger, agent_payload=Path("agent.jar"))
        >>> async with cloud:
        ...     receipt = ledger.request_capacity("linux", 1)
        ...     ...
    """

    def __init__(
        self,
        config: CloudConfig,
        *,
        ledger: DemandLedger | None = None,
        factory: EC2ClientFactory | None = None,
        launcher: Launcher | None = None,
        agent_payload: Path | None = None,
    ) -> None:
        for template in config.templates:
            template.validate()
        self.config = config
        t = config.timeouts
        self.key = PrivateKey.from_pem(config.private_key) if config.private_key.strip() else None

        if factory is None:
            factory = Injector([AWSModule(config)]).get(EC2ClientFactory)
        self.facade = EC2Facade(factory, call_timeout=t.iaas_call)
        self.registry = InstanceRegistry(config.name, config.templates, grace=t.eviction_grace)
        self.planner = TemplatePlanner(self.facade, self.registry, config, self.key)
        self.host_keys = HostKeyStore()
        self.launcher: Launcher = launcher or SSHLauncher(
            self.facade, self.key, self.host_keys, t, agent_payload,
        )
        self.ledger = ledger or DemandLedger()
        self.reconciler = Reconciler(
            config, self.facade, self.registry, self.planner, self._demand, self.seed,
        )
        self._machines: dict[InstanceRecord, LaunchStateMachine] = {}

        self.ledger.attach(self.online_nodes)
        if config.no_delay_provisioning:
            self.ledger.subscribe(self._on_demand)
        self.registry.add_listener(self._on_iaas_state)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def display_name(self) -> str:
        return self.config.name

    @property
    def templates(self) -> tuple[Template, ...]:
        return self.config.templates

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self.facade.open()
        self.reconciler.start()
        log.info(
            "Cloud {name} started in {region} ({n} templates, credentials from {src})",
            name=self.name, region=self.config.region, n=len(self.templates),
            src=self.config.credentials.source,
        )

    async def close(self) -> None:
        """Terminate every owned instance and release the EC2 client."""
        await self.reconciler.stop()
        for record in self.registry.snapshot():
            if record.state != LaunchState.TERMINATED:
                self.terminate(record.instance_id, "cloud closed")
        tasks = [fsm.task for fsm in list(self._machines.values()) if fsm.task is not None]
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    log.error("State machine ended with {err}", err=result)
        await self.facade.close()
        log.info("Cloud {name} closed", name=self.name)

    async def __aenter__(self) -> EC2Cloud:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Templates and provisioning
    # -------------------------------------------------------------------------

    def get_template(self, label: str) -> Template | None:
        """Template whose id, description or labels match ``label``."""
        for template in self.templates:
            if label in (template.id, template.description) or label in template.label_list:
                return template
        return None

    def can_provision(self, label: str | None) -> bool:
        return any(t.matches(label) for t in self.templates)

    async def provision(
        self,
        template: Template,
        n: int,
        options: Collection[ProvisionOption] = DEFAULT_OPTIONS,
    ) -> list[InstanceRecord]:
        """Provision outside the reconciler and drive the new records."""
        records = await self.planner.provision(template, n, options)
        for record in records:
            self.seed(record)
        return records

    def seed(self, record: InstanceRecord) -> LaunchStateMachine:
        """Start (or return) the state machine driving ``record``."""
        fsm = self._machines.get(record)
        if fsm is not None and fsm.running:
            return fsm
        template = self.registry.template(record.template_id)
        assert template is not None
        fsm = LaunchStateMachine(
            record,
            template,
            facade=self.facade,
            registry=self.registry,
            launcher=self.launcher,
            timeouts=self.config.timeouts,
            key=self.key,
            planner=self.planner,
            host_keys=self.host_keys,
            on_finished=self._on_finished,
        )
        self._machines[record] = fsm
        fsm.start().add_done_callback(_report_crash)
        return fsm

    def machine(self, instance_id: str) -> LaunchStateMachine | None:
        return next((m for r, m in self._machines.items() if r.instance_id == instance_id), None)

    def terminate(self, instance_id: str, cause: str = "explicit terminate") -> bool:
        """Request termination of one instance; returns False if it is unknown."""
        record = self.registry.get(instance_id)
        if record is None:
            return False
        fsm = self._machines.get(record)
        if fsm is None or not fsm.running:
            fsm = self.seed(record)
        fsm.cancel(cause)
        return True

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def online_nodes(self) -> list[Node]:
        return [
            fsm.node
            for record, fsm in self._machines.items()
            if record.state == LaunchState.ONLINE and fsm.node is not None
        ]

    def _demand(self) -> dict[str | None, int]:
        return {
            label: count
            for label, count in self.ledger.outstanding().items()
            if self.can_provision(label)
        }

    def _on_demand(self, label: str | None) -> None:
        if self.can_provision(label):
            self.reconciler.poke()

    def _on_iaas_state(self, record: InstanceRecord, old: str, new: str) -> None:
        fsm = self._machines.get(record)
        if fsm is not None:
            fsm.on_iaas_state(record, old, new)

    def _on_finished(self, fsm: LaunchStateMachine) -> None:
        if self._machines.get(fsm.record) is fsm:
            del self._machines[fsm.record]

    def __repr__(self) -> str:
        return f"EC2Cloud({self.name!r}, region={self.config.region!r}, records={len(self.registry)})"


def get_by_display_name(clouds: Iterable[EC2Cloud], name: str) -> EC2Cloud:
    """The cloud called ``name``.

    Raises:
        CloudNotFound: No cloud has that display name, including when
            ``clouds`` is empty.
    """
    for cloud in clouds:
        if cloud.display_name == name:
            return cloud
    raise CloudNotFound(name)
