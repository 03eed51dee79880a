"""Pipeline step: provision one instance from a named cloud and template.

The step returns as soon as the instance is running; the agent bootstrap
continues in the background under the instance's state machine.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from loguru import logger

from hangar.cloud import EC2Cloud, get_by_display_name
from hangar.constants import InstanceState
from hangar.core.exceptions import CloudNotFound, InvalidArgument
from hangar.model import InstanceRecord, LaunchState, ProvisionOption
from hangar.wait import wait_for_ready

log = logger.bind(component="step")

CLOUD_ERROR: Final = "Error in AWS Cloud. Please review EC2 settings in configuration."
TEMPLATE_ERROR: Final = "Error in AWS Cloud. Please review AWS template defined in configuration."

_FAILED_STATES: Final = frozenset({
    LaunchState.FAILED,
    LaunchState.TERMINATING,
    LaunchState.TERMINATED,
})


@dataclass(frozen=True, slots=True)
class ProvisionedInstance:
    """What the step hands back to the pipeline."""

    id: str
    public_dns: str | None
    private_ip: str | None
    tags: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_record(cls, record: InstanceRecord) -> ProvisionedInstance:
        return cls(
            id=record.instance_id,
            public_dns=record.public_dns,
            private_ip=record.private_ip,
            tags=tuple(sorted(record.tags.items())),
        )

    @property
    def tag_map(self) -> dict[str, str]:
        return dict(self.tags)


async def ec2(
    clouds: Iterable[EC2Cloud],
    *,
    cloud: str,
    template: str,
) -> ProvisionedInstance:
    """Provision one instance and wait until EC2 reports it running.

    Raises:
        InvalidArgument: Unknown cloud or template, nothing could be
            provisioned, or the instance failed before running.
    """
    try:
        target = get_by_display_name(clouds, cloud)
    except CloudNotFound as e:
        raise InvalidArgument(CLOUD_ERROR) from e

    tpl = target.get_template(template)
    if tpl is None:
        raise InvalidArgument(TEMPLATE_ERROR)

    records = await target.provision(tpl, 1, {ProvisionOption.ALLOW_CREATE})
    if not records:
        raise InvalidArgument(TEMPLATE_ERROR)
    record = records[0]

    async def poll() -> InstanceRecord:
        return record

    def running(r: InstanceRecord) -> bool:
        return not r.awaiting_spot and r.iaas_state == InstanceState.RUNNING and r.state != LaunchState.PENDING

    def failed(r: InstanceRecord) -> Exception | None:
        if r.state in _FAILED_STATES:
            return InvalidArgument(
                f"{TEMPLATE_ERROR} Instance {r.instance_id} of template '{tpl.id}' did not start ({r.state})"
            )
        return None

    timeouts = target.config.timeouts
    try:
        await wait_for_ready(
            poll,
            running,
            terminal_check=failed,
            timeout=timeouts.running * timeouts.max_attempts,
            interval=min(1.0, timeouts.state_poll_interval),
            description=f"{record.instance_id} to run",
        )
    except TimeoutError as e:
        raise InvalidArgument(
            f"{TEMPLATE_ERROR} Instance {record.instance_id} of template '{tpl.id}' is not running"
        ) from e

    log.info("Step provisioned {iid} from {cloud}/{tpl}", iid=record.instance_id, cloud=cloud, tpl=tpl.id)
    return ProvisionedInstance.from_record(record)
