"""Turn a template and a count into EC2 launch requests.

The planner checks caps, resolves the AMI and key pair, rotates through
the template's subnets on capacity errors and records every launched
instance (or open spot request) in the registry as PENDING.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Collection, Sequence
from typing import Any

from loguru import logger

from hangar.aws.facade import EC2Facade
from hangar.constants import KNOWN_ROOT_DEVICE_TYPES, HangarTag
from hangar.core.exceptions import (
    CapacityExhausted,
    IaasError,
    IaasNotFound,
    InsufficientCapacity,
    InvalidKey,
    InvalidTemplate,
)
from hangar.keys import PrivateKey
from hangar.model import (
    CloudConfig,
    Flavor,
    InstanceRecord,
    LaunchState,
    ProvisionOption,
    Template,
)
from hangar.registry import InstanceRegistry

log = logger.bind(component="planner")

type Json = dict[str, Any]

DEFAULT_OPTIONS: frozenset[ProvisionOption] = frozenset({ProvisionOption.ALLOW_CREATE})


# =============================================================================
# Request building
# =============================================================================


def merge_block_devices(image: Json, template: Template) -> list[Json]:
    """AMI mappings overlaid with template overrides, keyed by device name."""
    merged: dict[str, Json] = {}
    for mapping in image.get("BlockDeviceMappings", []):
        name = mapping.get("DeviceName")
        if name:
            merged[name] = dict(mapping)
    for device in template.block_devices:
        merged[device.device_name] = device.to_mapping()
    return list(merged.values())


def instance_profile(name_or_arn: str) -> dict[str, str]:
    if name_or_arn.startswith("arn:"):
        return {"Arn": name_or_arn}
    return {"Name": name_or_arn}


def launch_tags(template: Template, cloud: CloudConfig) -> dict[str, str]:
    """Template tags plus the reserved owner, template and Name tags."""
    tags = dict(template.tags)
    tags[HangarTag.OWNER] = cloud.owner_tag
    tags[HangarTag.TEMPLATE] = template.id
    tags.setdefault(HangarTag.NAME, template.display_label)
    return tags


def tag_specifications(tags: dict[str, str], *resource_types: str) -> list[Json]:
    tag_list = [{"Key": k, "Value": v} for k, v in tags.items()]
    return [{"ResourceType": rt, "Tags": list(tag_list)} for rt in resource_types]


def instance_name(template: Template, instance_id: str) -> str:
    short = instance_id.removeprefix("i-")[:8]
    return f"{template.display_label}-{short}"


# =============================================================================
# Planner
# =============================================================================


class TemplatePlanner:
    """Provision instances for one cloud's templates.

    Example:
        >>> planner = TemplatePlanner(facade, registry, cloud_config, key)
        >>> records = await planner.provision(template, 2)
    """

    def __init__(
        self,
        facade: EC2Facade,
        registry: InstanceRegistry,
        cloud: CloudConfig,
        key: PrivateKey | None = None,
    ) -> None:
        self._ec2 = facade
        self._registry = registry
        self._cloud = cloud
        self._key = key
        self._key_name: str | None = None
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def provision(
        self,
        template: Template,
        n: int,
        options: Collection[ProvisionOption] = DEFAULT_OPTIONS,
    ) -> list[InstanceRecord]:
        """Launch up to ``n`` instances of ``template``.

        Stopped instances of the template are resumed first. New instances
        are created only with ALLOW_CREATE or FORCE_CREATE.

        Returns:
            PENDING records already inserted into the registry. Empty when a
            cap would be exceeded (without FAIL_FAST) or every subnet ran out
            of capacity.

        Raises:
            CapacityExhausted: Cap exceeded and FAIL_FAST requested.
            InvalidTemplate: AMI missing or unusable.
            InvalidKey: No key pair matches the cloud key.
        """
        if n <= 0:
            return []
        template.validate()
        async with self._lock:
            return await self._provision(template, n, options)

    async def _provision(
        self,
        template: Template,
        n: int,
        options: Collection[ProvisionOption],
    ) -> list[InstanceRecord]:
        # Runs under self._lock: cap check, launch and registry insert are one step.
        resumed = await self.resume(template, n)
        remaining = n - len(resumed)
        creating = ProvisionOption.ALLOW_CREATE in options or ProvisionOption.FORCE_CREATE in options
        if remaining <= 0 or not creating:
            return resumed

        force = ProvisionOption.FORCE_CREATE in options
        violation = self._cap_violation(template, remaining, force=force)
        if violation is not None:
            if ProvisionOption.FAIL_FAST in options:
                raise violation
            log.info("Not provisioning {tpl}: {reason}", tpl=template.id, reason=violation)
            return resumed

        image = await self._resolve_image(template)
        subnets = await self._candidate_subnets(template)
        key_name = await self._resolve_key_name(template)
        mappings = merge_block_devices(image, template)

        failures: list[str] = []
        attempts = 0
        for subnet in subnets:
            attempts += 1
            groups = await self._security_groups(template, subnet)
            try:
                if template.flavor == Flavor.SPOT:
                    created = await self._request_spot(template, remaining, subnet, key_name, groups, mappings)
                else:
                    created = await self._run_ondemand(template, remaining, subnet, key_name, groups, mappings)
            except InsufficientCapacity as e:
                where = subnet["SubnetId"] if subnet else (template.zone or "default zone")
                failures.append(f"{where}: {e}")
                log.warning(
                    "No capacity for {tpl} in {where}, trying next subnet",
                    tpl=template.id, where=where,
                )
                continue

            for record in created:
                record.attempts = attempts
                await self._registry.add(record)
                record.log.append(
                    f"launch requested from template {template.id} (attempt {attempts})"
                )
            await self._name_instances(template, [r for r in created if not r.awaiting_spot])
            log.info(
                "Provisioned {n} {flavor} instance(s) of {tpl}: {ids}",
                n=len(created), flavor=template.flavor, tpl=template.id,
                ids=[r.instance_id for r in created],
            )
            return resumed + created

        log.error(
            "Could not provision {tpl}, all subnets exhausted: {reasons}",
            tpl=template.id, reasons="; ".join(failures),
        )
        return resumed

    async def resume(self, template: Template, n: int) -> list[InstanceRecord]:
        """Start up to ``n`` stopped instances of ``template``."""
        stopped = self._registry.by_state(LaunchState.RESUMABLE)
        candidates = [r for r in stopped if r.template_id == template.id][:n]
        if not candidates:
            return []

        ids = [r.instance_id for r in candidates]
        await self._ec2.start_instances(ids)
        resumed: list[InstanceRecord] = []
        for record in candidates:
            if await self._registry.set_state(record.instance_id, LaunchState.RESUMABLE, LaunchState.PENDING):
                record.log.append("resumed stopped instance")
                resumed.append(record)
        log.info("Resumed {n} stopped instance(s) of {tpl}", n=len(resumed), tpl=template.id)
        return resumed

    async def tag_instance(self, template: Template, record: InstanceRecord) -> None:
        """Apply launch tags to a fulfilled spot instance, which EC2 leaves untagged."""
        tags = launch_tags(template, self._cloud)
        if HangarTag.NAME not in template.tag_map:
            tags[HangarTag.NAME] = instance_name(template, record.instance_id)
        await self._ec2.create_tags([record.instance_id], tags)
        record.tags.update(tags)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _cap_violation(self, template: Template, n: int, *, force: bool) -> CapacityExhausted | None:
        live = self._registry.count_live()
        if live + n > self._cloud.instance_cap:
            return CapacityExhausted(f"Cloud '{self._cloud.name}'", live, n, self._cloud.instance_cap)
        if force:
            return None
        template_live = self._registry.count_live(template.id)
        if template_live + n > template.instance_cap:
            return CapacityExhausted(f"Template '{template.id}'", template_live, n, template.instance_cap)
        return None

    async def _resolve_image(self, template: Template) -> Json:
        try:
            images = await self._ec2.describe_images([template.ami])
        except IaasNotFound as e:
            raise InvalidTemplate(f"AMI {template.ami} not found for template '{template.id}'") from e
        if not images:
            raise InvalidTemplate(f"AMI {template.ami} not found for template '{template.id}'")
        image = images[0]
        root_type = image.get("RootDeviceType")
        if root_type not in KNOWN_ROOT_DEVICE_TYPES:
            raise InvalidTemplate(
                f"AMI {template.ami} has unsupported root device type '{root_type}'"
            )
        return image

    async def _candidate_subnets(self, template: Template) -> Sequence[Json | None]:
        """Template subnets in the permitted zone, in template order.

        A template without subnets launches into the default VPC, once.
        """
        if not template.subnets:
            return [None]
        described = {s["SubnetId"]: s for s in await self._ec2.describe_subnets(template.subnets)}
        candidates: list[Json | None] = []
        for subnet_id in template.subnets:
            subnet = described.get(subnet_id)
            if subnet is None:
                raise InvalidTemplate(f"Subnet {subnet_id} of template '{template.id}' does not exist")
            if template.zone not in ("", "any") and subnet.get("AvailabilityZone") != template.zone:
                continue
            candidates.append(subnet)
        if not candidates:
            raise InvalidTemplate(
                f"None of the subnets of template '{template.id}' are in zone {template.zone}"
            )
        return candidates

    async def _resolve_key_name(self, template: Template) -> str | None:
        if template.key_pair_name:
            return template.key_pair_name
        if self._key is None:
            return None
        if self._key_name is not None:
            return self._key_name

        fingerprint = self._key.fingerprint()
        for pair in await self._ec2.describe_key_pairs():
            if pair.get("KeyFingerprint") == fingerprint:
                self._key_name = str(pair["KeyName"])
                return self._key_name
        raise InvalidKey(
            f"No EC2 key pair matches the private key of cloud '{self._cloud.name}' "
            f"(fingerprint {fingerprint})"
        )

    async def _security_groups(self, template: Template, subnet: Json | None) -> Json:
        """Security group parameters: ids inside a VPC subnet, names otherwise."""
        if not template.security_groups:
            return {}
        if subnet is None:
            return {"SecurityGroups": list(template.security_groups)}
        groups = await self._ec2.describe_security_groups(
            template.security_groups, vpc_id=subnet.get("VpcId"),
        )
        ids = [g["GroupId"] for g in groups]
        if len(ids) < len(template.security_groups):
            found = {g.get("GroupName") for g in groups}
            missing = [g for g in template.security_groups if g not in found]
            raise InvalidTemplate(
                f"Security groups {missing} of template '{template.id}' not found "
                f"in VPC {subnet.get('VpcId')}"
            )
        return {"SecurityGroupIds": ids}

    def _base_spec(
        self,
        template: Template,
        subnet: Json | None,
        key_name: str | None,
        mappings: list[Json],
    ) -> Json:
        spec: Json = {"ImageId": template.ami, "InstanceType": template.instance_type}
        if key_name:
            spec["KeyName"] = key_name
        if template.iam_instance_profile:
            spec["IamInstanceProfile"] = instance_profile(template.iam_instance_profile)
        if mappings:
            spec["BlockDeviceMappings"] = mappings
        if subnet is None and template.zone not in ("", "any"):
            spec["Placement"] = {"AvailabilityZone": template.zone}
        if template.ebs_optimized:
            spec["EbsOptimized"] = True
        if template.monitoring:
            spec["Monitoring"] = {"Enabled": True}
        return spec

    async def _run_ondemand(
        self,
        template: Template,
        n: int,
        subnet: Json | None,
        key_name: str | None,
        groups: Json,
        mappings: list[Json],
    ) -> list[InstanceRecord]:
        spec = self._base_spec(template, subnet, key_name, mappings)
        spec.update(MinCount=n, MaxCount=n)
        if subnet is not None and template.associate_public_ip:
            spec["NetworkInterfaces"] = [{
                "DeviceIndex": 0,
                "SubnetId": subnet["SubnetId"],
                "AssociatePublicIpAddress": True,
                "Groups": groups.get("SecurityGroupIds", []),
            }]
        else:
            spec.update(groups)
            if subnet is not None:
                spec["SubnetId"] = subnet["SubnetId"]
        if template.user_data:
            # botocore base64-encodes RunInstances UserData itself
            spec["UserData"] = template.user_data
        spec["InstanceInitiatedShutdownBehavior"] = "stop" if template.stop_on_terminate else "terminate"
        spec["TagSpecifications"] = tag_specifications(
            launch_tags(template, self._cloud), "instance", "volume",
        )

        subnet_id = subnet["SubnetId"] if subnet else None
        log.debug("run_instances {tpl} x{n} in {subnet}", tpl=template.id, n=n, subnet=subnet_id)
        try:
            instances = await self._ec2.run_instances(spec)
        except InsufficientCapacity as e:
            e.subnet_id = subnet_id
            raise

        records = []
        for instance in instances:
            record = InstanceRecord(
                instance_id=instance["InstanceId"],
                template_id=template.id,
                cloud_id=self._cloud.name,
                flavor=Flavor.ONDEMAND,
                subnet_id=instance.get("SubnetId") or subnet_id,
                labels=template.label_list,
            )
            if instance.get("LaunchTime") is not None:
                record.launch_time = instance["LaunchTime"]
            record.observe(instance)
            records.append(record)
        return records

    async def _request_spot(
        self,
        template: Template,
        n: int,
        subnet: Json | None,
        key_name: str | None,
        groups: Json,
        mappings: list[Json],
    ) -> list[InstanceRecord]:
        spot = template.spot
        assert spot is not None
        launch = self._base_spec(template, subnet, key_name, mappings)
        launch.update(groups)
        if subnet is not None:
            launch["SubnetId"] = subnet["SubnetId"]
            if template.associate_public_ip:
                launch.pop("SubnetId")
                launch.pop("SecurityGroupIds", None)
                launch["NetworkInterfaces"] = [{
                    "DeviceIndex": 0,
                    "SubnetId": subnet["SubnetId"],
                    "AssociatePublicIpAddress": True,
                    "Groups": groups.get("SecurityGroupIds", []),
                }]
        if spot.host_type != "default":
            launch.setdefault("Placement", {})["Tenancy"] = spot.host_type
        if template.user_data:
            launch["UserData"] = base64.b64encode(template.user_data.encode()).decode()

        request: Json = {
            "InstanceCount": n,
            "Type": "persistent" if spot.persistent else "one-time",
            "LaunchSpecification": launch,
            "TagSpecifications": tag_specifications(
                launch_tags(template, self._cloud), "spot-instances-request",
            ),
        }
        if spot.max_bid:
            request["SpotPrice"] = spot.max_bid
        if spot.persistent:
            request["InstanceInterruptionBehavior"] = "stop" if template.stop_on_terminate else "terminate"

        subnet_id = subnet["SubnetId"] if subnet else None
        log.debug(
            "request_spot_instances {tpl} x{n} bid={bid} product={product} in {subnet}",
            tpl=template.id, n=n, bid=spot.max_bid, product=spot.product, subnet=subnet_id,
        )
        try:
            requests = await self._ec2.request_spot_instances(request)
        except InsufficientCapacity as e:
            e.subnet_id = subnet_id
            raise

        records = []
        for req in requests:
            request_id = req["SpotInstanceRequestId"]
            records.append(InstanceRecord(
                instance_id=req.get("InstanceId") or request_id,
                template_id=template.id,
                cloud_id=self._cloud.name,
                flavor=Flavor.SPOT,
                iaas_state=str(req.get("State", "open")),
                spot_request_id=request_id,
                subnet_id=subnet_id,
                labels=template.label_list,
            ))
        return records

    async def _name_instances(self, template: Template, records: list[InstanceRecord]) -> None:
        if HangarTag.NAME in template.tag_map:
            return
        for record in records:
            name = instance_name(template, record.instance_id)
            try:
                await self._ec2.create_tags([record.instance_id], {HangarTag.NAME: name})
            except IaasError as e:
                record.log.failure(f"could not tag {record.instance_id} with Name={name}", e)
                log.warning("Could not name {iid}: {err}", iid=record.instance_id, err=e)
                continue
            record.tags[HangarTag.NAME] = name


__all__ = [
    "DEFAULT_OPTIONS",
    "TemplatePlanner",
    "instance_name",
    "launch_tags",
    "merge_block_devices",
]
