from __future__ import annotations

from dataclasses import replace

import pytest

from hangar.constants import HangarTag
from hangar.model import (
    Flavor,
    InstanceRecord,
    LaunchState,
    Template,
)
from hangar.registry import InstanceRegistry, RemoteSnapshot

pytestmark = [pytest.mark.xdist_group("unit")]

OWNER = "demand_ci.example.com"


def record(iid: str, template: Template, state: LaunchState = LaunchState.PENDING, **kwargs) -> InstanceRecord:
    return InstanceRecord(instance_id=iid, template_id=template.id, cloud_id="prod", state=state, **kwargs)


def remote(iid: str, state: str = "running", template_id: str | None = "linux", **extra) -> dict:
    tags = [{"Key": HangarTag.OWNER, "Value": OWNER}]
    if template_id:
        tags.append({"Key": HangarTag.TEMPLATE, "Value": template_id})
    return {
        "InstanceId": iid,
        "ImageId": "ami-linux",
        "InstanceType": "t3.small",
        "State": {"Name": state},
        "PrivateIpAddress": "10.0.0.9",
        "Tags": tags,
        **extra,
    }


class TestIndexes:
    @pytest.mark.asyncio
    async def test_add_and_query(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("i-1", template))

        assert registry.get("i-1") is r
        assert "i-1" in registry
        assert len(registry) == 1
        assert registry.by_template("linux") == [r]
        assert registry.by_state(LaunchState.PENDING) == [r]
        assert registry.by_label("docker") == [r]
        assert r.labels == ("linux", "docker")

    @pytest.mark.asyncio
    async def test_unknown_template_is_rejected(self, registry: InstanceRegistry, template: Template):
        with pytest.raises(KeyError, match="nope"):
            await registry.add(record("i-1", replace(template, id="nope")))

    @pytest.mark.asyncio
    async def test_set_state_is_compare_and_set(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("i-1", template))

        assert await registry.set_state("i-1", LaunchState.PENDING, LaunchState.BOOTING)
        assert not await registry.set_state("i-1", LaunchState.PENDING, LaunchState.BOOTING)
        assert r.state == LaunchState.BOOTING
        assert registry.by_state(LaunchState.PENDING) == []
        assert registry.by_state(LaunchState.BOOTING) == [r]

    @pytest.mark.asyncio
    async def test_forbidden_edge_is_refused(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("i-1", template))

        assert not await registry.set_state("i-1", LaunchState.PENDING, LaunchState.ONLINE)
        assert r.state == LaunchState.PENDING

    @pytest.mark.asyncio
    async def test_set_state_of_unknown_record(self, registry: InstanceRegistry):
        assert not await registry.set_state("i-404", LaunchState.PENDING, LaunchState.BOOTING)

    @pytest.mark.asyncio
    async def test_remove(self, registry: InstanceRegistry, template: Template):
        await registry.add(record("i-1", template))

        removed = await registry.remove("i-1")

        assert removed is not None
        assert "i-1" not in registry
        assert registry.by_template("linux") == []
        assert await registry.remove("i-1") is None

    @pytest.mark.asyncio
    async def test_rekey(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("sir-1", template, spot_request_id="sir-1", flavor=Flavor.SPOT))
        assert r.awaiting_spot

        await registry.rekey("sir-1", "i-1")

        assert registry.get("i-1") is r
        assert "sir-1" not in registry
        assert r.spot_request_id == "sir-1"
        assert not r.awaiting_spot


class TestCounting:
    @pytest.mark.asyncio
    async def test_count_live_excludes_terminal_states(self, registry: InstanceRegistry, template: Template):
        await registry.add(record("i-1", template))
        await registry.add(record("i-2", template, LaunchState.ONLINE))
        await registry.add(record("i-3", template, LaunchState.RESUMABLE))
        await registry.add(record("i-4", template, LaunchState.FAILED))
        await registry.add(record("i-5", template, LaunchState.TERMINATED))

        assert registry.count_live() == 3
        assert registry.count_live(template.id) == 3

    @pytest.mark.asyncio
    async def test_headroom(self, registry: InstanceRegistry, template: Template):
        tpl = replace(template, instance_cap=3)
        await registry.add(record("i-1", tpl))
        await registry.add(record("i-2", tpl))

        assert registry.headroom(tpl, cloud_cap=10) == 1
        assert registry.headroom(tpl, cloud_cap=2) == 0
        assert registry.headroom(tpl, cloud_cap=10, force=True) == 8


class TestReconcile:
    @pytest.mark.asyncio
    async def test_adopts_unknown_owned_instance(self, registry: InstanceRegistry):
        report = await registry.reconcile(RemoteSnapshot(instances=(remote("i-9"),)), cloud_cap=10)

        [adopted] = report.adopted
        assert adopted.instance_id == "i-9"
        assert adopted.template_id == "linux"
        assert adopted.state == LaunchState.PENDING
        assert adopted.private_ip == "10.0.0.9"
        assert registry.get("i-9") is adopted
        assert report.orphans == ()

    @pytest.mark.asyncio
    async def test_stopped_instance_is_adopted_as_resumable(self, registry: InstanceRegistry):
        report = await registry.reconcile(
            RemoteSnapshot(instances=(remote("i-9", state="stopped"),)), cloud_cap=10,
        )
        assert report.adopted[0].state == LaunchState.RESUMABLE

    @pytest.mark.asyncio
    async def test_template_matched_by_image_and_type(self, registry: InstanceRegistry):
        report = await registry.reconcile(
            RemoteSnapshot(instances=(remote("i-9", template_id=None),)), cloud_cap=10,
        )
        assert report.adopted[0].template_id == "linux"

    @pytest.mark.asyncio
    async def test_unmatched_instance_is_an_orphan(self, registry: InstanceRegistry):
        instance = remote("i-9", template_id=None, ImageId="ami-other")
        report = await registry.reconcile(RemoteSnapshot(instances=(instance,)), cloud_cap=10)

        assert report.adopted == ()
        assert report.orphans == ("i-9",)
        assert "i-9" not in registry

    @pytest.mark.asyncio
    async def test_instance_over_cap_is_an_orphan(self, registry: InstanceRegistry):
        report = await registry.reconcile(RemoteSnapshot(instances=(remote("i-9"),)), cloud_cap=0)
        assert report.orphans == ("i-9",)

    @pytest.mark.asyncio
    async def test_gone_instances_are_ignored(self, registry: InstanceRegistry):
        report = await registry.reconcile(
            RemoteSnapshot(instances=(remote("i-9", state="terminated"),)), cloud_cap=10,
        )
        assert not report.changed

    @pytest.mark.asyncio
    async def test_second_pass_is_a_no_op(self, registry: InstanceRegistry):
        snapshot = RemoteSnapshot(instances=(remote("i-9"),))
        await registry.reconcile(snapshot, cloud_cap=10)

        report = await registry.reconcile(snapshot, cloud_cap=10)

        assert not report.changed
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_missing_record_evicted_after_grace(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("i-1", template))

        early = await registry.reconcile(RemoteSnapshot(), cloud_cap=10, now=r.last_seen + 1)
        assert early.evicted == ()
        assert "i-1" in registry

        late = await registry.reconcile(RemoteSnapshot(), cloud_cap=10, now=r.last_seen + 61)
        assert late.evicted == ("i-1",)
        assert "i-1" not in registry

    @pytest.mark.asyncio
    async def test_open_spot_request_is_kept(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("sir-1", template, spot_request_id="sir-1", flavor=Flavor.SPOT))
        snapshot = RemoteSnapshot(spot_requests=({"SpotInstanceRequestId": "sir-1", "State": "open"},))

        report = await registry.reconcile(snapshot, cloud_cap=10, now=r.last_seen + 600)

        assert report.evicted == ()
        assert "sir-1" in registry

    @pytest.mark.asyncio
    async def test_fulfilled_spot_request_is_rekeyed(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("sir-1", template, spot_request_id="sir-1", flavor=Flavor.SPOT))
        snapshot = RemoteSnapshot(
            instances=(remote("i-1", SpotInstanceRequestId="sir-1"),),
            spot_requests=({"SpotInstanceRequestId": "sir-1", "State": "active", "InstanceId": "i-1"},),
        )

        report = await registry.reconcile(snapshot, cloud_cap=10)

        assert report.rekeyed == (("sir-1", "i-1"),)
        assert registry.get("i-1") is r
        assert report.adopted == ()

    @pytest.mark.asyncio
    async def test_divergence_notifies_listeners(self, registry: InstanceRegistry, template: Template):
        r = await registry.add(record("i-1", template, LaunchState.ONLINE, iaas_state="running"))
        seen: list[tuple[str, str, str]] = []
        registry.add_listener(lambda rec, old, new: seen.append((rec.instance_id, old, new)))

        report = await registry.reconcile(
            RemoteSnapshot(instances=(remote("i-1", state="stopped"),)), cloud_cap=10,
        )

        assert report.updated == ("i-1",)
        assert seen == [("i-1", "running", "stopped")]
        assert r.iaas_state == "stopped"
