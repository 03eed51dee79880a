from __future__ import annotations

import pytest
from fakes import FAST_RETRY, FAST_TIMEOUTS, TEST_PEM, FakeEC2, FakeLauncher

from hangar.aws.facade import EC2Facade
from hangar.keys import PrivateKey
from hangar.model import CloudConfig, Template
from hangar.planner import TemplatePlanner
from hangar.registry import InstanceRegistry


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def facade(ec2: FakeEC2) -> EC2Facade:
    return EC2Facade(ec2.factory(), call_timeout=2.0, retry_policy=FAST_RETRY)


@pytest.fixture
def template() -> Template:
    return Template(
        ami="ami-linux",
        instance_type="t3.small",
        labels="linux docker",
        subnets=("subnet-1", "subnet-2"),
        instance_cap=5,
    )


@pytest.fixture
def cloud(template: Template) -> CloudConfig:
    return CloudConfig(
        name="prod",
        templates=(template,),
        instance_cap=10,
        controller_url="https://ci.example.com/",
        timeouts=FAST_TIMEOUTS,
    )


@pytest.fixture
def registry(cloud: CloudConfig) -> InstanceRegistry:
    return InstanceRegistry(cloud.name, cloud.templates, grace=cloud.timeouts.eviction_grace)


@pytest.fixture
def planner(facade: EC2Facade, registry: InstanceRegistry, cloud: CloudConfig) -> TemplatePlanner:
    return TemplatePlanner(facade, registry, cloud)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def private_key() -> PrivateKey:
    return PrivateKey.from_pem(TEST_PEM)
