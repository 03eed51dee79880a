"""AWS client factories with dependency injection.

Provides typed client factories that can be injected into components.
Each cloud owns one factory, built from its credentials and endpoint.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import aioboto3
from botocore.config import Config
from injector import Module, provider, singleton

from hangar.model import CloudConfig

if TYPE_CHECKING:
    from types_aiobotocore_ec2 import EC2Client


# =============================================================================
# Client Type
# =============================================================================

type Client[T] = Callable[[], AbstractAsyncContextManager[T]]
"""Factory that returns an async context manager for a client."""


class EC2ClientFactory:
    """Wrapper for EC2 client factory."""

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


# =============================================================================
# Session and client construction
# =============================================================================


def create_session(config: CloudConfig) -> aioboto3.Session:
    """Session for the cloud's credential source.

    Static keys win over a named profile; with neither, the default
    provider chain (environment, instance role) applies.
    """
    creds = config.credentials
    if creds.access_key_id:
        return aioboto3.Session(
            aws_access_key_id=creds.access_key_id,
            aws_secret_access_key=creds.secret_access_key,
            region_name=config.region,
        )
    if creds.profile:
        return aioboto3.Session(profile_name=creds.profile, region_name=config.region)
    return aioboto3.Session(region_name=config.region)


def client_config(config: CloudConfig) -> Config:
    """botocore settings: our own retry policy, per-call deadline, optional proxy."""
    timeout = config.timeouts.iaas_call
    proxies = {"http": config.proxy, "https": config.proxy} if config.proxy else None
    return Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
        proxies=proxies,
    )


def ec2_factory(session: aioboto3.Session, config: CloudConfig) -> EC2ClientFactory:
    """EC2 client factory bound to one cloud's region and endpoint."""

    @asynccontextmanager
    async def factory() -> AsyncIterator[EC2Client]:
        async with session.client(
            "ec2",
            region_name=config.region,
            endpoint_url=config.endpoint_url,
            config=client_config(config),
        ) as client:
            yield client

    return EC2ClientFactory(factory)


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([AWSModule(cloud_config)])
        >>> factory = injector.get(EC2ClientFactory)
        >>> async with factory() as client:
        ...     await client.describe_regions()
    """

    def __init__(self, config: CloudConfig) -> None:
        self._config = config

    @singleton
    @provider
    def provide_config(self) -> CloudConfig:
        return self._config

    @singleton
    @provider
    def provide_session(self, config: CloudConfig) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return create_session(config)

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: CloudConfig) -> EC2ClientFactory:
        """Provide EC2 client factory."""
        return ec2_factory(session, config)


__all__ = [
    "AWSModule",
    "Client",
    "EC2ClientFactory",
    "client_config",
    "create_session",
    "ec2_factory",
]
