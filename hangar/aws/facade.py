"""Narrow async facade over the EC2 API.

Every call carries a deadline, translates botocore failures into the
``IaasError`` family and retries throttled or transient failures with
exponential back-off. Paginated reads follow ``NextToken`` to the end.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections.abc import Callable, Iterable, Mapping, Sequence
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Final

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
)
from loguru import logger

from hangar.constants import DEFAULT_SPOT_PAGE, IAAS_CALL_TIMEOUT, SPOT_PAGE_MAX, SPOT_PAGE_MIN
from hangar.core.exceptions import (
    AuthFailed,
    IaasError,
    IaasNotFound,
    IaasPermanent,
    IaasThrottled,
    IaasTransient,
    InsufficientCapacity,
)
from hangar.retry import is_retryable, retry

from .clients import EC2ClientFactory

log = logger.bind(component="ec2")

type Json = dict[str, Any]


# =============================================================================
# Error translation
# =============================================================================

THROTTLE_CODES: Final = frozenset({
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "RequestThrottled",
    "SlowDown",
    "PriorRequestNotComplete",
})

TRANSIENT_CODES: Final = frozenset({
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "RequestTimeout",
    "RequestTimeoutException",
})

AUTH_CODES: Final = frozenset({
    "AuthFailure",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "OptInRequired",
})

CAPACITY_CODES: Final = frozenset({
    "InsufficientInstanceCapacity",
    "InsufficientHostCapacity",
    "InsufficientReservedInstanceCapacity",
    "InsufficientCapacity",
})


def error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", "Unknown"))


def translate(error: Exception, operation: str) -> IaasError:
    """Map a botocore (or timeout) failure onto the IaaS error family."""
    match error:
        case ClientError():
            code = error_code(error)
            message = str(error.response.get("Error", {}).get("Message", error))
            text = f"{operation}: {code}: {message}"
            if code in THROTTLE_CODES:
                return IaasThrottled(text, code=code, operation=operation)
            if code in TRANSIENT_CODES:
                return IaasTransient(text, code=code, operation=operation)
            if code in AUTH_CODES:
                return AuthFailed(text, code=code, operation=operation)
            if code in CAPACITY_CODES:
                return InsufficientCapacity(text, code=code, operation=operation)
            if code.endswith("NotFound") or code.endswith(".Malformed"):
                return IaasNotFound(text, code=code, operation=operation)
            return IaasPermanent(text, code=code, operation=operation)
        case NoCredentialsError():
            return AuthFailed(f"{operation}: {error}", code="NoCredentials", operation=operation)
        case BotoConnectionError() | HTTPClientError():
            return IaasTransient(f"{operation}: {error}", code="ConnectionError", operation=operation)
        case TimeoutError():
            return IaasTransient(f"{operation}: call timed out", code="Timeout", operation=operation)
        case BotoCoreError():
            return IaasPermanent(f"{operation}: {error}", code=type(error).__name__, operation=operation)
        case _:
            return IaasPermanent(f"{operation}: {error}", operation=operation)


# =============================================================================
# Retry policy
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Back-off applied to throttled and transient failures."""

    max_attempts: int = 6
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2


def _tag_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def collect_pages(
    pages: Iterable[Sequence[Json]],
    key: Callable[[Json], str | None],
) -> list[Json]:
    """Concatenate pages in order, keeping the first occurrence of each key."""
    seen: set[str] = set()
    out: list[Json] = []
    for page in pages:
        for item in page:
            k = key(item)
            if k is not None and k in seen:
                continue
            if k is not None:
                seen.add(k)
            out.append(item)
    return out


# =============================================================================
# Facade
# =============================================================================


class EC2Facade:
    """Request-shaped EC2 operations used by the provisioning engine.

    The facade owns one open client for its lifetime. It is safe for
    concurrent use from many tasks; a retrying call only sleeps its own task.

    Example:
        >>> facade = EC2Facade(factory)
        >>> async with facade:
        ...     regions = await facade.describe_regions()
    """

    def __init__(
        self,
        factory: EC2ClientFactory,
        *,
        call_timeout: float = IAAS_CALL_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._factory = factory
        self._timeout = call_timeout
        self._policy = retry_policy or RetryPolicy()
        self._stack: AsyncExitStack | None = None
        self._client: Any = None
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        async with self._open_lock:
            if self._client is not None:
                return
            stack = AsyncExitStack()
            self._client = await stack.enter_async_context(self._factory())
            self._stack = stack

    async def close(self) -> None:
        async with self._open_lock:
            if self._stack is not None:
                await self._stack.aclose()
            self._stack = None
            self._client = None

    async def __aenter__(self) -> EC2Facade:
        await self.open()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def _call(self, operation: str, **params: Any) -> Json:
        policy = self._policy

        @retry(
            on=is_retryable,
            max_attempts=policy.max_attempts,
            base_delay=policy.base_delay,
            exponential_base=policy.factor,
            max_delay=policy.max_delay,
            jitter=policy.jitter,
        )
        async def attempt() -> Json:
            if self._client is None:
                await self.open()
            method = getattr(self._client, operation)
            try:
                async with asyncio.timeout(self._timeout):
                    return await method(**params)
            except (ClientError, BotoCoreError, TimeoutError) as e:
                raise translate(e, operation) from e

        log.trace("{op} {params}", op=operation, params=sorted(params))
        return await attempt()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def describe_regions(self) -> list[str]:
        response = await self._call("describe_regions")
        return [r["RegionName"] for r in response.get("Regions", [])]

    async def describe_images(self, image_ids: Sequence[str]) -> list[Json]:
        response = await self._call("describe_images", ImageIds=list(image_ids))
        return list(response.get("Images", []))

    async def describe_instances(
        self,
        instance_ids: Sequence[str] | None = None,
        filters: Sequence[Json] | None = None,
    ) -> list[Json]:
        """Instances flattened out of their reservations, across all pages."""
        params: dict[str, Any] = {}
        if instance_ids:
            params["InstanceIds"] = list(instance_ids)
        if filters:
            params["Filters"] = list(filters)

        pages: list[list[Json]] = []
        token: str | None = None
        while True:
            call = dict(params, NextToken=token) if token else params
            response = await self._call("describe_instances", **call)
            pages.append([
                inst
                for reservation in response.get("Reservations", [])
                for inst in reservation.get("Instances", [])
            ])
            token = response.get("NextToken")
            if not token:
                break
        return collect_pages(pages, key=lambda i: i.get("InstanceId"))

    async def describe_key_pairs(self) -> list[Json]:
        response = await self._call("describe_key_pairs")
        return list(response.get("KeyPairs", []))

    async def describe_security_groups(
        self,
        names: Sequence[str] | None = None,
        vpc_id: str | None = None,
    ) -> list[Json]:
        filters: list[Json] = []
        if names:
            filters.append({"Name": "group-name", "Values": list(names)})
        if vpc_id:
            filters.append({"Name": "vpc-id", "Values": [vpc_id]})
        response = await self._call(
            "describe_security_groups", **({"Filters": filters} if filters else {}),
        )
        return list(response.get("SecurityGroups", []))

    async def describe_subnets(self, subnet_ids: Sequence[str] | None = None) -> list[Json]:
        params = {"SubnetIds": list(subnet_ids)} if subnet_ids else {}
        response = await self._call("describe_subnets", **params)
        return list(response.get("Subnets", []))

    async def describe_spot_instance_requests(
        self,
        request_ids: Sequence[str] | None = None,
        filters: Sequence[Json] | None = None,
        page_size: int = DEFAULT_SPOT_PAGE,
    ) -> list[Json]:
        """All spot requests, following NextToken until it is absent.

        Pages are concatenated in order and duplicate request ids dropped.
        EC2 rejects MaxResults together with explicit ids, so id lookups are
        not paged.
        """
        params: dict[str, Any] = {}
        if filters:
            params["Filters"] = list(filters)
        if request_ids:
            params["SpotInstanceRequestIds"] = list(request_ids)
        else:
            params["MaxResults"] = max(SPOT_PAGE_MIN, min(page_size, SPOT_PAGE_MAX))

        pages: list[list[Json]] = []
        token: str | None = None
        while True:
            call = dict(params, NextToken=token) if token else params
            response = await self._call("describe_spot_instance_requests", **call)
            pages.append(list(response.get("SpotInstanceRequests", [])))
            token = response.get("NextToken")
            if not token:
                break
        return collect_pages(pages, key=lambda r: r.get("SpotInstanceRequestId"))

    async def get_console_output(self, instance_id: str) -> str:
        response = await self._call("get_console_output", InstanceId=instance_id)
        raw = response.get("Output") or ""
        if not raw:
            return ""
        try:
            return base64.b64decode(raw).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            return str(raw)

    async def get_password_data(self, instance_id: str) -> str:
        response = await self._call("get_password_data", InstanceId=instance_id)
        return str(response.get("PasswordData") or "").strip()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def run_instances(self, spec: Mapping[str, Any]) -> list[Json]:
        response = await self._call("run_instances", **spec)
        return list(response.get("Instances", []))

    async def request_spot_instances(self, spec: Mapping[str, Any]) -> list[Json]:
        response = await self._call("request_spot_instances", **spec)
        return list(response.get("SpotInstanceRequests", []))

    async def cancel_spot_instance_requests(self, request_ids: Sequence[str]) -> list[Json]:
        if not request_ids:
            return []
        response = await self._call(
            "cancel_spot_instance_requests", SpotInstanceRequestIds=list(request_ids),
        )
        return list(response.get("CancelledSpotInstanceRequests", []))

    async def terminate_instances(self, instance_ids: Sequence[str]) -> list[Json]:
        if not instance_ids:
            return []
        response = await self._call("terminate_instances", InstanceIds=list(instance_ids))
        return list(response.get("TerminatingInstances", []))

    async def stop_instances(self, instance_ids: Sequence[str]) -> list[Json]:
        if not instance_ids:
            return []
        response = await self._call("stop_instances", InstanceIds=list(instance_ids))
        return list(response.get("StoppingInstances", []))

    async def start_instances(self, instance_ids: Sequence[str]) -> list[Json]:
        if not instance_ids:
            return []
        response = await self._call("start_instances", InstanceIds=list(instance_ids))
        return list(response.get("StartingInstances", []))

    async def create_tags(self, resource_ids: Sequence[str], tags: Mapping[str, str]) -> None:
        if not resource_ids or not tags:
            return
        await self._call("create_tags", Resources=list(resource_ids), Tags=_tag_list(tags))


__all__ = [
    "EC2Facade",
    "RetryPolicy",
    "collect_pages",
    "translate",
]
