"""Per-instance launch state machine.

One ``LaunchStateMachine`` drives one instance record from PENDING to
ONLINE and, later, to RESUMABLE or TERMINATED::

    PENDING -> BOOTING -> CONNECTING -> ONLINE -> STOPPING -> RESUMABLE
       |          |            |           |          |
       +----------+------------+--> FAILED +----------+--> TERMINATING -> TERMINATED

Each phase runs under its own deadline. A timed-out or transiently failed
phase is retried until ``max_attempts`` is reached; permanent errors fail
the record at once. ``cancel()`` moves any live record to TERMINATING at
the next suspension point.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from loguru import logger

from hangar.aws.facade import EC2Facade
from hangar.constants import GONE_STATES, HangarTag, InstanceState
from hangar.core.exceptions import (
    BootTimeout,
    Cancelled,
    HangarError,
    IaasError,
    IaasNotFound,
    IaasPermanent,
    IaasThrottled,
    IaasTransient,
    SshTimeout,
)
from hangar.keys import PrivateKey
from hangar.model import InstanceRecord, LaunchState, Template, Timeouts
from hangar.node import Node, Session
from hangar.planner import TemplatePlanner
from hangar.registry import InstanceRegistry
from hangar.ssh.host_keys import HostKeyStore
from hangar.ssh.launcher import Launcher
from hangar.wait import wait_for_ready
from hangar.windows import fetch_password

log = logger.bind(component="lifecycle")

type Json = dict[str, Any]

RETRYABLE_ERRORS = (TimeoutError, BootTimeout, SshTimeout, IaasTransient, IaasThrottled)
FAILED_SPOT_STATES = frozenset({"cancelled", "closed", "failed"})


class LaunchStateMachine:
    """Drives one instance record through its lifecycle.

    Example:
        >>> fsm = LaunchStateMachine(record, template, facade=facade, registry=registry,
        ...                          launcher=launcher, timeouts=Timeouts())
        >>> task = fsm.start()
        >>> fsm.cancel("user request")
        >>> await task
        <LaunchState.TERMINATED: 'terminated'>
    """

    def __init__(
        self,
        record: InstanceRecord,
        template: Template,
        *,
        facade: EC2Facade,
        registry: InstanceRegistry,
        launcher: Launcher,
        timeouts: Timeouts,
        key: PrivateKey | None = None,
        planner: TemplatePlanner | None = None,
        host_keys: HostKeyStore | None = None,
        on_finished: Callable[[LaunchStateMachine], None] | None = None,
    ) -> None:
        self.record = record
        self.template = template
        self.node: Node | None = None
        self.error: BaseException | None = None
        self._ec2 = facade
        self._registry = registry
        self._launcher = launcher
        self._timeouts = timeouts
        self._key = key
        self._planner = planner
        self._host_keys = host_keys
        self._on_finished = on_finished
        self._session: Session | None = None
        self._cancel = asyncio.Event()
        self._cause: str | None = None
        self._failures = 0
        self._task: asyncio.Task[LaunchState] | None = None

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def start(self) -> asyncio.Task[LaunchState]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"fsm-{self.record.instance_id}")
        return self._task

    @property
    def task(self) -> asyncio.Task[LaunchState] | None:
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self, cause: str = "explicit terminate") -> None:
        """Request termination from whatever state the record is in."""
        if self._cancel.is_set():
            return
        self._cause = cause
        self.record.log.append(f"terminate requested: {cause}")
        self._cancel.set()

    def on_iaas_state(self, record: InstanceRecord, old: str, new: str) -> None:
        """Registry listener: react to EC2 state changes made outside hangar."""
        if record is not self.record:
            return
        match self.record.state:
            case LaunchState.ONLINE:
                gone = new in GONE_STATES or new in (InstanceState.STOPPING, InstanceState.STOPPED)
            case LaunchState.BOOTING | LaunchState.CONNECTING:
                gone = new in GONE_STATES
            case _:
                gone = False
        if gone:
            self.cancel(f"instance went from {old} to {new}")

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    async def run(self) -> LaunchState:
        record = self.record
        while True:
            state = record.state
            if self._cancel.is_set() and state not in (LaunchState.TERMINATING, LaunchState.TERMINATED):
                await self._move(state, LaunchState.TERMINATING)
                continue

            match state:
                case LaunchState.PENDING | LaunchState.BOOTING | LaunchState.CONNECTING:
                    await self._run_phase(state)
                case LaunchState.ONLINE:
                    try:
                        target = await self._guarded(self._watch_idle())
                    except Cancelled:
                        continue
                    await self._move(LaunchState.ONLINE, target)
                case LaunchState.STOPPING:
                    await self._stop()
                case LaunchState.RESUMABLE:
                    return state
                case LaunchState.FAILED:
                    await self._move(LaunchState.FAILED, LaunchState.TERMINATING)
                case LaunchState.TERMINATING:
                    await self._terminate()
                case LaunchState.TERMINATED:
                    await self._finish()
                    return state

    async def _move(self, expected: LaunchState, new: LaunchState) -> bool:
        record = self.record
        if record.instance_id in self._registry:
            moved = await self._registry.set_state(record.instance_id, expected, new)
        else:
            moved = record.transition(expected, new)
        if moved:
            log.info("{iid}: {old} -> {new}", iid=record.instance_id, old=expected, new=new)
        elif record.state == expected:
            raise RuntimeError(f"Transition {expected} -> {new} is not permitted")
        return moved

    async def _guarded[T](self, coro: Coroutine[Any, Any, T]) -> T:
        """Await ``coro`` unless a cancel request arrives first."""
        phase = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({phase, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not phase.done():
                phase.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await phase
        if phase.cancelled():
            raise Cancelled(self._cause or "terminate requested")
        return phase.result()

    async def _run_phase(self, state: LaunchState) -> None:
        t = self._timeouts
        phases: dict[LaunchState, tuple[Callable[[], Awaitable[None]], float]] = {
            LaunchState.PENDING: (self._await_running, t.running),
            LaunchState.BOOTING: (self._await_ssh, t.boot + t.ssh_handshake),
            LaunchState.CONNECTING: (self._bootstrap, t.launch),
        }
        phase, budget = phases[state]
        record = self.record
        try:
            async with asyncio.timeout(budget):
                await self._guarded(phase())
        except Cancelled:
            return
        except RETRYABLE_ERRORS as e:
            self._failures += 1
            record.attempts += 1
            record.log.failure(
                f"{state} attempt {self._failures}/{t.max_attempts} failed", e,
            )
            log.warning(
                "{iid}: {state} attempt {n}/{max} failed: {err}",
                iid=record.instance_id, state=state, n=self._failures, max=t.max_attempts, err=e,
            )
            if self._failures >= t.max_attempts:
                self.error = e
                await self._move(state, LaunchState.FAILED)
        except HangarError as e:
            self.error = e
            record.log.failure(f"{state} failed", e)
            log.error("{iid}: {state} failed: {err}", iid=record.instance_id, state=state, err=e)
            await self._move(state, LaunchState.FAILED)
        except Exception as e:
            self.error = e
            record.log.failure(f"{state} failed unexpectedly", e)
            log.opt(exception=e).error(
                "{iid}: unexpected error in {state}: {err}", iid=record.instance_id, state=state, err=e,
            )
            await self._move(state, LaunchState.FAILED)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _describe(self) -> Json | None:
        try:
            instances = await self._ec2.describe_instances([self.record.instance_id])
        except IaasNotFound:
            return None
        return instances[0] if instances else None

    async def _await_spot_fulfilment(self) -> None:
        record = self.record
        request_id = record.spot_request_id
        assert request_id is not None

        async def poll() -> Json | None:
            requests = await self._ec2.describe_spot_instance_requests([request_id])
            return requests[0] if requests else None

        def failed(request: Json) -> Exception | None:
            if request.get("State") in FAILED_SPOT_STATES:
                status = request.get("Status", {}).get("Message") or request.get("State")
                return IaasPermanent(f"Spot request {request_id} ended without an instance: {status}")
            return None

        request = await wait_for_ready(
            poll,
            lambda r: bool(r.get("InstanceId")),
            terminal_check=failed,
            timeout=self._timeouts.running,
            interval=self._timeouts.state_poll_interval,
            description=f"spot request {request_id}",
        )
        if record.awaiting_spot:
            await self._registry.rekey(request_id, request["InstanceId"])

    async def _await_running(self) -> None:
        record = self.record
        if record.awaiting_spot:
            await self._await_spot_fulfilment()

        def gone(instance: Json) -> Exception | None:
            state = instance.get("State", {}).get("Name")
            if state in GONE_STATES:
                return IaasPermanent(f"{record.instance_id} entered {state} before running")
            return None

        try:
            instance = await wait_for_ready(
                self._describe,
                lambda i: i.get("State", {}).get("Name") == InstanceState.RUNNING,
                terminal_check=gone,
                timeout=self._timeouts.running,
                interval=self._timeouts.state_poll_interval,
                description=f"{record.instance_id} to run",
            )
        except TimeoutError as e:
            raise BootTimeout(str(e)) from e
        record.observe(instance)

        if self._planner is not None and HangarTag.OWNER not in record.tags:
            await self._planner.tag_instance(self.template, record)
        await self._move(LaunchState.PENDING, LaunchState.BOOTING)

    async def _await_ssh(self) -> None:
        await self._launcher.wait_for_ssh(self.record, self.template)
        await self._move(LaunchState.BOOTING, LaunchState.CONNECTING)

    async def _bootstrap(self) -> None:
        record, template = self.record, self.template
        password = None
        if template.windows:
            password = await fetch_password(
                self._ec2, self._key, record, template,
                timeout=self._timeouts.boot,
                interval=self._timeouts.state_poll_interval,
            )
        await self._close_session()
        self._session = await self._launcher.launch(record, template, password=password)
        self.node = Node(record, template, self._session, on_disconnect=self.cancel)
        await self._move(LaunchState.CONNECTING, LaunchState.ONLINE)

    async def _watch_idle(self) -> LaunchState:
        """Wait until the agent goes away or stays idle past the template limit."""
        template = self.template
        limit = template.idle_termination_minutes * 60
        while True:
            await asyncio.sleep(self._timeouts.idle_check_interval)
            if self._session is not None and self._session.closed:
                self.record.log.append("agent channel closed")
                return LaunchState.TERMINATING
            if limit > 0 and self.node is not None and self.node.idle_seconds() >= limit:
                self.record.log.append(f"idle for {template.idle_termination_minutes} minutes")
                if template.stop_on_terminate:
                    return LaunchState.STOPPING
                return LaunchState.TERMINATING

    async def _stop(self) -> None:
        record = self.record
        await self._close_session()
        try:
            await self._ec2.stop_instances([record.instance_id])
            instance = await wait_for_ready(
                self._describe,
                lambda i: i.get("State", {}).get("Name") == InstanceState.STOPPED,
                timeout=self._timeouts.reaper,
                interval=self._timeouts.state_poll_interval,
                description=f"{record.instance_id} to stop",
            )
        except (TimeoutError, IaasError) as e:
            record.log.failure("stop failed, terminating instead", e)
            await self._move(LaunchState.STOPPING, LaunchState.TERMINATING)
            return
        record.observe(instance)
        self.node = None
        await self._move(LaunchState.STOPPING, LaunchState.RESUMABLE)

    async def _terminate(self) -> None:
        record = self.record
        await self._close_session()
        self.node = None
        try:
            async with asyncio.timeout(self._timeouts.reaper):
                if record.spot_request_id is not None:
                    await self._cancel_spot_request(record.spot_request_id)
                if not record.awaiting_spot:
                    await self._terminate_instance()
        except TimeoutError:
            record.log.append(
                f"no termination confirmation after {self._timeouts.reaper:.0f}s, reaping record"
            )
            log.warning("{iid}: reaper timeout elapsed", iid=record.instance_id)
        await self._move(LaunchState.TERMINATING, LaunchState.TERMINATED)

    async def _cancel_spot_request(self, request_id: str) -> None:
        while True:
            try:
                await self._ec2.cancel_spot_instance_requests([request_id])
                return
            except IaasNotFound:
                return
            except IaasError as e:
                self.record.log.failure(f"could not cancel spot request {request_id}", e)
                await asyncio.sleep(self._timeouts.state_poll_interval)

    async def _terminate_instance(self) -> None:
        iid = self.record.instance_id
        while True:
            try:
                await self._ec2.terminate_instances([iid])
                break
            except IaasNotFound:
                return
            except IaasError as e:
                self.record.log.failure(f"terminate of {iid} failed, retrying", e)
                await asyncio.sleep(self._timeouts.state_poll_interval)

        async def poll() -> Json:
            instance = await self._describe()
            return instance or {"State": {"Name": InstanceState.TERMINATED}}

        instance = await wait_for_ready(
            poll,
            lambda i: i.get("State", {}).get("Name") == InstanceState.TERMINATED,
            timeout=self._timeouts.reaper,
            interval=self._timeouts.state_poll_interval,
            description=f"{iid} to terminate",
        )
        self.record.observe(instance)

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.close()
        except (OSError, HangarError) as e:
            self.record.log.failure("error closing agent channel", e)

    async def _finish(self) -> None:
        record = self.record
        await self._registry.remove(record.instance_id)
        if self._host_keys is not None:
            self._host_keys.forget(record.instance_id)
        if self.error is not None:
            log.info("{iid} reaped after failure: {err}", iid=record.instance_id, err=self.error)
        if self._on_finished is not None:
            self._on_finished(self)
