"""Bootstrap a build agent over SSH.

Service class pattern: the EC2 facade, cloud key and host-key store are
bound at construction; each call takes the instance record and template.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import asyncssh
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from hangar.aws.facade import EC2Facade
from hangar.constants import INIT_MARKER
from hangar.core.exceptions import BootstrapFailed, HostKeyRejected, SshTimeout
from hangar.keys import PrivateKey
from hangar.model import ConnectionStrategy, HostKeyPolicy, InstanceRecord, Template, Timeouts

from .host_keys import HostKeyStore, host_key_of, parse_console_host_keys, plan_verification

log = logger.bind(component="ssh")


# =============================================================================
# Endpoint resolution
# =============================================================================


def resolve_endpoint(template: Template, record: InstanceRecord) -> str | None:
    """Host to connect to, falling back to the private IP."""
    match template.connection_strategy:
        case ConnectionStrategy.PUBLIC_DNS:
            preferred = record.public_dns
        case ConnectionStrategy.PRIVATE_DNS:
            preferred = record.private_dns
        case ConnectionStrategy.PUBLIC_IP:
            preferred = record.public_ip
        case _:
            preferred = record.private_ip
    return preferred or record.private_ip


# =============================================================================
# Agent session
# =============================================================================


async def wait_completion(process: asyncssh.SSHClientProcess, timeout: float) -> int:
    """Exit status of ``process``, or -1 on timeout or when no status was sent."""
    try:
        async with asyncio.timeout(timeout):
            completed = await process.wait(check=False)
    except TimeoutError:
        return -1
    status = completed.exit_status
    return -1 if status is None or status < 0 else status


@dataclass
class AgentSession:
    """A running agent process: stdout/stdin carry the node channel."""

    instance_id: str
    conn: asyncssh.SSHClientConnection
    process: asyncssh.SSHClientProcess
    _stderr: asyncio.Task[None] | None = field(default=None, repr=False)

    async def read(self, n: int = 65536) -> bytes:
        return await self.process.stdout.read(n)

    async def write(self, data: bytes) -> None:
        self.process.stdin.write(data)
        await self.process.stdin.drain()

    async def wait(self, timeout: float) -> int:
        return await wait_completion(self.process, timeout)

    @property
    def closed(self) -> bool:
        return self.process.exit_status is not None or self.process.is_closing()

    async def close(self) -> None:
        if self._stderr is not None:
            self._stderr.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr
        self.process.close()
        self.conn.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self.conn.wait_closed(), timeout=5.0)


class Launcher(Protocol):
    """What the launch state machine needs from a launcher."""

    async def wait_for_ssh(self, record: InstanceRecord, template: Template) -> None: ...

    async def launch(
        self,
        record: InstanceRecord,
        template: Template,
        *,
        password: str | None = None,
    ) -> AgentSession: ...


# =============================================================================
# SSH launcher
# =============================================================================


class SSHLauncher:
    """Connects to a booted instance and starts the agent on it.

    Example:
        >>> launcher = SSHLauncher(facade, key, HostKeyStore(), timeouts, Path("agent.jar"))
        >>> await launcher.wait_for_ssh(record, template)
        >>> session = await launcher.launch(record, template)
        >>> status = await session.wait(3600)
    """

    def __init__(
        self,
        facade: EC2Facade,
        key: PrivateKey | None,
        host_keys: HostKeyStore,
        timeouts: Timeouts,
        agent_payload: Path | None = None,
    ) -> None:
        self._ec2 = facade
        self._key = key
        self._host_keys = host_keys
        self._timeouts = timeouts
        self._payload = agent_payload

    # -------------------------------------------------------------------------
    # Probing
    # -------------------------------------------------------------------------

    async def wait_for_ssh(self, record: InstanceRecord, template: Template) -> None:
        """Block until the SSH port answers with a protocol banner.

        Probes every ``ssh_probe_interval`` seconds for at most ``boot``
        seconds.

        Raises:
            SshTimeout: The port never answered.
        """
        timeouts = self._timeouts

        @retry(
            stop=stop_after_delay(timeouts.boot),
            wait=wait_fixed(timeouts.ssh_probe_interval),
            retry=retry_if_exception_type((OSError, TimeoutError)),
            reraise=True,
        )
        async def probe() -> None:
            host = resolve_endpoint(template, record)
            if not host:
                raise ConnectionError(f"{record.instance_id} has no address yet")
            async with asyncio.timeout(timeouts.ssh_handshake):
                reader, writer = await asyncio.open_connection(host, template.ssh_port)
                try:
                    banner = await reader.readline()
                finally:
                    writer.close()
                    with contextlib.suppress(OSError):
                        await writer.wait_closed()
            if not banner.startswith(b"SSH-"):
                raise ConnectionError(f"{host}:{template.ssh_port} is not an SSH server")
            record.endpoint = host

        try:
            await probe()
        except (OSError, TimeoutError) as e:
            raise SshTimeout(
                f"SSH on {record.instance_id} did not answer within {timeouts.boot:.0f}s: {e}"
            ) from e
        record.log.append(f"SSH is up on {record.endpoint}:{template.ssh_port}")

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    async def launch(
        self,
        record: InstanceRecord,
        template: Template,
        *,
        password: str | None = None,
    ) -> AgentSession:
        """Connect, run the init script, upload the agent and start it.

        Raises:
            HostKeyRejected: The host key policy refused the server key.
            SshTimeout: The SSH handshake did not finish in time.
            BootstrapFailed: Authentication, upload or a remote command failed,
                or the SSH session broke during bootstrap.
        """
        conn = await self._connect(record, template, password)
        try:
            await self._run(conn, record, _mkdir(template), self._timeouts.remote_command)
            if template.init_script:
                await self._run_init_script(conn, record, template)
            if self._payload is not None:
                await self._upload_agent(conn, record, template)
            command = template.agent_command or _default_agent_command(template)
            record.log.append(f"starting agent: {command}")
            process = await conn.create_process(command, encoding=None)
        except TimeoutError:
            conn.close()
            raise
        except (asyncssh.Error, OSError) as e:
            conn.close()
            raise BootstrapFailed(record.instance_id, f"agent bootstrap failed: {e}") from e
        except BaseException:
            conn.close()
            raise

        stderr = asyncio.create_task(_copy_stderr(process, record))
        log.info("Agent started on {iid}", iid=record.instance_id)
        return AgentSession(record.instance_id, conn, process, stderr)

    async def _connect(
        self,
        record: InstanceRecord,
        template: Template,
        password: str | None,
    ) -> asyncssh.SSHClientConnection:
        iid = record.instance_id
        host = record.endpoint or resolve_endpoint(template, record)
        if not host:
            raise BootstrapFailed(iid, "instance has no reachable address")

        console_keys = []
        if template.host_key_policy in (HostKeyPolicy.CHECK_NEW_HARD, HostKeyPolicy.CHECK_NEW_SOFT):
            console_keys = parse_console_host_keys(await self._ec2.get_console_output(iid))
        verification = plan_verification(template.host_key_policy, iid, console_keys, self._host_keys)

        auth: dict[str, object] = {}
        if password is not None:
            auth = {"password": password, "client_keys": None}
        elif self._key is not None:
            try:
                auth = {"client_keys": [asyncssh.import_private_key(self._key.pem)]}
            except asyncssh.KeyImportError as e:
                raise BootstrapFailed(iid, f"cloud key is not usable for SSH: {e}") from e

        record.log.append(f"connecting to {template.remote_user}@{host}:{template.ssh_port}")
        try:
            conn = await asyncssh.connect(
                host,
                port=template.ssh_port,
                username=template.remote_user,
                known_hosts=verification.known_hosts,
                connect_timeout=self._timeouts.ssh_handshake,
                **auth,
            )
        except asyncssh.HostKeyNotVerifiable as e:
            raise HostKeyRejected(iid, f"server host key not verifiable: {e}") from e
        except asyncssh.PermissionDenied as e:
            raise BootstrapFailed(iid, f"authentication as {template.remote_user} rejected") from e
        except TimeoutError as e:
            raise SshTimeout(f"SSH handshake with {iid} timed out") from e
        except (asyncssh.Error, OSError) as e:
            raise BootstrapFailed(iid, f"SSH connection failed: {e}") from e

        if verification.pin_after_connect:
            server_key = conn.get_server_host_key()
            if server_key is not None:
                try:
                    self._host_keys.pin(iid, host_key_of(server_key))
                except HostKeyRejected:
                    conn.close()
                    raise
        return conn

    async def _run(
        self,
        conn: asyncssh.SSHClientConnection,
        record: InstanceRecord,
        command: str,
        timeout: float,
    ) -> int:
        try:
            result = await conn.run(command, check=False, timeout=timeout)
        except asyncssh.TimeoutError as e:
            raise BootstrapFailed(record.instance_id, f"'{command}' timed out after {timeout:.0f}s") from e
        for stream in (result.stdout, result.stderr):
            if stream:
                record.log.append(str(stream).rstrip())
        return result.exit_status if result.exit_status is not None else -1

    async def _run_init_script(
        self,
        conn: asyncssh.SSHClientConnection,
        record: InstanceRecord,
        template: Template,
    ) -> None:
        """Run the init script once per instance, guarded by a marker file."""
        iid = record.instance_id
        timeout = self._timeouts.remote_command
        if await self._run(conn, record, f"test -e {INIT_MARKER}", timeout) == 0:
            record.log.append("init script already ran, skipping")
            return

        script = f"{template.remote_fs.rstrip('/')}/init.sh"
        async with conn.start_sftp_client() as sftp, sftp.open(script, "w") as f:
            await f.write(template.init_script)
        record.log.append("executing init script")
        status = await self._run(conn, record, f"chmod +x {shlex.quote(script)} && {shlex.quote(script)}", timeout)
        if status != 0:
            raise BootstrapFailed(iid, f"init script exited with status {status}")
        await self._run(conn, record, f"touch {INIT_MARKER}", timeout)

    async def _upload_agent(
        self,
        conn: asyncssh.SSHClientConnection,
        record: InstanceRecord,
        template: Template,
    ) -> None:
        """Copy the agent payload to a temporary name, then rename it in place."""
        assert self._payload is not None
        target = template.agent_path
        tmp = f"{target}.tmp"
        record.log.append(f"copying {self._payload.name} to {target}")
        try:
            async with asyncio.timeout(self._timeouts.scp):
                await asyncssh.scp(str(self._payload), (conn, tmp))
        except TimeoutError as e:
            raise BootstrapFailed(record.instance_id, f"agent upload exceeded {self._timeouts.scp:.0f}s") from e
        except (asyncssh.Error, OSError) as e:
            raise BootstrapFailed(record.instance_id, f"agent upload failed: {e}") from e

        status = await self._run(
            conn, record, f"mv -f {shlex.quote(tmp)} {shlex.quote(target)}", self._timeouts.remote_command,
        )
        if status != 0:
            raise BootstrapFailed(record.instance_id, f"could not move agent into place (status {status})")


def _mkdir(template: Template) -> str:
    if template.windows:
        path = template.remote_fs.replace("/", "\\")
        return f'if not exist "{path}" mkdir "{path}"'
    return f"mkdir -p {shlex.quote(template.remote_fs)}"


def _default_agent_command(template: Template) -> str:
    if template.windows:
        return f'cd /d "{template.remote_fs}" && java -jar "{template.agent_path}"'
    return f"cd {shlex.quote(template.remote_fs)} && java -jar {shlex.quote(template.agent_path)}"


async def _copy_stderr(process: asyncssh.SSHClientProcess, record: InstanceRecord) -> None:
    async for line in process.stderr:
        text = line.decode(errors="replace") if isinstance(line, bytes) else line
        record.log.append(text.rstrip())


__all__ = [
    "AgentSession",
    "Launcher",
    "SSHLauncher",
    "resolve_endpoint",
    "wait_completion",
]
