"""Windows agents: retrieve the generated Administrator password.

EC2 encrypts the password with the launch key pair and publishes it through
GetPasswordData a few minutes after the instance is running.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from hangar.aws.facade import EC2Facade
from hangar.core.exceptions import BootTimeout, InvalidKey
from hangar.keys import PrivateKey
from hangar.model import InstanceRecord, Template

log = logger.bind(component="windows")


async def fetch_password(
    facade: EC2Facade,
    key: PrivateKey | None,
    record: InstanceRecord,
    template: Template,
    *,
    timeout: float,
    interval: float,
) -> str:
    """Password for the template's admin user on ``record``.

    A static ``windows_password`` on the template is returned as is.
    Otherwise GetPasswordData is polled until the encrypted blob appears.

    Raises:
        BootTimeout: No password published within ``timeout``.
        DecryptFailed: The blob does not decrypt with the cloud key.
    """
    if template.windows_password:
        return template.windows_password
    if key is None:
        raise InvalidKey(f"Cloud key required to decrypt the password of {record.instance_id}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        blob = await facade.get_password_data(record.instance_id)
        if blob:
            record.log.append("password data available, decrypting")
            return key.decrypt_windows_password(blob)
        if loop.time() >= deadline:
            raise BootTimeout(f"No password data for {record.instance_id} after {timeout:.0f}s")
        log.debug("Waiting for password data of {iid}", iid=record.instance_id)
        await asyncio.sleep(min(interval, max(0.0, deadline - loop.time())))
