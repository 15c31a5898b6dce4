# keyfleet/core/transport.py
"""
Remote transport
Moves file content to and from managed hosts
"""

import asyncio
import os
import shlex
import tempfile
from abc import ABC, abstractmethod
from typing import List, Optional
import logging

from keyfleet.config import Settings, settings as default_settings
from keyfleet.schemas.deploy import HostAddress
from .errors import TransportError

logger = logging.getLogger(__name__)


class RemoteTransport(ABC):
    """
    Transport interface injected into the deployment driver

    Every call takes an explicit timeout in seconds and raises
    TransportError on failure.
    """

    @abstractmethod
    async def write(self, address: HostAddress, path: str, data: bytes, timeout: float) -> None:
        """Create or truncate path with data, readable only by its owner"""

    @abstractmethod
    async def read(self, address: HostAddress, path: str, timeout: float) -> bytes:
        """Return the content of path"""

    @abstractmethod
    async def atomic_replace(self, address: HostAddress, tmp_path: str, final_path: str, timeout: float) -> None:
        """Rename tmp_path over final_path on the host's filesystem"""

    @abstractmethod
    async def remove(self, address: HostAddress, path: str, timeout: float) -> None:
        """Delete path if it exists"""


class SSHTransport(RemoteTransport):
    """
    Transport over the OpenSSH client

    Host authenticity is checked against the compiled known_hosts fragment
    carried by the address. Paths are relative to the login user's home
    unless absolute.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def cmd_base(self, address: HostAddress, known_hosts_file: Optional[str] = None) -> List[str]:
        cmd = [
            self.settings.SSH_BINARY,
            "-p",
            str(address.port),
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.settings.SSH_CONNECT_TIMEOUT}",
        ]
        if known_hosts_file:
            cmd += ["-o", f"UserKnownHostsFile={known_hosts_file}", "-o", "StrictHostKeyChecking=yes"]
        elif self.settings.SSH_STRICT_HOST_KEY_CHECKING:
            cmd += ["-o", "StrictHostKeyChecking=yes"]
        else:
            cmd += ["-o", "StrictHostKeyChecking=accept-new"]
        if self.settings.SSH_IDENTITY_FILE:
            cmd += ["-i", self.settings.SSH_IDENTITY_FILE]
        if self.settings.SSH_PROXY_JUMP:
            cmd += ["-J", self.settings.SSH_PROXY_JUMP]
        cmd.append(f"{address.username}@{address.hostname}")
        return cmd

    async def _run(
        self,
        address: HostAddress,
        remote_cmd: str,
        timeout: float,
        stdin: Optional[bytes] = None
    ) -> bytes:
        """Run one remote command, return stdout"""
        known_hosts_file = None
        if address.known_hosts.strip():
            fd, known_hosts_file = tempfile.mkstemp(prefix="keyfleet-known-hosts-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(address.known_hosts)

        cmd = self.cmd_base(address, known_hosts_file) + [remote_cmd]
        logger.debug(f"Running on {address}: {remote_cmd}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise TransportError(f"{address}: '{remote_cmd}' timed out after {timeout}s", timed_out=True)
            except asyncio.CancelledError:
                proc.kill()
                raise
        except OSError as e:
            raise TransportError(f"{address}: cannot start ssh: {e}")
        finally:
            if known_hosts_file:
                os.unlink(known_hosts_file)

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()
            raise TransportError(f"{address}: '{remote_cmd}' exited with {proc.returncode}: {detail}")
        return stdout

    async def write(self, address: HostAddress, path: str, data: bytes, timeout: float) -> None:
        directory = os.path.dirname(path)
        remote_cmd = "umask 077"
        if directory:
            remote_cmd += f" && mkdir -p {shlex.quote(directory)}"
        remote_cmd += f" && cat > {shlex.quote(path)}"
        await self._run(address, remote_cmd, timeout, stdin=data)

    async def read(self, address: HostAddress, path: str, timeout: float) -> bytes:
        return await self._run(address, f"cat {shlex.quote(path)}", timeout)

    async def atomic_replace(self, address: HostAddress, tmp_path: str, final_path: str, timeout: float) -> None:
        await self._run(address, f"mv -f {shlex.quote(tmp_path)} {shlex.quote(final_path)}", timeout)

    async def remove(self, address: HostAddress, path: str, timeout: float) -> None:
        await self._run(address, f"rm -f {shlex.quote(path)}", timeout)
