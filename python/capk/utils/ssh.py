"""
capk/utils/ssh.py

Remote command execution on node VMs over SSH.

The cluster key pair is written to an ephemeral 0600 file in /dev/shm for the
duration of one `ssh` invocation. Host keys of the VMs are not pinned unless
given in SSHConfig.host_keys: the VMs are created by the controller and
authenticated through the cluster key pair instead.
"""

from __future__ import annotations

import os
import shlex
from typing import List, Protocol

import aiofiles

from capk.models.ssh import SSHConfig, SSHKeyPair
from capk.utils.async_command_runner import run_command
from capk.utils.ephemeral_file import ephemeral_dir, ephemeral_file


class CommandExecutor(Protocol):
    """Runs one command on a VM and returns its stdout (raises CommandError)."""

    async def execute(self, command: List[str]) -> str: ...


async def run_ssh_command(
    ssh_config: SSHConfig,
    remote_command: List[str],
    *,
    sensitive: bool = True,
) -> str:
    """
    Run one command over SSH, without retries.

    Args:
      ssh_config: user, hostname, port, private_key, optional host_keys
      remote_command: The remote command tokens (shell-quoted before sending)
      sensitive: If True, hides details on error

    Returns:
      captured stdout from the remote command

    Raises:
      CommandError: if ssh cannot connect or the command fails.
    """
    async with ephemeral_file(
        ssh_config.private_key.encode("utf-8"), file_name="ssh_idkey", prefix="sshpk-"
    ) as pk_path:
        async with ephemeral_dir(prefix="sshkh-") as kh_dir:
            if ssh_config.host_keys:
                kh_path = os.path.join(kh_dir, "known_hosts")
                async with aiofiles.open(kh_path, "w", encoding="utf-8") as fkh:
                    for line in ssh_config.host_keys:
                        await fkh.write(line + "\n")
                host_key_opts = [
                    "-o",
                    "StrictHostKeyChecking=yes",
                    "-o",
                    f"UserKnownHostsFile={kh_path}",
                ]
            else:
                host_key_opts = [
                    "-o",
                    "StrictHostKeyChecking=no",
                    "-o",
                    "UserKnownHostsFile=/dev/null",
                ]

            ssh_cmd = [
                "ssh",
                "-p",
                str(ssh_config.port),
                "-i",
                pk_path,
                "-o",
                "BatchMode=yes",
                "-o",
                f"ConnectTimeout={int(ssh_config.connect_timeout_seconds)}",
                "-o",
                "GlobalKnownHostsFile=/dev/null",
                "-o",
                "LogLevel=ERROR",
                *host_key_opts,
                f"{ssh_config.user}@{ssh_config.hostname}",
                " ".join(shlex.quote(x) for x in remote_command),
            ]
            return await run_command(
                ssh_cmd,
                sensitive=sensitive,
                timeout=ssh_config.command_timeout_seconds,
            )


class VMCommandExecutor:
    """
    Executes commands on one VM, authenticated with the cluster key pair.

    Args:
        address: IP address of the VM.
        key_pair: The cluster SSH key pair.
        user: Login user on the VM.
        port: SSH port.
        connect_timeout_seconds: ssh ConnectTimeout.
    """

    def __init__(
        self,
        address: str,
        key_pair: SSHKeyPair,
        *,
        user: str = "capk",
        port: int = 22,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self.address = address
        self.key_pair = key_pair
        self._user = user
        self._port = port
        self._connect_timeout = connect_timeout_seconds

    async def execute(self, command: List[str]) -> str:
        cfg = SSHConfig(
            user=self._user,
            hostname=self.address,
            port=self._port,
            private_key=self.key_pair.private_key,
            connect_timeout_seconds=self._connect_timeout,
        )
        return await run_ssh_command(cfg, command)
