from __future__ import annotations

import os
import stat
from typing import Dict, List

import pytest

from capk.models.ssh import SSHConfig
from capk.tests import objects
from capk.utils import ssh as ssh_utils
from capk.utils.async_command_runner import CommandError, run_command
from capk.utils.ssh import VMCommandExecutor, run_ssh_command


@pytest.fixture
def captured(monkeypatch) -> Dict[str, List]:
    """Replace run_command in the ssh module; record argv and key-file state."""
    seen: Dict[str, List] = {"argv": [], "key_mode": [], "key_content": []}

    async def fake_run_command(command, **kwargs):
        seen["argv"].append(list(command))
        key_path = command[command.index("-i") + 1]
        seen["key_mode"].append(stat.S_IMODE(os.stat(key_path).st_mode))
        with open(key_path, "r", encoding="utf-8") as fkey:
            seen["key_content"].append(fkey.read())
        seen["key_path"] = [key_path]
        return "out"

    monkeypatch.setattr(ssh_utils, "run_command", fake_run_command)
    return seen


@pytest.mark.asyncio
async def test_executor_runs_one_batch_mode_ssh(captured):
    executor = VMCommandExecutor(
        objects.VM_ADDRESS, objects.key_pair(), user="capk", port=2222, connect_timeout_seconds=5
    )

    assert await executor.execute(["cat", "/run/cluster-api/bootstrap-success.complete"]) == "out"

    argv = captured["argv"][0]
    assert argv[0] == "ssh"
    assert argv[argv.index("-p") + 1] == "2222"
    assert "BatchMode=yes" in argv
    assert "ConnectTimeout=5" in argv
    assert "StrictHostKeyChecking=no" in argv
    assert argv[-2] == f"capk@{objects.VM_ADDRESS}"
    assert argv[-1] == "cat /run/cluster-api/bootstrap-success.complete"
    assert captured["key_mode"] == [0o600]
    assert captured["key_content"] == [objects.PRIVATE_KEY]
    assert not os.path.exists(captured["key_path"][0])


@pytest.mark.asyncio
async def test_remote_command_is_quoted(captured):
    cfg = SSHConfig(
        user="capk", hostname=objects.VM_ADDRESS, private_key=objects.PRIVATE_KEY
    )

    await run_ssh_command(cfg, ["echo", "a b; rm -rf /"])

    assert captured["argv"][0][-1] == "echo 'a b; rm -rf /'"


@pytest.mark.asyncio
async def test_known_host_keys_are_pinned(captured):
    cfg = SSHConfig(
        user="capk",
        hostname=objects.VM_ADDRESS,
        private_key=objects.PRIVATE_KEY,
        host_keys=[f"{objects.VM_ADDRESS} ssh-ed25519 AAAAhost"],
    )

    await run_ssh_command(cfg, ["hostname"])

    argv = captured["argv"][0]
    assert "StrictHostKeyChecking=yes" in argv
    assert "UserKnownHostsFile=/dev/null" not in argv


def test_empty_private_key_is_rejected():
    with pytest.raises(ValueError):
        SSHConfig(user="capk", hostname="h", private_key="  ")


@pytest.mark.asyncio
async def test_run_command_returns_stripped_stdout():
    assert await run_command(["echo", " hello "]) == "hello"


@pytest.mark.asyncio
async def test_run_command_failure_hides_sensitive_output():
    with pytest.raises(CommandError) as err:
        await run_command(["sh", "-c", "echo secret >&2; exit 3"])

    assert err.value.return_code == 3
    assert err.value.stderr == ""
    assert "secret" not in str(err.value)


@pytest.mark.asyncio
async def test_run_command_failure_reports_details_when_not_sensitive():
    with pytest.raises(CommandError) as err:
        await run_command(["sh", "-c", "echo oops >&2; exit 1"], sensitive=False)

    assert err.value.stderr == "oops"


@pytest.mark.asyncio
async def test_run_command_missing_binary():
    with pytest.raises(CommandError, match="Failed to start"):
        await run_command(["definitely-not-a-real-binary-capk"])


@pytest.mark.asyncio
async def test_run_command_timeout():
    with pytest.raises(CommandError, match="timed out"):
        await run_command(["sleep", "5"], timeout=0.1)
