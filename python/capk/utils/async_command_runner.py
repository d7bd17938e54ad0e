"""
capk/utils/async_command_runner.py

Runs a local command (ssh) as an asyncio subprocess and returns its stdout.
No retries: a failed command is reported to the caller, which requeues.

If the awaiting task is cancelled, or `timeout` elapses, the child process is
killed and reaped before the exception propagates, so no process outlives the
reconciliation that started it.

Usage example:
    from capk.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["ssh", "-V"], sensitive=False)
    except CommandError as err:
        logger.warning("ssh is unusable: %s", err)
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the command was sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    timeout: Optional[float] = None,
) -> str:
    """
    Execute a command in a subprocess and capture its output.

    When `sensitive=True`, the command line, stdout and stderr are left out of
    the raised error (they may carry key material or addresses).

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error.
        env: Additional environment variables to add or override.
        cwd: Working directory for the command.
        input_data: If provided, passed to stdin.
        successful_return_codes: Return codes not treated as errors. Defaults to [0].
        timeout: Seconds before the process is killed, None for no limit.

    Returns:
        The captured, stripped stdout on success.

    Raises:
        CommandError: If the command cannot be started, times out, or exits
            with a code not in `successful_return_codes`.
    """
    ok_codes = successful_return_codes or [0]
    proc_env = None
    if env:
        proc_env = os.environ.copy()
        proc_env.update(env)

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )
    except OSError as ex:
        raise CommandError(f"Failed to start '{command[0]}': {ex}") from ex

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input=input_data.encode() if input_data else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError as ex:
        await _terminate(proc)
        raise CommandError(f"Command timed out after {timeout}s.") from ex
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    stdout_str = stdout_bytes.decode(errors="replace").strip()
    stderr_str = stderr_bytes.decode(errors="replace").strip()

    if proc.returncode not in ok_codes:
        detail = ""
        if not sensitive:
            detail = (
                f"\nCommand: {' '.join(command)}"
                f"\nStdout: {stdout_str}"
                f"\nStderr: {stderr_str}"
            )
        logger.debug("command %s exited with %s", command[0], proc.returncode)
        raise CommandError(
            f"Command failed with return code {proc.returncode}.{detail}",
            proc.returncode,
            "" if sensitive else stderr_str,
        )

    return stdout_str
