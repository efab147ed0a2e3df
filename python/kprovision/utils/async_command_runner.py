"""
kprovision/utils/async_command_runner.py

Provides an asynchronous command runner with retry logic, used for the ssh and
scp invocations made against freshly provisioned nodes.

`successful_return_codes` lists the exit codes that are not treated as errors
(defaults to [0]).

Usage example:
    from kprovision.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["ssh", "root@10.0.0.1", "true"], retries=1)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from typing import Dict, List, Optional

from kprovision.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    If the command fails (return code not in successful_return_codes) we raise
    CommandError. When `sensitive=True`, the command, stdout and stderr are
    omitted from the error message.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total attempts before giving up. Defaults to 3.
        retry_delay (float):
            Delay in seconds between attempts. Defaults to 1.0.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command cannot be started or fails after all retries.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except OSError as exc:
            raise CommandError(f"Failed to start '{command[0]}': {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await proc.communicate(
                input=input_data.encode() if input_data else None
            )
        except asyncio.CancelledError:
            # an abandoned command must not outlive its caller
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
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

            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
            )

        return stdout_str

    return await _inner_run_command()
