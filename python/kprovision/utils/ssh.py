"""
kprovision/utils/ssh.py

Provides SSH-related operations against freshly provisioned nodes:
  - ssh_handshake: minimal connection that runs `exit 0`, used as a readiness probe.
  - run_ssh_command: run a command on a node.
  - scp_file: copy a local file onto a node.

New nodes have unknown host keys, so host-key checking is disabled and
nothing is recorded in the operator's known_hosts.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import List, Optional

from kprovision.models.ssh import SSHConfig
from kprovision.utils.async_command_runner import run_command


def _ssh_options(cfg: SSHConfig) -> List[str]:
    return [
        "-i",
        cfg.private_key_path,
        "-o",
        "BatchMode=yes",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        "LogLevel=ERROR",
        "-o",
        f"ConnectTimeout={cfg.connect_timeout}",
    ]


async def ssh_handshake(cfg: SSHConfig) -> None:
    """
    Open a single SSH session that immediately exits.

    Exactly one attempt is made; callers own the retry schedule.

    Raises:
      CommandError: if the connection is refused, the handshake fails or
                    authentication is rejected.
    """
    ssh_cmd = (
        ["ssh", "-p", str(cfg.port)]
        + _ssh_options(cfg)
        + [f"{cfg.user}@{cfg.hostname}", "exit", "0"]
    )
    await run_command(ssh_cmd, retries=1)


async def run_ssh_command(
    cfg: SSHConfig,
    remote_command: List[str],
    *,
    sensitive: bool = True,
    retries: int = 3,
    retry_delay: float = 1.0,
    successful_return_codes: Optional[List[int]] = None,
) -> str:
    """
    Run a command on the remote host.

    Args:
      cfg: Connection settings
      remote_command: The remote command tokens, quoted before sending
      sensitive: If True, hides details on error
      retries: how many times to try
      retry_delay: seconds between attempts
      successful_return_codes: Exit codes considered "non-error", default [0]

    Returns:
      captured stdout from the remote command
    """
    ssh_cmd = (
        ["ssh", "-p", str(cfg.port)]
        + _ssh_options(cfg)
        + [
            f"{cfg.user}@{cfg.hostname}",
            " ".join(shlex.quote(x) for x in remote_command),
        ]
    )
    return await run_command(
        ssh_cmd,
        sensitive=sensitive,
        retries=retries,
        retry_delay=retry_delay,
        successful_return_codes=successful_return_codes,
    )


async def scp_file(
    cfg: SSHConfig,
    local_path: str,
    remote_path: str,
    *,
    retries: int = 3,
    retry_delay: float = 2.0,
) -> str:
    """
    Copy `local_path` to `remote_path` on the host, creating the remote
    directory first.

    Returns:
      captured stdout of scp

    Raises:
      CommandError: if either the mkdir or the copy fails after all retries.
    """
    remote_dir = posixpath.dirname(remote_path)
    if remote_dir:
        await run_ssh_command(
            cfg,
            ["mkdir", "-p", remote_dir],
            retries=retries,
            retry_delay=retry_delay,
        )

    scp_cmd = (
        ["scp", "-P", str(cfg.port)]
        + _ssh_options(cfg)
        + [local_path, f"{cfg.user}@{cfg.hostname}:{remote_path}"]
    )
    return await run_command(
        scp_cmd,
        sensitive=False,
        retries=retries,
        retry_delay=retry_delay,
    )
