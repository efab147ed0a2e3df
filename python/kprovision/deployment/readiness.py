"""
Waits until every provisioned node accepts SSH connections.

One task per node probes its node's public address with the run's private key.
Each task retries on its own exponential backoff schedule. Connection refused,
handshake failures and authentication failures all count as "not ready yet":
cloud-init may still be creating the login account when the key is first
offered. The whole wait shares a single deadline; when it expires the
remaining tasks are cancelled and ReadinessTimeout names the nodes that never
answered. No cloud resources are touched on timeout.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Sequence

from kprovision.models.ssh import SSHConfig, SSHIdentity
from kprovision.models.topology import ProvisionedNode
from kprovision.utils.async_command_runner import CommandError
from kprovision.utils.async_retry import backoff_delay
from kprovision.utils.ssh import ssh_handshake

logger = logging.getLogger(__name__)

SSHProbe = Callable[[SSHConfig], Awaitable[None]]

# asyncio.TimeoutError covers a probe that enforces its own timeout
NOT_READY_ERRORS = (CommandError, OSError, asyncio.TimeoutError)

DEFAULT_DEADLINE = 600.0
DEFAULT_INITIAL_DELAY = 2.0
DEFAULT_MAX_DELAY = 15.0


class ReadinessTimeout(Exception):
    """Some nodes did not accept SSH before the deadline.

    Attributes:
        unready (List[str]): Ids of the nodes that never became reachable.
    """

    def __init__(self, unready: List[str], deadline: float) -> None:
        super().__init__(
            f"Timed out after {deadline:g}s waiting for SSH on: {', '.join(unready)}"
        )
        self.unready = unready


async def wait_for_node(
    node: ProvisionedNode,
    identity: SSHIdentity,
    *,
    probe: SSHProbe = ssh_handshake,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> None:
    """Probe a single node until it answers. Never gives up on its own."""
    cfg = SSHConfig.for_host(identity, node.ssh_user, node.public_ipv4)
    attempt = 1
    while True:
        try:
            await probe(cfg)
        except NOT_READY_ERRORS as exc:
            wait = backoff_delay(attempt, initial_delay, 2.0, max_delay)
            logger.debug(
                "%s (%s) not ready, attempt %d: %s; retrying in %.1fs",
                node.id,
                node.public_ipv4,
                attempt,
                exc,
                wait,
            )
            await asyncio.sleep(wait)
            attempt += 1
        else:
            logger.info("%s (%s) is reachable over SSH", node.id, node.public_ipv4)
            return


async def wait_for_ssh(
    nodes: Sequence[ProvisionedNode],
    identity: SSHIdentity,
    *,
    deadline: float = DEFAULT_DEADLINE,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    probe: SSHProbe = ssh_handshake,
) -> None:
    """
    Block until all nodes accept SSH, or the deadline expires.

    Args:
        nodes: Every node of the topology, flattened across roles.
        identity: The run's key pair; only the private key is used.
        deadline: Seconds allowed for the whole wait.
        initial_delay: Backoff after a node's first failed probe.
        max_delay: Backoff cap.
        probe: Makes one connection attempt; raises on failure.

    Raises:
        ReadinessTimeout: If any node was still unreachable at the deadline.
    """
    if not nodes:
        return

    tasks: Dict["asyncio.Task[None]", ProvisionedNode] = {
        asyncio.ensure_future(
            wait_for_node(
                node,
                identity,
                probe=probe,
                initial_delay=initial_delay,
                max_delay=max_delay,
            )
        ): node
        for node in nodes
    }

    done, pending = await asyncio.wait(
        tasks, timeout=deadline, return_when=asyncio.FIRST_EXCEPTION
    )

    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    # anything other than "not ready" escaped a probe: surface it as is
    for task in done:
        exc = task.exception()
        if exc is not None:
            raise exc

    if pending:
        unready = [node.id for task, node in tasks.items() if task in pending]
        raise ReadinessTimeout(unready, deadline)
