"""
filename: kprovision/deployment/provision.py

Drives a full provisioning run against a ProvisioningGateway:

  1) Provision the requested topology (tagged with the cluster tag).
  2) Check every role got exactly the requested number of nodes.
  3) Wait until all nodes accept SSH.
  4) Either print the nodes (no plan requested), or assemble the kismatic
     plan, write it to a fresh local file and, when a bootstrap node exists,
     copy it there.

Nothing is rolled back on failure. `delete_infrastructure` with the cluster
tag removes whatever was created.
"""

from __future__ import annotations

import random
from typing import List, Optional

from pydantic import BaseModel

from kprovision.deployment.plan import (
    PlanCopier,
    PlanPreconditionError,
    PlanRenderer,
    assemble_plan,
    render_plan_yaml,
    stage_plan,
    write_plan,
)
from kprovision.deployment.readiness import SSHProbe, wait_for_ssh
from kprovision.models.settings import ProvisionSettings
from kprovision.models.ssh import SSHIdentity
from kprovision.models.topology import (
    NodeRole,
    ProvisionedTopology,
    TopologyRequest,
)
from kprovision.providers.base import ProviderError, ProvisioningGateway
from kprovision.utils.password import generate_alphanumeric_password
from kprovision.utils.ssh import scp_file, ssh_handshake


class PlanOptions(BaseModel):
    """
    Attributes:
        no_plan: Skip writing a plan; just report the nodes.
        storage: Build a storage cluster from all worker nodes.
    """

    no_plan: bool = False
    storage: bool = False


def format_nodes(topology: ProvisionedTopology) -> str:
    """Human-readable node table, one section per role."""
    lines: List[str] = []
    for role in NodeRole:
        lines.append(f"{role.value.capitalize()}:")
        lines.extend(
            f"  {n.id} ({n.public_ipv4}, {n.private_ipv4})"
            for n in topology.nodes_for(role)
        )
    return "\n".join(lines)


async def create_infrastructure(
    request: TopologyRequest,
    options: PlanOptions,
    gateway: ProvisioningGateway,
    identity: SSHIdentity,
    *,
    settings: ProvisionSettings,
    workdir: str = ".",
    probe: SSHProbe = ssh_handshake,
    renderer: PlanRenderer = render_plan_yaml,
    copier: PlanCopier = scp_file,
    rng: Optional[random.Random] = None,
    readiness_initial_delay: float = 2.0,
    readiness_max_delay: float = 15.0,
) -> Optional[str]:
    """
    Provision a cluster and, unless `options.no_plan`, write its plan.

    Args:
        request: Node counts and provider parameters.
        options: Plan options.
        gateway: Creates the nodes.
        identity: The run's key pair.
        settings: Supplies the install directory and the readiness deadline.
        workdir: Directory the plan file is written to.
        probe: SSH readiness probe.
        renderer: Turns the plan into file content.
        copier: Copies the plan file to the bootstrap node.
        rng: Randomness for the admin password.
        readiness_initial_delay: First backoff of the SSH probes.
        readiness_max_delay: Backoff cap of the SSH probes.

    Returns:
        The local plan path, or None when no plan was requested.

    Raises:
        ProviderError: If provisioning fails or returns the wrong node counts.
        ReadinessTimeout: If some node never accepts SSH.
        PlanPreconditionError: If a plan is requested without master or worker
            nodes; checked before anything is provisioned.
    """
    if not options.no_plan and (request.master == 0 or request.worker == 0):
        raise PlanPreconditionError(
            "A plan needs at least one master and one worker node; "
            "request them or pass --noplan."
        )

    print("Provisioning")
    topology = await gateway.provision_nodes(request, identity)
    if not topology.matches(request):
        got = {r.value: len(topology.nodes_for(r)) for r in NodeRole}
        wanted = {r.value: c for r, c in request.role_counts().items()}
        raise ProviderError(
            f"Provisioned topology {got} does not match the request {wanted}."
        )

    print("Waiting for SSH")
    await wait_for_ssh(
        topology.all_nodes(),
        identity,
        deadline=settings.readiness_deadline_seconds,
        initial_delay=readiness_initial_delay,
        max_delay=readiness_max_delay,
        probe=probe,
    )

    if options.no_plan:
        print("Your instances are ready.")
        print(format_nodes(topology))
        return None

    plan = assemble_plan(
        topology,
        identity,
        storage=options.storage,
        install_dir=settings.ket_install_dir,
        password=generate_alphanumeric_password(rng),
    )
    plan_path = write_plan(plan, directory=workdir, renderer=renderer)

    if topology.bootstrap:
        await stage_plan(
            plan_path,
            topology.bootstrap[0],
            identity,
            install_dir=settings.ket_install_dir,
            copier=copier,
        )

    print("To install your cluster, run:")
    print(f"./kismatic install apply -f {plan_path}")
    return plan_path


async def delete_infrastructure(
    gateway: ProvisioningGateway,
    tag: str,
    *,
    remove_key: bool,
    key_name: Optional[str] = None,
    key_fingerprint: Optional[str] = None,
) -> None:
    """Delete every node tagged `tag`, and optionally the provider SSH key."""
    await gateway.terminate_nodes(
        tag,
        remove_key=remove_key,
        key_name=key_name,
        key_fingerprint=key_fingerprint,
    )
    print(f"Deleted all nodes tagged '{tag}'.")
