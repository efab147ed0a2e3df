"""
kprovision/deployment/plan.py

Turns a provisioned topology into a kismatic cluster plan:
  - assemble_plan: build the ConfigurationPlan (needs a master and a worker)
  - render_plan_yaml: default renderer, PyYAML
  - write_plan: write the rendered plan to a newly allocated local file
  - stage_plan: copy that file to the bootstrap node

The local file is the source of truth. A failed copy to the bootstrap node is
logged and reported, never raised.
"""

from __future__ import annotations

import logging
import os
from typing import Awaitable, Callable

import yaml

from kprovision.models.plan import ConfigurationPlan
from kprovision.models.ssh import SSHConfig, SSHIdentity
from kprovision.models.topology import ProvisionedNode, ProvisionedTopology
from kprovision.utils.async_command_runner import CommandError
from kprovision.utils.ssh import scp_file
from kprovision.utils.unique_file import allocate_unique_file

logger = logging.getLogger(__name__)

PLAN_BASE_NAME = "kismatic-cluster"
PLAN_EXTENSION = ".yaml"
REMOTE_PLAN_FILENAME = PLAN_BASE_NAME + PLAN_EXTENSION

PlanRenderer = Callable[[ConfigurationPlan], str]
PlanCopier = Callable[[SSHConfig, str, str], Awaitable[str]]


class PlanPreconditionError(ValueError):
    """The topology lacks a node the plan cannot do without."""


def assemble_plan(
    topology: ProvisionedTopology,
    identity: SSHIdentity,
    *,
    storage: bool,
    install_dir: str,
    password: str,
) -> ConfigurationPlan:
    """
    Build the ConfigurationPlan for a provisioned topology.

    The first worker becomes the ingress node and the first master's public
    address the cluster endpoint. With `storage` set every worker also joins
    the storage cluster.

    Args:
        topology: The provisioned nodes.
        identity: The run's key pair; its key name locates the key on the
            bootstrap node.
        storage: Whether to build a storage cluster from the workers.
        install_dir: Install directory on the bootstrap node, with trailing slash.
        password: Administrative password.

    Raises:
        PlanPreconditionError: If there is no master or no worker node.
    """
    if not topology.master:
        raise PlanPreconditionError("Cannot build a plan without a master node.")
    if not topology.worker:
        raise PlanPreconditionError("Cannot build a plan without a worker node.")

    first_master = topology.master[0]
    return ConfigurationPlan(
        admin_password=password,
        etcd=list(topology.etcd),
        master=list(topology.master),
        worker=list(topology.worker),
        ingress=[topology.worker[0]],
        storage=list(topology.worker) if storage else [],
        master_node_fqdn=first_master.public_ipv4,
        master_node_short_name=first_master.public_ipv4,
        ssh_key_file=f"{install_dir}ssh/{identity.key_name}",
        ssh_user=first_master.ssh_user,
    )


def render_plan_yaml(plan: ConfigurationPlan) -> str:
    return yaml.safe_dump(
        plan.to_kismatic_document(), sort_keys=False, default_flow_style=False
    )


def write_plan(
    plan: ConfigurationPlan,
    *,
    directory: str = ".",
    renderer: PlanRenderer = render_plan_yaml,
) -> str:
    """
    Render the plan and write it to `kismatic-cluster.yaml`, or to
    `kismatic-cluster-<n>.yaml` for the first free n if that exists.

    Returns:
        Path of the written file.
    """
    content = renderer(plan)
    path, handle = allocate_unique_file(PLAN_BASE_NAME, PLAN_EXTENSION, directory)
    with handle:
        handle.write(content)
    return path


def remote_plan_path(install_dir: str) -> str:
    return install_dir + REMOTE_PLAN_FILENAME


async def stage_plan(
    plan_path: str,
    bootstrap: ProvisionedNode,
    identity: SSHIdentity,
    *,
    install_dir: str,
    copier: PlanCopier = scp_file,
) -> bool:
    """
    Copy the local plan file to the bootstrap node.

    Returns:
        True if the copy succeeded, False if it failed (logged as a warning).
    """
    local_path = os.path.abspath(plan_path)
    dest_path = remote_plan_path(install_dir)
    cfg = SSHConfig.for_host(identity, bootstrap.ssh_user, bootstrap.public_ipv4)

    print(f"Copying kismatic plan file to bootstrap node {bootstrap.id}: {dest_path}")
    try:
        await copier(cfg, local_path, dest_path)
    except (CommandError, OSError) as exc:
        logger.warning(
            "Unable to push kismatic plan to bootstrap node %s: %s", bootstrap.id, exc
        )
        return False
    return True
