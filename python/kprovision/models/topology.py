"""
kprovision/models/topology.py

Defines Pydantic models for the node topology of a cluster:
 - NodeRole
 - TopologyRequest: how many nodes of each role to create, and with what
   provider parameters
 - ProvisionedNode
 - ProvisionedTopology: created nodes grouped by role
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NodeRole(str, Enum):
    etcd = "etcd"
    master = "master"
    worker = "worker"
    bootstrap = "bootstrap"


class TopologyRequest(BaseModel):
    """Requested node counts per role plus the provisioning parameters.

    Attributes:
        etcd, master, worker, bootstrap: Independent non-negative node counts.
        instance_size: Droplet size for etcd, master and bootstrap nodes.
        worker_size: Droplet size for worker nodes.
        image: Image slug used for every node.
        region: Region slug to deploy to.
        tag: Tag applied to every created resource; teardown is by tag.
        ssh_user: Remote login user on the created nodes.
    """

    model_config = ConfigDict(frozen=True)

    etcd: int = Field(default=1, ge=0)
    master: int = Field(default=1, ge=0)
    worker: int = Field(default=1, ge=0)
    bootstrap: int = Field(default=0, ge=0)
    instance_size: str = "1gb"
    worker_size: str = "4gb"
    image: str = "ubuntu-16-04-x64"
    region: str = "tor1"
    tag: str = "apprenda"
    ssh_user: str = "root"

    @model_validator(mode="after")
    def check_any_nodes(self) -> TopologyRequest:
        if not any(self.role_counts().values()):
            raise ValueError("At least one node of at least one role must be requested.")
        return self

    def role_counts(self) -> Dict[NodeRole, int]:
        return {
            NodeRole.etcd: self.etcd,
            NodeRole.master: self.master,
            NodeRole.worker: self.worker,
            NodeRole.bootstrap: self.bootstrap,
        }

    def size_for(self, role: NodeRole) -> str:
        return self.worker_size if role is NodeRole.worker else self.instance_size


class ProvisionedNode(BaseModel):
    """
    One created machine. Read-only once the gateway has returned it.

    Attributes:
        id: Stable node name, used as the host name in the cluster plan
        public_ipv4: Public address, used for SSH from the operator's machine
        private_ipv4: Private address, used for traffic inside the cluster
        ssh_user: Remote login user
    """

    model_config = ConfigDict(frozen=True)

    id: str
    public_ipv4: str
    private_ipv4: str
    ssh_user: str


class ProvisionedTopology(BaseModel):
    """Created nodes grouped by role."""

    etcd: List[ProvisionedNode] = Field(default_factory=list)
    master: List[ProvisionedNode] = Field(default_factory=list)
    worker: List[ProvisionedNode] = Field(default_factory=list)
    bootstrap: List[ProvisionedNode] = Field(default_factory=list)

    def nodes_for(self, role: NodeRole) -> List[ProvisionedNode]:
        nodes: List[ProvisionedNode] = getattr(self, role.value)
        return nodes

    def all_nodes(self) -> List[ProvisionedNode]:
        return [node for role in NodeRole for node in self.nodes_for(role)]

    def matches(self, request: TopologyRequest) -> bool:
        """True if every role list has exactly the requested number of nodes."""
        return all(
            len(self.nodes_for(role)) == count
            for role, count in request.role_counts().items()
        )


__all__ = [
    "NodeRole",
    "TopologyRequest",
    "ProvisionedNode",
    "ProvisionedTopology",
]
