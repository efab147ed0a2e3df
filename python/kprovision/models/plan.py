"""
kprovision/models/plan.py

Defines the ConfigurationPlan model: everything the downstream kismatic
installer needs to know about a freshly provisioned cluster.
"""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field

from kprovision.models.topology import ProvisionedNode


class ConfigurationPlan(BaseModel):
    """A cluster plan, created once per run and written to exactly one file.

    Attributes:
        admin_password: Administrative password for the cluster.
        etcd, master, worker: Per-role node lists.
        ingress: The distinguished ingress node (first worker), as a list.
        storage: Every worker when a storage cluster was requested, else empty.
        master_node_fqdn: Cluster endpoint, the first master's public address.
        master_node_short_name: Short name of the cluster endpoint.
        ssh_key_file: Path of the SSH private key on the bootstrap node.
        ssh_user: Remote login user the installer connects as.
    """

    admin_password: str
    etcd: List[ProvisionedNode] = Field(default_factory=list)
    master: List[ProvisionedNode]
    worker: List[ProvisionedNode]
    ingress: List[ProvisionedNode]
    storage: List[ProvisionedNode] = Field(default_factory=list)
    master_node_fqdn: str
    master_node_short_name: str
    ssh_key_file: str
    ssh_user: str

    def to_kismatic_document(self) -> Dict[str, Any]:
        """Build the plan document in the layout the kismatic installer reads."""
        return {
            "cluster": {
                "name": "kubernetes",
                "admin_password": self.admin_password,
                "allow_package_installation": True,
                "networking": {
                    "type": "overlay",
                    "pod_cidr_block": "172.16.0.0/16",
                    "service_cidr_block": "172.20.0.0/16",
                    "update_hosts_files": True,
                },
                "certificates": {"expiry": "17520h"},
                "ssh": {
                    "user": self.ssh_user,
                    "ssh_key": self.ssh_key_file,
                    "ssh_port": 22,
                },
            },
            "etcd": _node_group(self.etcd),
            "master": {
                **_node_group(self.master),
                "load_balanced_fqdn": self.master_node_fqdn,
                "load_balanced_short_name": self.master_node_short_name,
            },
            "worker": _node_group(self.worker),
            "ingress": _node_group(self.ingress),
            "storage": _node_group(self.storage),
        }


def _node_group(nodes: List[ProvisionedNode]) -> Dict[str, Any]:
    return {
        "expected_count": len(nodes),
        "nodes": [
            {"host": n.id, "ip": n.public_ipv4, "internalip": n.private_ipv4}
            for n in nodes
        ],
    }
