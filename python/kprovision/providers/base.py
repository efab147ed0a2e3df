"""
kprovision/providers/base.py

Defines the provisioning gateway: the narrow interface through which the
rest of kprovision creates and destroys cloud nodes.

Gateways make no attempt to roll back a partially created topology. Every
resource they create carries the cluster tag, so `terminate_nodes(tag)` is
the recovery path after any failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Type

from kprovision.models.ssh import SSHIdentity
from kprovision.models.topology import ProvisionedTopology, TopologyRequest


class ProviderError(RuntimeError):
    """A cloud provider operation failed.

    Attributes:
        status (Optional[int]): The HTTP status of the failing call, if any.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ProvisioningGateway(ABC):
    """Abstract base class for creating and destroying cluster nodes."""

    async def __aenter__(self) -> ProvisioningGateway:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        pass

    @abstractmethod
    async def provision_nodes(
        self, request: TopologyRequest, identity: SSHIdentity
    ) -> ProvisionedTopology:
        """
        Create every node in `request`, tagged with `request.tag`, with the
        identity's public key installed.

        Returns:
            ProvisionedTopology: The created nodes grouped by role, each with
            both addresses assigned.

        Raises:
            ProviderError: If any provider call fails.
        """
        pass

    @abstractmethod
    async def terminate_nodes(
        self,
        tag: str,
        *,
        remove_key: bool,
        key_name: Optional[str] = None,
        key_fingerprint: Optional[str] = None,
    ) -> None:
        """
        Delete every node carrying `tag`. If `remove_key` is set, also delete
        the provider-side SSH key object named `key_name`, but only when it
        holds the public key with `key_fingerprint`.

        Raises:
            ProviderError: If any provider call fails, or the named key holds
                a different public key (checked before anything is deleted).
        """
        pass
