"""
filename: kprovision/providers/digitalocean.py

A ProvisioningGateway backed by the DigitalOcean v2 REST API (aiohttp).

Provisioning steps:
  1) Ensure the run's public key is registered on the account. A key is
     reused only when its fingerprint matches the local public key.
  2) Create droplets role by role, at most 10 per API call, all tagged with
     the cluster tag. The bootstrap droplet gets a cloud-init script that
     prepares the kismatic install directory.
  3) Poll every droplet until it is active with a public and a private IPv4.

Only step 3 is retried; a failing API call raises ProviderError at once.
"""

from __future__ import annotations

import asyncio
import logging
import textwrap
from typing import Any, Dict, List, Optional, Tuple, Type

import aiohttp
from pydantic import BaseModel, Field

from kprovision.models.settings import DEFAULT_KET_INSTALL_DIR
from kprovision.models.ssh import SSHIdentity
from kprovision.models.topology import (
    NodeRole,
    ProvisionedNode,
    ProvisionedTopology,
    TopologyRequest,
)
from kprovision.providers.base import ProviderError, ProvisioningGateway
from kprovision.secrets.ssh import public_key_fingerprint, read_public_key
from kprovision.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

DO_API_BASE = "https://api.digitalocean.com/v2"
MAX_NAMES_PER_CREATE = 10
KEYS_PER_PAGE = 200
KISMATIC_VERSION = "v1.3.0"
KUBECTL_VERSION = "v1.6.0"


class DropletPending(Exception):
    """The droplet is not active yet, or has no addresses yet."""


class DropletNetwork(BaseModel):
    ip_address: str
    type: str


class DropletNetworks(BaseModel):
    v4: List[DropletNetwork] = Field(default_factory=list)


class Droplet(BaseModel):
    id: int
    name: str
    status: str
    networks: DropletNetworks = Field(default_factory=DropletNetworks)

    def ipv4(self, kind: str) -> Optional[str]:
        """First IPv4 address of the given type ('public' or 'private')."""
        return next((n.ip_address for n in self.networks.v4 if n.type == kind), None)


class AccountKey(BaseModel):
    id: int
    name: str
    fingerprint: str


def node_name(tag: str, role: NodeRole, index: int) -> str:
    return f"{tag}-{role.value}-{index}"


def bootstrap_user_data(install_dir: str) -> str:
    """cloud-init script that downloads kismatic and kubectl into `install_dir`."""
    return textwrap.dedent(
        f"""\
        #!/usr/bin/env bash
        set -eux
        mkdir -p {install_dir}ssh
        cd {install_dir}
        curl -sSL https://github.com/apprenda/kismatic/releases/download/{KISMATIC_VERSION}/kismatic-{KISMATIC_VERSION}-linux-amd64.tar.gz | tar -xz
        curl -sSLo kubectl https://storage.googleapis.com/kubernetes-release/release/{KUBECTL_VERSION}/bin/linux/amd64/kubectl
        chmod +x kubectl
        """
    )


def _require_fingerprint(key: AccountKey, fingerprint: str) -> None:
    if key.fingerprint != fingerprint:
        raise ProviderError(
            f"Account SSH key '{key.name}' has fingerprint {key.fingerprint}, "
            f"but the local public key is {fingerprint}. Rename the local key "
            "or remove the account key."
        )


def _chunks(items: List[str], size: int) -> List[List[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class DigitalOceanGateway(ProvisioningGateway):
    """Creates and deletes droplets for a cluster through the DigitalOcean API."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DO_API_BASE,
        install_dir: str = DEFAULT_KET_INSTALL_DIR,
        session: Optional[aiohttp.ClientSession] = None,
        poll_retries: int = 60,
        poll_delay: float = 5.0,
    ) -> None:
        """
        Args:
            token: DigitalOcean API token.
            api_base: Base URL of the API.
            install_dir: Install directory prepared on the bootstrap droplet.
            session: An existing aiohttp session to use; not closed on exit.
            poll_retries: Status checks per droplet before giving up.
            poll_delay: Seconds between status checks.
        """
        if not token:
            raise ValueError("A DigitalOcean API token is required.")
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._install_dir = install_dir
        self._session = session
        self._owns_session = session is None
        self._poll_retries = poll_retries
        self._poll_delay = poll_delay

    async def __aenter__(self) -> DigitalOceanGateway:
        await self.ensure_session()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        expected: Tuple[int, ...] = (200,),
    ) -> Dict[str, Any]:
        session = await self.ensure_session()
        url = f"{self._api_base}{path}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        async with session.request(
            method, url, headers=headers, json=json, params=params
        ) as resp:
            if resp.status not in expected:
                body = await resp.text()
                raise ProviderError(
                    f"DigitalOcean {method} {path} failed: {resp.status}, {body}",
                    status=resp.status,
                )
            if resp.status == 204:
                return {}
            js: Dict[str, Any] = await resp.json()
            return js

    # ------------------------------------------------------------------
    # SSH keys
    # ------------------------------------------------------------------

    async def list_keys(self) -> List[AccountKey]:
        """Every account key, following `links.pages.next` across pages."""
        keys: List[AccountKey] = []
        page = 1
        while True:
            js = await self._request(
                "GET",
                "/account/keys",
                params={"per_page": KEYS_PER_PAGE, "page": page},
            )
            keys.extend(AccountKey.model_validate(k) for k in js.get("ssh_keys", []))
            if not js.get("links", {}).get("pages", {}).get("next"):
                return keys
            page += 1

    async def find_key(self, key_name: str) -> Optional[AccountKey]:
        return next((k for k in await self.list_keys() if k.name == key_name), None)

    async def find_owned_key(
        self, key_name: str, fingerprint: str
    ) -> Optional[AccountKey]:
        """
        The account key named `key_name`, provided it holds our public key.

        Raises:
            ProviderError: If a key with that name holds a different public key.
        """
        key = await self.find_key(key_name)
        if key is not None:
            _require_fingerprint(key, fingerprint)
        return key

    async def ensure_key(self, identity: SSHIdentity) -> AccountKey:
        """
        Return the account key holding the identity's public key, uploading it
        under the identity's key name if the account has no such key.

        Raises:
            ProviderError: If the key name is taken by a different public key.
        """
        public_key = await read_public_key(identity)
        fingerprint = public_key_fingerprint(public_key)

        keys = await self.list_keys()
        named = next((k for k in keys if k.name == identity.key_name), None)
        if named is not None:
            _require_fingerprint(named, fingerprint)
        existing = named or next((k for k in keys if k.fingerprint == fingerprint), None)
        if existing is not None:
            logger.info("Reusing SSH key '%s' (%s)", existing.name, existing.fingerprint)
            return existing

        js = await self._request(
            "POST",
            "/account/keys",
            json={"name": identity.key_name, "public_key": public_key},
            expected=(200, 201),
        )
        created = AccountKey.model_validate(js["ssh_key"])
        logger.info("Registered SSH key '%s' (%s)", created.name, created.fingerprint)
        return created

    # ------------------------------------------------------------------
    # Droplets
    # ------------------------------------------------------------------

    async def create_droplets(
        self,
        names: List[str],
        *,
        request: TopologyRequest,
        size: str,
        key: AccountKey,
        user_data: Optional[str] = None,
    ) -> List[Droplet]:
        """Create droplets with the given names, in batches of at most 10."""
        created: List[Droplet] = []
        for batch in _chunks(names, MAX_NAMES_PER_CREATE):
            payload: Dict[str, Any] = {
                "names": batch,
                "region": request.region,
                "size": size,
                "image": request.image,
                "ssh_keys": [key.fingerprint],
                "private_networking": True,
                "tags": [request.tag],
            }
            if user_data is not None:
                payload["user_data"] = user_data
            js = await self._request(
                "POST", "/droplets", json=payload, expected=(200, 201, 202)
            )
            created.extend(Droplet.model_validate(d) for d in js.get("droplets", []))
        if len(created) != len(names):
            raise ProviderError(
                f"Requested {len(names)} droplets but the API returned {len(created)}."
            )
        return created

    async def get_droplet(self, droplet_id: int) -> Droplet:
        js = await self._request("GET", f"/droplets/{droplet_id}")
        return Droplet.model_validate(js["droplet"])

    async def wait_until_active(self, droplet_id: int) -> Droplet:
        """Poll until the droplet is active and has a public and private IPv4."""

        @async_retry(
            retries=self._poll_retries,
            delay=self._poll_delay,
            retry_on=(DropletPending,),
        )
        async def _poll() -> Droplet:
            droplet = await self.get_droplet(droplet_id)
            if droplet.status != "active":
                raise DropletPending(f"{droplet.name} is {droplet.status}")
            if not droplet.ipv4("public") or not droplet.ipv4("private"):
                raise DropletPending(f"{droplet.name} has no addresses yet")
            return droplet

        try:
            return await _poll()
        except DropletPending as exc:
            raise ProviderError(
                f"Droplet {droplet_id} did not become active: {exc}"
            ) from exc

    async def provision_nodes(
        self, request: TopologyRequest, identity: SSHIdentity
    ) -> ProvisionedTopology:
        key = await self.ensure_key(identity)

        pending: Dict[NodeRole, List[Droplet]] = {}
        for role, count in request.role_counts().items():
            if count == 0:
                pending[role] = []
                continue
            names = [node_name(request.tag, role, i) for i in range(1, count + 1)]
            logger.info("Creating %d %s node(s)", count, role.value)
            pending[role] = await self.create_droplets(
                names,
                request=request,
                size=request.size_for(role),
                key=key,
                user_data=(
                    bootstrap_user_data(self._install_dir)
                    if role is NodeRole.bootstrap
                    else None
                ),
            )

        async def _ready_nodes(droplets: List[Droplet]) -> List[ProvisionedNode]:
            active = await asyncio.gather(
                *(self.wait_until_active(d.id) for d in droplets)
            )
            return [
                ProvisionedNode(
                    id=d.name,
                    public_ipv4=d.ipv4("public") or "",
                    private_ipv4=d.ipv4("private") or "",
                    ssh_user=request.ssh_user,
                )
                for d in active
            ]

        roles = list(pending)
        grouped = await asyncio.gather(*(_ready_nodes(pending[r]) for r in roles))
        return ProvisionedTopology(
            **{role.value: nodes for role, nodes in zip(roles, grouped)}
        )

    async def terminate_nodes(
        self,
        tag: str,
        *,
        remove_key: bool,
        key_name: Optional[str] = None,
        key_fingerprint: Optional[str] = None,
    ) -> None:
        key: Optional[AccountKey] = None
        if remove_key:
            if not key_name or not key_fingerprint:
                raise ValueError(
                    "key_name and key_fingerprint are required when remove_key is set."
                )
            # checked before anything is deleted
            key = await self.find_owned_key(key_name, key_fingerprint)

        logger.info("Deleting all droplets tagged '%s'", tag)
        await self._request(
            "DELETE", "/droplets", params={"tag_name": tag}, expected=(202, 204)
        )

        if not remove_key:
            return
        if key is None:
            logger.info("SSH key '%s' not found, nothing to remove", key_name)
            return
        await self._request("DELETE", f"/account/keys/{key.id}", expected=(204,))
        logger.info("Removed SSH key '%s'", key_name)
