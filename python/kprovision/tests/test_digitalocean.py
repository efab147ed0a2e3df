"""Tests for the DigitalOcean gateway against an in-memory API."""

import base64
import hashlib
import itertools
from typing import Any, Dict, List, Optional

import pytest

from kprovision.models.settings import ProvisionSettings
from kprovision.models.topology import NodeRole, TopologyRequest
from kprovision.providers import ProviderName, get_gateway
from kprovision.providers.base import ProviderError
from kprovision.providers.digitalocean import (
    DigitalOceanGateway,
    bootstrap_user_data,
    node_name,
)

API = "https://api.test/v2"


def md5_fingerprint(public_key):
    digest = hashlib.md5(base64.b64decode(public_key.split()[1])).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, 32, 2))


class FakeResponse:
    def __init__(self, status: int, payload: Optional[Dict[str, Any]] = None):
        self.status = status
        self.payload = payload or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def json(self):
        return self.payload

    async def text(self):
        return str(self.payload)


class FakeDigitalOcean:
    """Just enough of the droplet and account-key endpoints.

    Droplets start as "new" and turn active with addresses after
    `polls_until_active` status reads.
    """

    def __init__(self, keys=None, polls_until_active=2, fail=None, page_size=None):
        self.page_size = page_size
        self.keys: List[Dict[str, Any]] = list(keys or [])
        self.droplets: Dict[int, Dict[str, Any]] = {}
        self.reads: Dict[int, int] = {}
        self.polls_until_active = polls_until_active
        self.fail = fail or {}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False
        self._ids = itertools.count(1000)

    def request(self, method, url, *, headers=None, json=None, params=None):
        path = url[len(API):]
        self.calls.append(
            dict(method=method, path=path, json=json, params=params, headers=headers)
        )
        if (method, path) in self.fail:
            return FakeResponse(*self.fail[(method, path)])
        return FakeResponse(*self._handle(method, path, json, params))

    async def close(self):
        self.closed = True

    def _handle(self, method, path, body, params):
        if (method, path) == ("GET", "/account/keys"):
            size = self.page_size or params["per_page"]
            page = params.get("page", 1)
            start = (page - 1) * size
            payload = {"ssh_keys": self.keys[start : start + size]}
            if start + size < len(self.keys):
                payload["links"] = {"pages": {"next": f"{API}/account/keys?page={page + 1}"}}
            return 200, payload
        if (method, path) == ("POST", "/account/keys"):
            key = {
                "id": next(self._ids),
                "name": body["name"],
                "fingerprint": md5_fingerprint(body["public_key"]),
            }
            self.keys.append(key)
            return 201, {"ssh_key": key}
        if method == "DELETE" and path.startswith("/account/keys/"):
            key_id = int(path.rsplit("/", 1)[1])
            self.keys = [k for k in self.keys if k["id"] != key_id]
            return 204, None
        if (method, path) == ("POST", "/droplets"):
            created = []
            for name in body["names"]:
                droplet_id = next(self._ids)
                self.droplets[droplet_id] = dict(body, name=name, id=droplet_id)
                created.append(
                    {"id": droplet_id, "name": name, "status": "new", "networks": {}}
                )
            return 202, {"droplets": created}
        if method == "GET" and path.startswith("/droplets/"):
            droplet_id = int(path.rsplit("/", 1)[1])
            self.reads[droplet_id] = self.reads.get(droplet_id, 0) + 1
            droplet = self.droplets[droplet_id]
            if self.reads[droplet_id] < self.polls_until_active:
                return 200, {
                    "droplet": {"id": droplet_id, "name": droplet["name"], "status": "new"}
                }
            octet = droplet_id % 250
            return 200, {
                "droplet": {
                    "id": droplet_id,
                    "name": droplet["name"],
                    "status": "active",
                    "networks": {
                        "v4": [
                            {"ip_address": f"10.0.0.{octet}", "type": "private"},
                            {"ip_address": f"203.0.113.{octet}", "type": "public"},
                        ]
                    },
                }
            }
        if (method, path) == ("DELETE", "/droplets"):
            tag = params["tag_name"]
            self.droplets = {
                i: d for i, d in self.droplets.items() if tag not in d["tags"]
            }
            return 204, None
        return 404, {"message": "not found"}

    def created_batches(self):
        return [
            c["json"] for c in self.calls if (c["method"], c["path"]) == ("POST", "/droplets")
        ]


@pytest.fixture
def api():
    return FakeDigitalOcean()


@pytest.fixture
def gateway(api):
    return DigitalOceanGateway(
        "secret-token", api_base=API, session=api, poll_retries=5, poll_delay=0
    )


class TestKeys:
    @pytest.mark.asyncio
    async def test_uploads_missing_key(self, gateway, api, identity, public_key):
        key = await gateway.ensure_key(identity)

        assert key.name == "cluster.pem"
        upload = [c for c in api.calls if c["method"] == "POST"][0]
        assert upload["json"] == {"name": "cluster.pem", "public_key": public_key}

    @pytest.mark.asyncio
    async def test_reuses_key_with_matching_fingerprint(self, identity, key_fingerprint):
        api = FakeDigitalOcean(
            keys=[{"id": 7, "name": "cluster.pem", "fingerprint": key_fingerprint}]
        )
        gateway = DigitalOceanGateway("t", api_base=API, session=api)

        key = await gateway.ensure_key(identity)

        assert key.id == 7
        assert not [c for c in api.calls if c["method"] == "POST"]

    @pytest.mark.asyncio
    async def test_reuses_same_key_under_other_name(self, identity, key_fingerprint):
        api = FakeDigitalOcean(
            keys=[{"id": 8, "name": "laptop", "fingerprint": key_fingerprint}]
        )
        gateway = DigitalOceanGateway("t", api_base=API, session=api)

        assert (await gateway.ensure_key(identity)).id == 8
        assert not [c for c in api.calls if c["method"] == "POST"]

    @pytest.mark.asyncio
    async def test_foreign_key_with_same_name_stops_provisioning(self, identity):
        api = FakeDigitalOcean(
            keys=[{"id": 7, "name": "cluster.pem", "fingerprint": "de:ad:be:ef"}]
        )
        gateway = DigitalOceanGateway("t", api_base=API, session=api)

        with pytest.raises(ProviderError, match="de:ad:be:ef"):
            await gateway.provision_nodes(TopologyRequest(), identity)

        assert not [c for c in api.calls if c["method"] == "POST"]
        assert api.droplets == {}

    @pytest.mark.asyncio
    async def test_follows_key_pages(self, identity, key_fingerprint):
        others = [
            {"id": i, "name": f"other-{i}", "fingerprint": f"00:{i:02x}"}
            for i in range(3)
        ]
        api = FakeDigitalOcean(
            keys=others + [{"id": 9, "name": "cluster.pem", "fingerprint": key_fingerprint}],
            page_size=2,
        )
        gateway = DigitalOceanGateway("t", api_base=API, session=api)

        assert len(await gateway.list_keys()) == 4
        assert (await gateway.ensure_key(identity)).id == 9
        pages = [c["params"]["page"] for c in api.calls if c["path"] == "/account/keys"]
        assert pages == [1, 2, 1, 2]

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, gateway, api):
        await gateway.list_keys()
        assert api.calls[0]["headers"]["Authorization"] == "Bearer secret-token"


class TestProvisionNodes:
    @pytest.mark.asyncio
    async def test_topology_per_role(self, gateway, api, identity):
        request = TopologyRequest(etcd=1, master=1, worker=2, bootstrap=1, tag="c1")

        topology = await gateway.provision_nodes(request, identity)

        assert topology.matches(request)
        assert [n.id for n in topology.worker] == ["c1-worker-1", "c1-worker-2"]
        assert topology.etcd[0].id == "c1-etcd-1"
        for node in topology.all_nodes():
            assert node.public_ipv4.startswith("203.0.113.")
            assert node.private_ipv4.startswith("10.0.0.")
            assert node.ssh_user == "root"

    @pytest.mark.asyncio
    async def test_droplet_parameters(self, gateway, api, identity, key_fingerprint):
        request = TopologyRequest(
            etcd=1,
            master=1,
            worker=1,
            bootstrap=1,
            instance_size="2gb",
            worker_size="8gb",
            region="nyc3",
            image="ubuntu-22-04-x64",
            tag="c2",
        )

        await gateway.provision_nodes(request, identity)

        batches = {b["names"][0]: b for b in api.created_batches()}
        assert batches["c2-worker-1"]["size"] == "8gb"
        assert batches["c2-master-1"]["size"] == "2gb"
        assert batches["c2-bootstrap-1"]["size"] == "2gb"
        for batch in batches.values():
            assert batch["region"] == "nyc3"
            assert batch["image"] == "ubuntu-22-04-x64"
            assert batch["tags"] == ["c2"]
            assert batch["private_networking"] is True
            assert batch["ssh_keys"] == [key_fingerprint]
        assert batches["c2-bootstrap-1"]["user_data"] == bootstrap_user_data("/ket/")
        assert "user_data" not in batches["c2-worker-1"]

    @pytest.mark.asyncio
    async def test_large_roles_are_batched(self, gateway, api, identity):
        request = TopologyRequest(etcd=0, master=0, worker=12, bootstrap=0)

        topology = await gateway.provision_nodes(request, identity)

        assert [len(b["names"]) for b in api.created_batches()] == [10, 2]
        assert len(topology.worker) == 12
        assert topology.worker[-1].id == "apprenda-worker-12"

    @pytest.mark.asyncio
    async def test_empty_roles_make_no_calls(self, gateway, api, identity):
        request = TopologyRequest(etcd=1, master=0, worker=0, bootstrap=0)

        topology = await gateway.provision_nodes(request, identity)

        assert len(api.created_batches()) == 1
        assert topology.master == [] and topology.worker == []

    @pytest.mark.asyncio
    async def test_polls_until_active(self, gateway, api, identity):
        await gateway.provision_nodes(TopologyRequest(), identity)
        assert all(count == 2 for count in api.reads.values())

    @pytest.mark.asyncio
    async def test_never_active(self, identity):
        api = FakeDigitalOcean(polls_until_active=100)
        gateway = DigitalOceanGateway(
            "t", api_base=API, session=api, poll_retries=3, poll_delay=0
        )

        with pytest.raises(ProviderError, match="did not become active"):
            await gateway.provision_nodes(TopologyRequest(), identity)

    @pytest.mark.asyncio
    async def test_api_error(self, identity):
        api = FakeDigitalOcean(
            fail={("POST", "/droplets"): (422, {"message": "size unavailable"})}
        )
        gateway = DigitalOceanGateway("t", api_base=API, session=api)

        with pytest.raises(ProviderError, match="size unavailable") as excinfo:
            await gateway.provision_nodes(TopologyRequest(), identity)

        assert excinfo.value.status == 422


class TestTerminateNodes:
    @pytest.mark.asyncio
    async def test_deletes_by_tag_and_key(self, gateway, api, identity, key_fingerprint):
        await gateway.provision_nodes(TopologyRequest(tag="c3"), identity)

        await gateway.terminate_nodes(
            "c3", remove_key=True, key_name="cluster.pem", key_fingerprint=key_fingerprint
        )

        assert api.droplets == {}
        assert api.keys == []
        delete = [c for c in api.calls if c["path"] == "/droplets"][-1]
        assert delete["params"] == {"tag_name": "c3"}

    @pytest.mark.asyncio
    async def test_keeps_key(self, gateway, api, identity):
        await gateway.provision_nodes(TopologyRequest(), identity)

        await gateway.terminate_nodes("apprenda", remove_key=False)

        assert api.droplets == {}
        assert [k["name"] for k in api.keys] == ["cluster.pem"]

    @pytest.mark.asyncio
    async def test_other_tags_untouched(self, gateway, api, identity):
        await gateway.provision_nodes(TopologyRequest(tag="keep"), identity)

        await gateway.terminate_nodes("gone", remove_key=False)

        assert len(api.droplets) == 3

    @pytest.mark.asyncio
    async def test_missing_key_is_ignored(self, gateway, api):
        await gateway.terminate_nodes(
            "apprenda", remove_key=True, key_name="nope", key_fingerprint="00:11"
        )
        assert not [c for c in api.calls if c["path"].startswith("/account/keys/")]

    @pytest.mark.asyncio
    async def test_remove_key_needs_name(self, gateway):
        with pytest.raises(ValueError):
            await gateway.terminate_nodes("apprenda", remove_key=True)

    @pytest.mark.asyncio
    async def test_remove_key_needs_fingerprint(self, gateway):
        with pytest.raises(ValueError):
            await gateway.terminate_nodes(
                "apprenda", remove_key=True, key_name="cluster.pem"
            )

    @pytest.mark.asyncio
    async def test_foreign_key_is_never_deleted(self, gateway, api, identity):
        await gateway.provision_nodes(TopologyRequest(), identity)
        foreign = {"id": 5, "name": "shared.pem", "fingerprint": "de:ad:be:ef"}
        api.keys.append(foreign)

        with pytest.raises(ProviderError, match="de:ad:be:ef"):
            await gateway.terminate_nodes(
                "apprenda",
                remove_key=True,
                key_name="shared.pem",
                key_fingerprint="00:11",
            )

        assert foreign in api.keys
        assert len(api.droplets) == 3


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_borrowed_session_not_closed(self, api):
        async with DigitalOceanGateway("t", api_base=API, session=api):
            pass
        assert api.closed is False

    def test_requires_token(self):
        with pytest.raises(ValueError):
            DigitalOceanGateway("")


class TestFactory:
    def test_builds_digitalocean_gateway(self):
        settings = ProvisionSettings(api_token="t", ket_install_dir="/opt/ket/")
        gateway = get_gateway(ProviderName.digitalocean, settings)
        assert isinstance(gateway, DigitalOceanGateway)

    def test_requires_token(self):
        with pytest.raises(ValueError, match="DO_API_TOKEN"):
            get_gateway(ProviderName.digitalocean, ProvisionSettings())


def test_node_names():
    assert node_name("apprenda", NodeRole.etcd, 1) == "apprenda-etcd-1"


def test_bootstrap_user_data_uses_install_dir():
    script = bootstrap_user_data("/opt/ket/")
    assert script.startswith("#!/usr/bin/env bash")
    assert "mkdir -p /opt/ket/ssh" in script
    assert "cd /opt/ket/" in script
