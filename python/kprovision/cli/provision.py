#!/usr/bin/env python3
"""
kprovision/cli/provision.py

CLI for provisioning kismatic cluster infrastructure on DigitalOcean.

    kprovision create -e 1 -m 1 -w 2 --storage-cluster
    kprovision delete-all --tag apprenda

Environment:
  DO_API_TOKEN:          DigitalOcean API token. Prompted for when unset.
  DO_SECRET_ACCESS_KEY:  Path of the SSH private key. Defaults to ssh/cluster.pem
                         next to the executable. The public key must sit beside
                         it with a .pub suffix, and the private key must not be
                         readable by group or others (chmod 600).
  DO_KET_INSTALL_DIR:    Install directory on the bootstrap node (default /ket/).
                         The bootstrap node downloads kismatic and kubectl there,
                         and the generated plan is copied there.
"""

import argparse
import asyncio
import logging
import sys
from getpass import getpass

from kprovision.deployment.provision import (
    PlanOptions,
    create_infrastructure,
    delete_infrastructure,
)
from kprovision.models.settings import ProvisionSettings
from kprovision.models.topology import TopologyRequest
from kprovision.providers import ProviderName, get_gateway
from kprovision.secrets.ssh import (
    key_name_for,
    public_key_fingerprint,
    public_key_path_for,
    read_public_key_file,
    resolve_ssh_identity,
)


def _load_settings() -> ProvisionSettings:
    """Read settings from the environment, prompting for a missing API token."""
    settings = ProvisionSettings()
    if not settings.api_token:
        token = getpass("Enter Digital Ocean API Token: ").strip()
        settings = settings.model_copy(update={"api_token": token})
    return settings


async def _run_create(args: argparse.Namespace) -> None:
    """
    Handler for the 'create' subcommand:
      1) Resolve the SSH key pair (fails before anything is created)
      2) Provision, wait for SSH, write and stage the plan
    """
    settings = _load_settings()
    identity = resolve_ssh_identity(settings)
    print(f"Using SSH key '{identity.key_name}'")

    request = TopologyRequest(
        etcd=args.etcd_node_count,
        master=args.master_node_count,
        worker=args.worker_node_count,
        bootstrap=1 if args.bootstrap else 0,
        instance_size=args.instance_type,
        worker_size=args.worker_type,
        image=args.image,
        region=args.region,
        tag=args.tag,
        ssh_user=args.sshuser,
    )
    options = PlanOptions(no_plan=args.noplan, storage=args.storage_cluster)

    async with get_gateway(ProviderName.digitalocean, settings) as gateway:
        await create_infrastructure(
            request, options, gateway, identity, settings=settings
        )


async def _run_delete(args: argparse.Namespace) -> None:
    """
    Handler for the 'delete-all' subcommand. Removing the account key needs
    the local public key, so only a key holding it is ever deleted.
    """
    settings = _load_settings()
    fingerprint = None
    if args.remove_key:
        public_key = await read_public_key_file(public_key_path_for(settings))
        fingerprint = public_key_fingerprint(public_key)

    async with get_gateway(ProviderName.digitalocean, settings) as gateway:
        await delete_infrastructure(
            gateway,
            args.tag,
            remove_key=args.remove_key,
            key_name=key_name_for(settings),
            key_fingerprint=fingerprint,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kprovision",
        description="Provision infrastructure for a kismatic cluster on DigitalOcean.",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser(
        "create",
        help="Create infrastructure for a new cluster.",
        description=(
            "Create infrastructure for a new cluster, optionally with a bootstrap "
            "node to run the kismatic installer from."
        ),
    )
    create_parser.add_argument(
        "-e", "--etcd-node-count", type=int, default=1, help="Count of etcd nodes."
    )
    create_parser.add_argument(
        "-m", "--master-node-count", type=int, default=1, help="Count of master nodes."
    )
    create_parser.add_argument(
        "-w", "--worker-node-count", type=int, default=1, help="Count of worker nodes."
    )
    create_parser.add_argument(
        "-n",
        "--noplan",
        action="store_true",
        help="Do not generate a plan file referencing the new nodes.",
    )
    create_parser.add_argument(
        "-i",
        "--instance-type",
        default="1gb",
        help="Size of etcd, master and bootstrap nodes (e.g. 1gb, 2gb, 4gb).",
    )
    create_parser.add_argument(
        "--worker-type", default="4gb", help="Size of worker nodes."
    )
    create_parser.add_argument(
        "--image", default="ubuntu-16-04-x64", help="Image slug to use."
    )
    create_parser.add_argument("--region", default="tor1", help="Region to deploy to.")
    create_parser.add_argument(
        "--tag", default="apprenda", help="Tag for all nodes in the cluster."
    )
    create_parser.add_argument("--sshuser", default="root", help="SSH user name.")
    create_parser.add_argument(
        "--bootstrap",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Create a bootstrap node from which to install the cluster.",
    )
    create_parser.add_argument(
        "-s",
        "--storage-cluster",
        action="store_true",
        help="Create a storage cluster from all worker nodes.",
    )
    create_parser.set_defaults(func=_run_create)

    delete_parser = subparsers.add_parser(
        "delete-all",
        help="Delete all nodes carrying the tag.",
    )
    delete_parser.add_argument(
        "--tag", default="apprenda", help="All nodes with this tag are removed."
    )
    delete_parser.add_argument(
        "--remove-key",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Also delete the SSH key registered during provisioning.",
    )
    delete_parser.set_defaults(func=_run_delete)

    return parser


def main() -> None:
    """Entry point for the 'kprovision' CLI."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
