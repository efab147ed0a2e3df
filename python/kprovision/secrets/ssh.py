"""
kprovision/secrets/ssh.py

Resolves the SSH key pair used for a provisioning run.

The private key path comes from DO_SECRET_ACCESS_KEY when set, otherwise from
`ssh/cluster.pem` next to the running executable. The public key is expected
beside it with a `.pub` suffix. A missing or loosely-permissioned private key
is a precondition failure: nothing is provisioned and nothing is retried.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import stat
import sys
from typing import Optional

import aiofiles

from kprovision.models.settings import ProvisionSettings
from kprovision.models.ssh import SSHIdentity

DEFAULT_KEY_DIR = "ssh"
DEFAULT_KEY_FILE = "cluster.pem"


class SSHKeyError(Exception):
    """The SSH key pair for the run is missing or unusable."""


def default_key_path(executable_dir: Optional[str] = None) -> str:
    """`<executable dir>/ssh/cluster.pem`."""
    base = executable_dir or os.path.dirname(os.path.abspath(sys.argv[0]))
    return os.path.join(base, DEFAULT_KEY_DIR, DEFAULT_KEY_FILE)


def check_private_key(path: str) -> None:
    """
    Ensure the private key exists, is a regular file and grants no access to
    group or others (ssh refuses such keys anyway).

    Raises:
        SSHKeyError: If any of the checks fail.
    """
    try:
        st = os.stat(path)
    except FileNotFoundError as exc:
        raise SSHKeyError(
            f"Private SSH key was not found at '{path}'. Create your own key pair, "
            "point DO_SECRET_ACCESS_KEY at the private key and restrict its "
            "permissions (chmod 600)."
        ) from exc

    if not stat.S_ISREG(st.st_mode):
        raise SSHKeyError(f"Private SSH key '{path}' is not a regular file.")

    if st.st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        raise SSHKeyError(
            f"Permissions {oct(stat.S_IMODE(st.st_mode))} for '{path}' are too open. "
            "Restrict them with chmod 600."
        )


def resolve_ssh_identity(
    settings: ProvisionSettings, executable_dir: Optional[str] = None
) -> SSHIdentity:
    """
    Resolve the key pair for this run.

    Args:
        settings: Run settings; `secret_access_key` overrides the key location.
        executable_dir: Directory used for the default location instead of the
            directory of the running executable.

    Returns:
        The SSHIdentity with private/public key paths and the key name (the
        private key's file name).

    Raises:
        SSHKeyError: If the private key is missing or its permissions are too open.
    """
    private_key_path = settings.secret_access_key or default_key_path(executable_dir)
    check_private_key(private_key_path)
    return SSHIdentity(
        private_key_path=private_key_path,
        public_key_path=private_key_path + ".pub",
        key_name=os.path.basename(private_key_path),
    )


async def read_public_key_file(path: str) -> str:
    """
    Read public key text (OpenSSH format) from `path`.

    Raises:
        SSHKeyError: If the file is missing or empty.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = (await f.read()).strip()
    except FileNotFoundError as exc:
        raise SSHKeyError(f"Public SSH key was not found at '{path}'.") from exc

    if not content:
        raise SSHKeyError(f"Public SSH key '{path}' is empty.")
    return content


async def read_public_key(identity: SSHIdentity) -> str:
    """Read the identity's public key text for upload to the provider."""
    return await read_public_key_file(identity.public_key_path)


def public_key_fingerprint(public_key: str) -> str:
    """
    MD5 fingerprint of an OpenSSH public key line, as colon-separated hex
    (the form DigitalOcean reports for account keys).

    Raises:
        SSHKeyError: If the line has no base64 key blob.
    """
    parts = public_key.split()
    if len(parts) < 2:
        raise SSHKeyError("Public SSH key is not in OpenSSH '<type> <base64>' format.")
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SSHKeyError(f"Public SSH key blob is not valid base64: {exc}") from exc
    digest = hashlib.md5(blob, usedforsecurity=False).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def public_key_path_for(
    settings: ProvisionSettings, executable_dir: Optional[str] = None
) -> str:
    """Public key path the run would use, without checking the private key."""
    return (settings.secret_access_key or default_key_path(executable_dir)) + ".pub"


def key_name_for(
    settings: ProvisionSettings, executable_dir: Optional[str] = None
) -> str:
    """Key name the run would use, without requiring the key file to exist."""
    return os.path.basename(
        settings.secret_access_key or default_key_path(executable_dir)
    )
