# kprovision/models/settings.py

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_KET_INSTALL_DIR = "/ket/"


class ProvisionSettings(BaseSettings):
    """
    Pydantic settings for a provisioning run.
    Fields map to environment variables prefixed with `DO_`, e.g.
    `DO_API_TOKEN`, `DO_SECRET_ACCESS_KEY`, `DO_KET_INSTALL_DIR`.
    An empty variable counts as unset.
    """

    # None => the CLI prompts for it
    api_token: Optional[str] = None
    # Path of the SSH private key; None => <executable dir>/ssh/cluster.pem
    secret_access_key: Optional[str] = None
    # Joined by plain concatenation; always ends with a slash
    ket_install_dir: str = DEFAULT_KET_INSTALL_DIR
    readiness_deadline_seconds: float = Field(default=600.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="DO_")

    @field_validator("api_token", "secret_access_key")
    @classmethod
    def empty_as_none(cls, val: Optional[str]) -> Optional[str]:
        if val is not None and not val.strip():
            return None
        return val

    @field_validator("ket_install_dir")
    @classmethod
    def default_install_dir(cls, val: str) -> str:
        val = val.strip()
        if not val:
            return DEFAULT_KET_INSTALL_DIR
        return val if val.endswith("/") else val + "/"
