# kprovision/models/ssh.py

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SSHIdentity(BaseModel):
    """
    The key pair used for a provisioning run: uploaded to the provider when
    nodes are created, and used again to reach those nodes over SSH.
    Resolved once per run (see kprovision.secrets.ssh).
    """

    model_config = ConfigDict(frozen=True)

    private_key_path: str
    public_key_path: str
    key_name: str

    @field_validator("private_key_path", "public_key_path", "key_name")
    @classmethod
    def validate_non_empty(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("SSH identity fields must be non-empty strings")
        return val


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a single remote host with a key file.
    Host keys are not pinned: the nodes are brand new and their keys unknown.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key_path: str
    connect_timeout: int = Field(default=10, ge=1)

    @classmethod
    def for_host(
        cls, identity: SSHIdentity, user: str, hostname: str, **kwargs: int
    ) -> "SSHConfig":
        return cls(
            user=user,
            hostname=hostname,
            private_key_path=identity.private_key_path,
            **kwargs,
        )
