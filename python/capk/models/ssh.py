"""
capk/models/ssh.py

SSH models:
 - SSHConfig: how to reach one VM (user, address, port, private key)
 - SSHKeyPair: the per-cluster node key pair, as persisted in its Secret
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a VM.
    If host_keys is empty => no known keys => host key checking is disabled
    (VMs are created and destroyed by the controller, their keys are never pinned).
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    command_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val


class SSHKeyPair(BaseModel):
    """
    The cluster-wide node key pair. Serialized as
    {"publicKey": ..., "privateKey": ...} under the secret's `value` key.
    """

    public_key: str
    private_key: str

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("public_key", "private_key")
    @classmethod
    def validate_non_empty(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("SSH key material must be a non-empty string")
        return val
