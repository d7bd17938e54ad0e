"""
capk/models/bootstrap.py

Typed bootstrap documents. A machine's bootstrap payload is either a
`#cloud-config` YAML document or an Ignition JSON document; both are parsed
into pydantic models, and the cluster SSH user is added through them.

Documents are immutable: `ensure_user` returns a new document.
"""

from __future__ import annotations

import json
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

CLOUD_CONFIG_HEADER = "#cloud-config"


class BootstrapDocumentError(ValueError):
    """Raised when a bootstrap payload is neither valid cloud-config nor Ignition."""


class BootstrapUser(BaseModel):
    """The user to make present in a bootstrap document."""

    name: str
    ssh_authorized_keys: List[str] = Field(default_factory=list)
    gecos: Optional[str] = None
    sudo: Optional[str] = None
    groups: Optional[str] = None

    model_config = ConfigDict(frozen=True)


# ----------------------------------------------------------------------
# cloud-config
# ----------------------------------------------------------------------


class CloudConfigUser(BaseModel):
    name: str
    gecos: Optional[str] = None
    sudo: Optional[Union[str, List[str], bool]] = None
    groups: Optional[Union[str, List[str]]] = None
    ssh_authorized_keys: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow", frozen=True)


class CloudConfig(BaseModel):
    # Entries may be the literal string "default" (the distro default user).
    users: List[Union[CloudConfigUser, str]] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow", frozen=True)


class CloudConfigDocument(BaseModel):
    config: CloudConfig

    model_config = ConfigDict(frozen=True)

    def ensure_user(self, user: BootstrapUser) -> CloudConfigDocument:
        """Return a document in which `user` exists and holds all of its keys."""
        users = list(self.config.users)
        idx = next(
            (
                i
                for i, u in enumerate(users)
                if isinstance(u, CloudConfigUser) and u.name == user.name
            ),
            None,
        )
        if idx is None:
            users.append(
                CloudConfigUser(
                    name=user.name,
                    gecos=user.gecos,
                    sudo=user.sudo,
                    groups=user.groups,
                    ssh_authorized_keys=list(user.ssh_authorized_keys),
                )
            )
        else:
            current = users[idx]
            assert isinstance(current, CloudConfigUser)
            users[idx] = current.model_copy(
                update={
                    "ssh_authorized_keys": _merge_keys(
                        current.ssh_authorized_keys, user.ssh_authorized_keys
                    )
                }
            )
        return CloudConfigDocument(config=self.config.model_copy(update={"users": users}))

    def render(self) -> bytes:
        body = yaml.safe_dump(
            self.config.model_dump(exclude_none=True),
            sort_keys=False,
            default_flow_style=False,
        )
        return f"{CLOUD_CONFIG_HEADER}\n{body}".encode("utf-8")


# ----------------------------------------------------------------------
# Ignition
# ----------------------------------------------------------------------


class IgnitionUser(BaseModel):
    name: str
    ssh_authorized_keys: List[str] = Field(
        default_factory=list, alias="sshAuthorizedKeys"
    )

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)


class IgnitionPasswd(BaseModel):
    users: List[IgnitionUser] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow", frozen=True)


class IgnitionConfig(BaseModel):
    passwd: Optional[IgnitionPasswd] = None

    model_config = ConfigDict(extra="allow", frozen=True)


class IgnitionDocument(BaseModel):
    config: IgnitionConfig

    model_config = ConfigDict(frozen=True)

    def ensure_user(self, user: BootstrapUser) -> IgnitionDocument:
        passwd = self.config.passwd or IgnitionPasswd()
        users = list(passwd.users)
        idx = next((i for i, u in enumerate(users) if u.name == user.name), None)
        if idx is None:
            users.append(
                IgnitionUser(
                    name=user.name,
                    ssh_authorized_keys=list(user.ssh_authorized_keys),
                )
            )
        else:
            users[idx] = users[idx].model_copy(
                update={
                    "ssh_authorized_keys": _merge_keys(
                        users[idx].ssh_authorized_keys, user.ssh_authorized_keys
                    )
                }
            )
        new_passwd = passwd.model_copy(update={"users": users})
        return IgnitionDocument(
            config=self.config.model_copy(update={"passwd": new_passwd})
        )

    def render(self) -> bytes:
        return json.dumps(
            self.config.model_dump(by_alias=True, exclude_none=True)
        ).encode("utf-8")


BootstrapDocument = Union[CloudConfigDocument, IgnitionDocument]


def _merge_keys(existing: List[str], extra: List[str]) -> List[str]:
    return list(existing) + [k for k in extra if k not in existing]


def parse_bootstrap_document(data: bytes) -> BootstrapDocument:
    """
    Parse a bootstrap payload.

    JSON objects are treated as Ignition; anything starting with the
    `#cloud-config` header is parsed as cloud-config YAML.

    Raises:
        BootstrapDocumentError: If the payload matches neither format.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as ex:
        raise BootstrapDocumentError("bootstrap data is not UTF-8 text") from ex

    stripped = text.lstrip()
    if stripped.startswith("{"):
        try:
            raw = json.loads(stripped)
            return IgnitionDocument(config=IgnitionConfig.model_validate(raw))
        except (json.JSONDecodeError, ValidationError) as ex:
            raise BootstrapDocumentError(f"invalid Ignition document: {ex}") from ex

    if not stripped.startswith(CLOUD_CONFIG_HEADER):
        raise BootstrapDocumentError(
            "bootstrap data is neither Ignition JSON nor #cloud-config"
        )

    try:
        raw = yaml.safe_load(stripped) or {}
    except yaml.YAMLError as ex:
        raise BootstrapDocumentError(f"invalid cloud-config YAML: {ex}") from ex
    if not isinstance(raw, dict):
        raise BootstrapDocumentError("cloud-config must be a YAML mapping")
    try:
        return CloudConfigDocument(config=CloudConfig.model_validate(raw))
    except ValidationError as ve:
        raise BootstrapDocumentError(f"invalid cloud-config: {ve}") from ve
