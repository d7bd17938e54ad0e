"""
capk/secrets/ssh.py

Secret-based management of the per-cluster node SSH key pair:
 - ClusterNodeSSHKeys.is_persisted / fetch: used by every machine reconciliation
 - ClusterNodeSSHKeys.persist: write-once storage of a generated pair
 - generate_ssh_key_pair: a fresh ed25519 pair in OpenSSH format

The pair is stored as JSON ({"publicKey", "privateKey"}) under the secret's
`value` key, owned by the KubevirtCluster, and never rewritten once present.
"""

from __future__ import annotations

import logging
from typing import Dict

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import ValidationError

from capk.models.cluster_api import (
    CLUSTER_API_GROUP,
    CLUSTER_NAME_LABEL,
    CLUSTER_SECRET_TYPE,
)
from capk.models.k8s import ObjectKey, Secret
from capk.models.kubevirt import KubevirtCluster
from capk.models.ssh import SSHKeyPair
from capk.utils.k8s import AlreadyExistsError, KubeApiError, KubeClient, NotFoundError

logger = logging.getLogger(__name__)

SSH_KEYS_SECRET_SUFFIX = "-ssh-keys"
SSH_KEYS_PAYLOAD_KEY = "value"


class SSHKeysError(RuntimeError):
    """Base for SSH key retrieval failures."""


class SSHKeysNotFoundError(SSHKeysError):
    """The SSH key secret does not exist or has no payload."""


class SSHKeysDecodeError(SSHKeysError):
    """The SSH key secret payload is malformed."""


class ClusterNodeSSHKeys:
    """
    Access to the SSH key pair shared by all nodes of one cluster.

    The secret name comes from KubevirtCluster.spec.sshKeys.dataSecretName,
    defaulting to `<kubevirtCluster>-ssh-keys`.
    """

    def __init__(self, client: KubeClient, kubevirt_cluster: KubevirtCluster) -> None:
        self._client = client
        self._cluster = kubevirt_cluster

    @property
    def secret_key(self) -> ObjectKey:
        name = (
            self._cluster.spec.ssh_keys.data_secret_name
            or f"{self._cluster.name}{SSH_KEYS_SECRET_SUFFIX}"
        )
        return ObjectKey(namespace=self._cluster.namespace, name=name)

    async def is_persisted(self) -> bool:
        """
        Returns:
            True if the key secret exists. Any failure to read it counts as
            not persisted, so callers wait and check again.
        """
        try:
            await self._client.get(Secret, self.secret_key)
        except NotFoundError:
            return False
        except KubeApiError as ex:
            logger.warning("Could not read SSH key secret %s: %s", self.secret_key, ex)
            return False
        return True

    async def fetch(self) -> SSHKeyPair:
        """
        Read and decode the persisted key pair.

        Raises:
            SSHKeysNotFoundError: If the secret or its payload is missing.
            SSHKeysDecodeError: If the payload is not a valid key pair document.
        """
        try:
            secret = await self._client.get(Secret, self.secret_key)
        except NotFoundError as ex:
            raise SSHKeysNotFoundError(
                f"SSH key secret '{self.secret_key}' not found"
            ) from ex

        try:
            payload = secret.get_bytes(SSH_KEYS_PAYLOAD_KEY)
        except ValueError as ex:
            raise SSHKeysDecodeError(
                f"SSH key secret '{self.secret_key}' is not valid base64"
            ) from ex
        if payload is None:
            raise SSHKeysNotFoundError(
                f"SSH key secret '{self.secret_key}' has no '{SSH_KEYS_PAYLOAD_KEY}' key"
            )

        try:
            return SSHKeyPair.model_validate_json(payload)
        except ValidationError as ve:
            raise SSHKeysDecodeError(
                f"SSH key secret '{self.secret_key}' is malformed: {ve}"
            ) from ve

    async def persist(self, key_pair: SSHKeyPair) -> ObjectKey:
        """
        Store `key_pair` unless a pair is already persisted, then record the
        secret name on the KubevirtCluster.

        Returns:
            The key of the secret holding the pair in effect.
        """
        key = self.secret_key
        secret = Secret.from_bytes(
            key.name,
            key.namespace,
            {
                SSH_KEYS_PAYLOAD_KEY: key_pair.model_dump_json(by_alias=True).encode(
                    "utf-8"
                )
            },
            secret_type=CLUSTER_SECRET_TYPE,
            labels=_cluster_labels(self._cluster),
            owner_references=[self._cluster.owner_reference()],
        )
        try:
            await self._client.create(secret)
            logger.info("Persisted SSH keys for cluster %s in %s", self._cluster.key, key)
        except AlreadyExistsError:
            logger.info("SSH keys for cluster %s already persisted in %s", self._cluster.key, key)

        if self._cluster.spec.ssh_keys.data_secret_name != key.name:
            await self._client.patch(
                KubevirtCluster,
                self._cluster.key,
                {"spec": {"sshKeys": {"dataSecretName": key.name}}},
            )
            self._cluster.spec.ssh_keys.data_secret_name = key.name
        return key


def _cluster_labels(kubevirt_cluster: KubevirtCluster) -> Dict[str, str]:
    owner = kubevirt_cluster.find_owner("Cluster", CLUSTER_API_GROUP)
    return {CLUSTER_NAME_LABEL: owner.name} if owner else {}


def generate_ssh_key_pair(comment: str = "capk") -> SSHKeyPair:
    """
    Generate an ed25519 key pair: an unencrypted OpenSSH private key and an
    authorized_keys line carrying `comment`.
    """
    private_key = Ed25519PrivateKey.generate()
    private_text = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_text = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        .decode("utf-8")
    )
    return SSHKeyPair(public_key=f"{public_text} {comment}", private_key=private_text)
