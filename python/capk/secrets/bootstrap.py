"""
capk/secrets/bootstrap.py

Derives the per-machine bootstrap secret consumed by the VM's cloud-init
volume from the generic bootstrap secret written by the bootstrap provider.

The derived secret is `<dataSecretName>-userdata`, holds the payload under
`userdata`, and is owned by the KubevirtMachine. It is created at most once: an
existing derived secret short-circuits without any write.
"""

from __future__ import annotations

import logging
from typing import Optional

from capk.models.bootstrap import BootstrapUser, IgnitionDocument, parse_bootstrap_document
from capk.models.cluster_api import CLUSTER_NAME_LABEL, CLUSTER_SECRET_TYPE, Machine
from capk.models.k8s import ObjectKey, Secret
from capk.models.kubevirt import KubevirtMachine
from capk.models.settings import ReconcilerSettings
from capk.models.ssh import SSHKeyPair
from capk.utils.k8s import AlreadyExistsError, KubeClient, NotFoundError

logger = logging.getLogger(__name__)

USERDATA_SECRET_SUFFIX = "-userdata"
USERDATA_KEY = "userdata"
BOOTSTRAP_VALUE_KEY = "value"

IGNITION_USER = "core"


class BootstrapDataError(RuntimeError):
    """The generic bootstrap secret is missing or has no payload."""


def userdata_secret_name(data_secret_name: str) -> str:
    return f"{data_secret_name}{USERDATA_SECRET_SUFFIX}"


def cloud_config_user(settings: ReconcilerSettings, public_key: str) -> BootstrapUser:
    return BootstrapUser(
        name=settings.ssh_user,
        gecos="CAPK User",
        sudo="ALL=(ALL) NOPASSWD:ALL",
        groups="users, admin",
        ssh_authorized_keys=[public_key],
    )


def inject_ssh_user(
    payload: bytes, settings: ReconcilerSettings, public_key: str
) -> bytes:
    """
    Return `payload` with the cluster SSH user present.

    Cloud-config gets `settings.ssh_user`; Ignition gets the `core` user, the
    only login user Ignition-based images provide.

    Raises:
        BootstrapDocumentError: If the payload cannot be parsed.
    """
    document = parse_bootstrap_document(payload)
    if isinstance(document, IgnitionDocument):
        user = BootstrapUser(name=IGNITION_USER, ssh_authorized_keys=[public_key])
    else:
        user = cloud_config_user(settings, public_key)
    return document.ensure_user(user).render()


async def ensure_bootstrap_secret(
    client: KubeClient,
    kubevirt_machine: KubevirtMachine,
    machine: Machine,
    *,
    settings: ReconcilerSettings,
    ssh_keys: Optional[SSHKeyPair] = None,
) -> str:
    """
    Make sure the derived bootstrap secret of `kubevirt_machine` exists.

    Args:
        client: Management cluster client.
        kubevirt_machine: Owner of the derived secret.
        machine: The owning Machine; spec.bootstrap.dataSecretName must be set.
        settings: Reconciler settings (user injection switch and user name).
        ssh_keys: Cluster key pair, required only when injecting the SSH user.

    Returns:
        The derived secret name.

    Raises:
        BootstrapDataError: If the generic secret or its `value` is missing.
        BootstrapDocumentError: If injection is enabled and the payload is unparseable.
        KubeApiError: On other API failures.
    """
    data_secret_name = machine.spec.bootstrap.data_secret_name
    if not data_secret_name:
        raise BootstrapDataError(
            f"machine {machine.key} has no bootstrap data secret yet"
        )

    namespace = kubevirt_machine.namespace
    derived_name = userdata_secret_name(data_secret_name)
    try:
        await client.get(Secret, ObjectKey(namespace=namespace, name=derived_name))
        return derived_name
    except NotFoundError:
        pass

    try:
        source = await client.get(
            Secret, ObjectKey(namespace=namespace, name=data_secret_name)
        )
    except NotFoundError as ex:
        raise BootstrapDataError(
            f"bootstrap data secret {namespace}/{data_secret_name} not found"
        ) from ex

    try:
        payload = source.get_bytes(BOOTSTRAP_VALUE_KEY)
    except ValueError as ex:
        raise BootstrapDataError(
            f"bootstrap data secret {namespace}/{data_secret_name} is not valid base64"
        ) from ex
    if payload is None:
        raise BootstrapDataError(
            f"bootstrap data secret {namespace}/{data_secret_name} "
            f"has no '{BOOTSTRAP_VALUE_KEY}' key"
        )

    if settings.inject_ssh_user and ssh_keys is not None:
        payload = inject_ssh_user(payload, settings, ssh_keys.public_key)

    labels = {}
    cluster_name = machine.cluster_label
    if cluster_name:
        labels[CLUSTER_NAME_LABEL] = cluster_name

    secret = Secret.from_bytes(
        derived_name,
        namespace,
        {USERDATA_KEY: payload},
        secret_type=CLUSTER_SECRET_TYPE,
        labels=labels,
        owner_references=[kubevirt_machine.owner_reference()],
    )
    try:
        await client.create(secret)
        logger.info("Created bootstrap secret %s/%s", namespace, derived_name)
    except AlreadyExistsError:
        logger.debug("Bootstrap secret %s/%s already exists", namespace, derived_name)
    return derived_name
