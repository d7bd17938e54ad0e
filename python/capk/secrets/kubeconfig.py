"""
capk/secrets/kubeconfig.py

Builds an API client for the workload cluster from the kubeconfig secret the
cluster infrastructure controller publishes as `<kubevirtCluster>-kubeconfig`.
"""

from __future__ import annotations

from capk.models.k8s import ObjectKey, Secret
from capk.models.kubevirt import KubevirtCluster
from capk.utils.k8s import AsyncKubeClient, KubeClient, KubeconfigError

KUBECONFIG_VALUE_KEY = "value"


async def get_workload_kubeconfig(
    client: KubeClient, kubevirt_cluster: KubevirtCluster
) -> bytes:
    """
    Read the workload cluster kubeconfig.

    Raises:
        NotFoundError: If the kubeconfig secret does not exist yet.
        KubeconfigError: If the secret has no usable `value`.
    """
    secret = await client.get(
        Secret,
        ObjectKey(
            namespace=kubevirt_cluster.namespace,
            name=kubevirt_cluster.kubeconfig_secret_name,
        ),
    )
    try:
        data = secret.get_bytes(KUBECONFIG_VALUE_KEY)
    except ValueError as ex:
        raise KubeconfigError(
            f"kubeconfig secret {secret.key} is not valid base64"
        ) from ex
    if not data:
        raise KubeconfigError(
            f"kubeconfig secret {secret.key} has no '{KUBECONFIG_VALUE_KEY}' key"
        )
    return data


async def build_workload_cluster_client(kubeconfig: bytes) -> AsyncKubeClient:
    """
    Parse `kubeconfig` and open a client on its current context.

    The caller owns the returned client and must close it.

    Raises:
        KubeconfigError: If the kubeconfig or its TLS material is unusable.
    """
    return await AsyncKubeClient.from_kubeconfig(kubeconfig)
