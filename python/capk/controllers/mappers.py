"""
capk/controllers/mappers.py

Maps changes of related objects onto the KubevirtMachines to reconcile:
 - kubevirt_cluster_to_kubevirt_machines: KubevirtCluster => Machines of its Cluster
 - machine_to_kubevirt_machine: Machine => its infrastructure reference
 - cluster_to_kubevirt_machines: Cluster => KubevirtMachines of its Machines

Mappers never raise: a lookup failure means there is nothing to enqueue.
"""

from __future__ import annotations

import logging
from typing import List

from capk.models.cluster_api import (
    CLUSTER_API_GROUP,
    CLUSTER_NAME_LABEL,
    Cluster,
    Machine,
)
from capk.models.k8s import ObjectKey
from capk.models.kubevirt import INFRASTRUCTURE_GROUP, KubevirtCluster, KubevirtMachine
from capk.utils.k8s import KubeApiError, KubeClient

logger = logging.getLogger(__name__)


async def _cluster_machines(client: KubeClient, cluster: Cluster) -> List[Machine]:
    try:
        return await client.list(
            Machine,
            namespace=cluster.namespace,
            labels={CLUSTER_NAME_LABEL: cluster.name},
        )
    except KubeApiError as ex:
        logger.error("failed to list machines of cluster %s: %s", cluster.key, ex)
        return []


async def kubevirt_cluster_to_kubevirt_machines(
    client: KubeClient, kubevirt_cluster: KubevirtCluster
) -> List[ObjectKey]:
    """
    Identities of the Machines of the Cluster owning `kubevirt_cluster` that
    already carry an infrastructure reference.
    """
    owner = kubevirt_cluster.find_owner("Cluster", CLUSTER_API_GROUP)
    if owner is None:
        return []
    try:
        cluster = await client.get(
            Cluster, ObjectKey(namespace=kubevirt_cluster.namespace, name=owner.name)
        )
    except KubeApiError as ex:
        logger.debug("owner cluster of %s unavailable: %s", kubevirt_cluster.key, ex)
        return []

    return [
        machine.key
        for machine in await _cluster_machines(client, cluster)
        if machine.spec.infrastructure_ref.name
    ]


def machine_to_kubevirt_machine(machine: Machine) -> List[ObjectKey]:
    ref = machine.spec.infrastructure_ref
    if ref.kind != KubevirtMachine.RESOURCE.kind or not ref.name:
        return []
    if ref.api_version and ref.api_version.split("/")[0] != INFRASTRUCTURE_GROUP:
        return []
    return [ObjectKey(namespace=ref.namespace or machine.namespace, name=ref.name)]


async def cluster_to_kubevirt_machines(
    client: KubeClient, cluster: Cluster
) -> List[ObjectKey]:
    keys: List[ObjectKey] = []
    for machine in await _cluster_machines(client, cluster):
        keys.extend(machine_to_kubevirt_machine(machine))
    return keys
