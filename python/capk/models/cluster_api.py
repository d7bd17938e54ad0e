"""
capk/models/cluster_api.py

Pydantic models for the Cluster API objects the infrastructure controller
consumes read-only: Cluster and Machine (cluster.x-k8s.io/v1alpha4).
"""

from __future__ import annotations

from typing import ClassVar, List, Optional

from pydantic import Field

from capk.models.conditions import Condition
from capk.models.k8s import K8sModel, K8sObject, ObjectReference, ResourceInfo

CLUSTER_API_GROUP = "cluster.x-k8s.io"
CLUSTER_API_VERSION = "v1alpha4"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"

CLUSTER_SECRET_TYPE = "cluster.x-k8s.io/secret"

PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"


class ClusterSpec(K8sModel):
    infrastructure_ref: Optional[ObjectReference] = None
    control_plane_ref: Optional[ObjectReference] = None
    paused: bool = False


class ClusterStatus(K8sModel):
    infrastructure_ready: bool = False
    control_plane_ready: bool = False
    conditions: List[Condition] = Field(default_factory=list)


class Cluster(K8sObject):
    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group=CLUSTER_API_GROUP,
        version=CLUSTER_API_VERSION,
        kind="Cluster",
        plural="clusters",
    )

    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)


class Bootstrap(K8sModel):
    config_ref: Optional[ObjectReference] = None
    data_secret_name: Optional[str] = None


class MachineSpec(K8sModel):
    cluster_name: str = ""
    bootstrap: Bootstrap = Field(default_factory=Bootstrap)
    infrastructure_ref: ObjectReference = Field(default_factory=ObjectReference)
    provider_id: Optional[str] = Field(default=None, alias="providerID")


class Machine(K8sObject):
    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group=CLUSTER_API_GROUP,
        version=CLUSTER_API_VERSION,
        kind="Machine",
        plural="machines",
    )

    spec: MachineSpec = Field(default_factory=MachineSpec)

    @property
    def is_control_plane(self) -> bool:
        return CONTROL_PLANE_LABEL in self.metadata.labels

    @property
    def cluster_label(self) -> Optional[str]:
        return self.metadata.labels.get(CLUSTER_NAME_LABEL) or None


def has_paused_annotation(obj: K8sObject) -> bool:
    return PAUSED_ANNOTATION in obj.metadata.annotations


def is_paused(cluster: Cluster, obj: K8sObject) -> bool:
    """
    Whether reconciliation of `obj` is paused, either for the whole Cluster
    (spec.paused) or for the object itself (the paused annotation).
    """
    return cluster.spec.paused or has_paused_annotation(obj)
