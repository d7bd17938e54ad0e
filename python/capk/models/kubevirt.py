"""
capk/models/kubevirt.py

Pydantic models for the provider's own kinds (KubevirtMachine, KubevirtCluster)
and for the KubeVirt objects backing a node (VirtualMachine,
VirtualMachineInstance).

The VMI spec template carried by a KubevirtMachine is KubeVirt's schema; it is
kept as an opaque mapping and copied into the VirtualMachine as-is.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field

from capk.models.conditions import Condition
from capk.models.k8s import K8sModel, K8sObject, ResourceInfo

INFRASTRUCTURE_GROUP = "infrastructure.cluster.x-k8s.io"
INFRASTRUCTURE_VERSION = "v1alpha4"

KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"


class MachineAddressType(str, Enum):
    HOSTNAME = "Hostname"
    EXTERNAL_IP = "ExternalIP"
    INTERNAL_IP = "InternalIP"
    EXTERNAL_DNS = "ExternalDNS"
    INTERNAL_DNS = "InternalDNS"


class MachineAddress(K8sModel):
    type: MachineAddressType
    address: str


class KubevirtMachineSpec(K8sModel):
    """
    Attributes:
        provider_id: Set once the node is registered with the workload cluster.
        bootstrapped: Sticky flag, true once the bootstrap check succeeded.
        vm_spec: KubeVirt VirtualMachineInstance spec used as the VM template.
    """

    provider_id: Optional[str] = Field(default=None, alias="providerID")
    bootstrapped: bool = False
    vm_spec: Dict[str, Any] = Field(default_factory=dict)


class KubevirtMachineStatus(K8sModel):
    ready: bool = False
    addresses: List[MachineAddress] = Field(default_factory=list)
    conditions: List[Condition] = Field(default_factory=list)


class KubevirtMachine(K8sObject):
    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group=INFRASTRUCTURE_GROUP,
        version=INFRASTRUCTURE_VERSION,
        kind="KubevirtMachine",
        plural="kubevirtmachines",
    )

    spec: KubevirtMachineSpec = Field(default_factory=KubevirtMachineSpec)
    status: KubevirtMachineStatus = Field(default_factory=KubevirtMachineStatus)


class SSHKeysRef(K8sModel):
    data_secret_name: Optional[str] = None


class KubevirtClusterSpec(K8sModel):
    ssh_keys: SSHKeysRef = Field(default_factory=SSHKeysRef)


class KubevirtClusterStatus(K8sModel):
    ready: bool = False
    conditions: List[Condition] = Field(default_factory=list)


class KubevirtCluster(K8sObject):
    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group=INFRASTRUCTURE_GROUP,
        version=INFRASTRUCTURE_VERSION,
        kind="KubevirtCluster",
        plural="kubevirtclusters",
    )

    spec: KubevirtClusterSpec = Field(default_factory=KubevirtClusterSpec)
    status: KubevirtClusterStatus = Field(default_factory=KubevirtClusterStatus)

    @property
    def kubeconfig_secret_name(self) -> str:
        return f"{self.metadata.name}-kubeconfig"


class VirtualMachineSpec(K8sModel):
    run_strategy: Optional[str] = None
    running: Optional[bool] = None
    template: Dict[str, Any] = Field(default_factory=dict)


class VirtualMachine(K8sObject):
    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group=KUBEVIRT_GROUP,
        version=KUBEVIRT_VERSION,
        kind="VirtualMachine",
        plural="virtualmachines",
    )

    spec: VirtualMachineSpec = Field(default_factory=VirtualMachineSpec)


class VMIInterface(K8sModel):
    name: Optional[str] = None
    ip_address: Optional[str] = None


class VMICondition(K8sModel):
    type: str
    status: str


class VirtualMachineInstanceStatus(K8sModel):
    phase: Optional[str] = None
    interfaces: List[VMIInterface] = Field(default_factory=list)
    conditions: List[VMICondition] = Field(default_factory=list)


class VirtualMachineInstance(K8sObject):
    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group=KUBEVIRT_GROUP,
        version=KUBEVIRT_VERSION,
        kind="VirtualMachineInstance",
        plural="virtualmachineinstances",
    )

    status: VirtualMachineInstanceStatus = Field(
        default_factory=VirtualMachineInstanceStatus
    )

    @property
    def is_ready(self) -> bool:
        return any(
            c.type == "Ready" and c.status == "True" for c in self.status.conditions
        )
