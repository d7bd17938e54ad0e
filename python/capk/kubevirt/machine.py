"""
capk/kubevirt/machine.py

KubevirtVM: the handle over the KubeVirt VirtualMachine backing one
KubevirtMachine.

 - exists / create: the VirtualMachine, named after the KubevirtMachine and
   owned by it, booting from the derived bootstrap secret
 - address: first IP reported by the VirtualMachineInstance
 - is_booted / is_bootstrapped: readiness checks run over SSH on the guest
 - set_provider_id: registers `kubevirt://<name>` on the workload cluster Node

Checks never raise on command failures: a guest that cannot be reached or
answers unexpectedly is simply "not yet".
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from capk.models.cluster_api import CLUSTER_NAME_LABEL, Cluster, Machine
from capk.models.k8s import Node, ObjectKey, ObjectMeta
from capk.models.kubevirt import (
    KubevirtMachine,
    VirtualMachine,
    VirtualMachineInstance,
    VirtualMachineSpec,
)
from capk.secrets.bootstrap import userdata_secret_name
from capk.utils.async_command_runner import CommandError
from capk.utils.k8s import KubeClient, NotFoundError
from capk.utils.ssh import CommandExecutor

logger = logging.getLogger(__name__)

PROVIDER_ID_PREFIX = "kubevirt://"
CLOUD_INIT_VOLUME = "cloudinitvolume"
ROLE_LABEL = "cluster.x-k8s.io/role"
VM_LABEL = "kubevirt.io/vm"
BOOTSTRAP_SENTINEL = "/run/cluster-api/bootstrap-success.complete"


def provider_id_for(name: str) -> str:
    return f"{PROVIDER_ID_PREFIX}{name}"


class KubevirtVM:
    """
    One node VM. Build it with `load`, which reads the current VirtualMachine
    and VirtualMachineInstance; the handle is discarded after the reconcile.
    """

    def __init__(
        self,
        client: KubeClient,
        kubevirt_machine: KubevirtMachine,
        machine: Machine,
        cluster: Cluster,
        vm: Optional[VirtualMachine] = None,
        vmi: Optional[VirtualMachineInstance] = None,
    ) -> None:
        self._client = client
        self._kubevirt_machine = kubevirt_machine
        self._machine = machine
        self._cluster = cluster
        self._vm = vm
        self._vmi = vmi

    @classmethod
    async def load(
        cls,
        client: KubeClient,
        kubevirt_machine: KubevirtMachine,
        machine: Machine,
        cluster: Cluster,
    ) -> KubevirtVM:
        """
        Raises:
            KubeApiError: On API failures other than NotFound.
        """
        key = kubevirt_machine.key
        try:
            vm: Optional[VirtualMachine] = await client.get(VirtualMachine, key)
        except NotFoundError:
            vm = None
        try:
            vmi: Optional[VirtualMachineInstance] = await client.get(
                VirtualMachineInstance, key
            )
        except NotFoundError:
            vmi = None
        return cls(client, kubevirt_machine, machine, cluster, vm=vm, vmi=vmi)

    @property
    def name(self) -> str:
        return self._kubevirt_machine.name

    def exists(self) -> bool:
        return self._vm is not None

    def address(self) -> str:
        if self._vmi is None:
            return ""
        return next(
            (i.ip_address for i in self._vmi.status.interfaces if i.ip_address), ""
        )

    def _labels(self) -> Dict[str, str]:
        return {
            VM_LABEL: self.name,
            "name": self.name,
            ROLE_LABEL: "control-plane" if self._machine.is_control_plane else "worker",
            CLUSTER_NAME_LABEL: self._cluster.name,
        }

    def build(self) -> VirtualMachine:
        """Render the VirtualMachine for this machine, without creating it."""
        data_secret_name = self._machine.spec.bootstrap.data_secret_name
        if not data_secret_name:
            raise ValueError(f"machine {self._machine.key} has no bootstrap data secret")

        vmi_spec = copy.deepcopy(self._kubevirt_machine.spec.vm_spec)
        _ensure_named(
            vmi_spec.setdefault("volumes", []),
            {
                "name": CLOUD_INIT_VOLUME,
                "cloudInitNoCloud": {
                    "secretRef": {"name": userdata_secret_name(data_secret_name)}
                },
            },
        )
        devices = vmi_spec.setdefault("domain", {}).setdefault("devices", {})
        _ensure_named(
            devices.setdefault("disks", []),
            {"name": CLOUD_INIT_VOLUME, "disk": {"bus": "virtio"}},
        )

        labels = self._labels()
        owner = self._kubevirt_machine.owner_reference(controller=True)
        owner.block_owner_deletion = True
        return VirtualMachine(
            metadata=ObjectMeta(
                name=self.name,
                namespace=self._kubevirt_machine.namespace,
                labels=labels,
                owner_references=[owner],
            ),
            spec=VirtualMachineSpec(
                run_strategy="Always",
                template={"metadata": {"labels": labels}, "spec": vmi_spec},
            ),
        )

    async def create(self) -> None:
        """
        Raises:
            KubeApiError: If the VirtualMachine cannot be created.
        """
        self._vm = await self._client.create(self.build())
        logger.info("Created VirtualMachine %s", self._kubevirt_machine.key)

    async def is_booted(self, executor: CommandExecutor) -> bool:
        """The VMI is Ready and its guest answers with the expected hostname."""
        if self._vmi is None or not self._vmi.is_ready or not self.address():
            return False
        try:
            output = await executor.execute(["hostname"])
        except CommandError as ex:
            logger.debug("Boot check on %s failed: %s", self.name, ex)
            return False
        return output.strip() == self._vmi.name

    async def is_bootstrapped(self, executor: CommandExecutor) -> bool:
        """The guest wrote the Cluster API bootstrap success sentinel."""
        try:
            output = await executor.execute(["cat", BOOTSTRAP_SENTINEL])
        except CommandError as ex:
            logger.debug("Bootstrap check on %s failed: %s", self.name, ex)
            return False
        return output.strip() == "success"

    async def set_provider_id(self, workload_client: KubeClient) -> str:
        """
        Set spec.providerID on the workload Node named after the VM.

        Returns:
            The provider id.

        Raises:
            NotFoundError: If the Node has not registered yet.
            KubeApiError: On other API failures.
        """
        provider_id = provider_id_for(self.name)
        node = await workload_client.get(Node, ObjectKey(name=self.name))
        if node.spec.provider_id != provider_id:
            await workload_client.patch(
                Node, node.key, {"spec": {"providerID": provider_id}}
            )
            logger.info("Set providerID %s on node %s", provider_id, node.name)
        return provider_id


def _ensure_named(items: List[Dict[str, Any]], item: Dict[str, Any]) -> None:
    """Replace the entry named like `item`, or append it."""
    for idx, existing in enumerate(items):
        if existing.get("name") == item["name"]:
            items[idx] = item
            return
    items.append(item)
