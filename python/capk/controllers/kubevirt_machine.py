"""
capk/controllers/kubevirt_machine.py

The KubevirtMachine reconciler.

Every call re-derives state from the API: load the KubevirtMachine, its owning
Machine, the Cluster and the KubevirtCluster, then converge one stage at a
time. Each stage either moves on, waits for a watched object to change
(Result()), or asks to be polled again (Result(requeue_after=...)). Conditions
are updated before every return, and the KubevirtMachine is patched once on
every exit path.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Type

from pydantic import BaseModel, ConfigDict

from capk.kubevirt.machine import KubevirtVM
from capk.models.bootstrap import BootstrapDocumentError
from capk.models.cluster_api import CLUSTER_API_GROUP, Cluster, Machine, is_paused
from capk.models.conditions import (
    BOOTSTRAP_EXEC_SUCCEEDED_CONDITION,
    BOOTSTRAP_FAILED_REASON,
    BOOTSTRAPPING_REASON,
    CONTROL_PLANE_INITIALIZED_CONDITION,
    DELETING_REASON,
    VM_PROVISIONED_CONDITION,
    WAITING_FOR_BOOTSTRAP_DATA_REASON,
    WAITING_FOR_CLUSTER_INFRASTRUCTURE_REASON,
    WAITING_FOR_CONTROL_PLANE_AVAILABLE_REASON,
    ConditionSeverity,
    has_condition,
    is_true,
    mark_false,
    mark_true,
)
from capk.models.k8s import K8sObject, ObjectKey, Secret
from capk.models.kubevirt import (
    KubevirtCluster,
    KubevirtMachine,
    MachineAddress,
    MachineAddressType,
    VirtualMachine,
)
from capk.models.settings import ReconcilerSettings
from capk.models.ssh import SSHKeyPair
from capk.secrets.bootstrap import (
    BootstrapDataError,
    ensure_bootstrap_secret,
    userdata_secret_name,
)
from capk.secrets.kubeconfig import build_workload_cluster_client, get_workload_kubeconfig
from capk.secrets.ssh import ClusterNodeSSHKeys, SSHKeysError
from capk.utils.k8s import KubeApiError, KubeClient, KubeconfigError, NotFoundError
from capk.utils.patch import PatchHelper, patch_on_exit
from capk.utils.ssh import CommandExecutor, VMCommandExecutor

logger = logging.getLogger(__name__)

WorkloadClientFactory = Callable[[bytes], Awaitable[KubeClient]]
ExecutorFactory = Callable[[str, SSHKeyPair], CommandExecutor]
VMLoader = Callable[
    [KubeClient, KubevirtMachine, Machine, Cluster], Awaitable[KubevirtVM]
]


class Result(BaseModel):
    """
    What the dispatcher should do next.

    Attributes:
        requeue_after: Seconds until the next call; None => wait for a watch event.
    """

    requeue_after: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class MachineContext(BaseModel):
    """The objects one reconciliation works on."""

    kubevirt_machine: KubevirtMachine
    machine: Machine
    cluster: Cluster
    kubevirt_cluster: KubevirtCluster


class KubevirtMachineReconciler:
    """
    Reconciles KubevirtMachines into running, bootstrapped node VMs.

    Args:
        client: Management cluster client.
        settings: Finalizer, requeue intervals and feature switches.
        workload_client_factory: Opens a client from workload kubeconfig bytes.
        executor_factory: Builds a command executor for a VM address and key pair.
        vm_loader: Loads the VM handle of a machine.
    """

    def __init__(
        self,
        client: KubeClient,
        settings: Optional[ReconcilerSettings] = None,
        *,
        workload_client_factory: Optional[WorkloadClientFactory] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        vm_loader: Optional[VMLoader] = None,
    ) -> None:
        self._client = client
        self.settings = settings or ReconcilerSettings()
        self._workload_client_factory = (
            workload_client_factory or build_workload_cluster_client
        )
        self._executor_factory = executor_factory or self._ssh_executor
        self._vm_loader = vm_loader or KubevirtVM.load

    def _ssh_executor(self, address: str, key_pair: SSHKeyPair) -> CommandExecutor:
        return VMCommandExecutor(
            address,
            key_pair,
            user=self.settings.ssh_user,
            port=self.settings.ssh_port,
            connect_timeout_seconds=self.settings.ssh_connect_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # entry
    # ------------------------------------------------------------------

    async def reconcile(self, key: ObjectKey) -> Result:
        """
        Converge one KubevirtMachine.

        Raises:
            KubeApiError: On unexpected API failures.
            RuntimeError: When a stage fails in a way a timed retry cannot fix.
        """
        try:
            kubevirt_machine = await self._client.get(KubevirtMachine, key)
        except NotFoundError:
            logger.debug("KubevirtMachine %s is gone", key)
            return Result()

        ctx = await self._load_context(kubevirt_machine)
        if ctx is None:
            return Result()

        if is_paused(ctx.cluster, kubevirt_machine):
            logger.info("Reconciliation of %s is paused", key)
            return Result()

        finalizer = self.settings.finalizer
        if kubevirt_machine.is_deleting and not kubevirt_machine.has_finalizer(finalizer):
            return Result()

        async with patch_on_exit(self._client, kubevirt_machine):
            if not kubevirt_machine.has_finalizer(finalizer):
                kubevirt_machine.add_finalizer(finalizer)
                return Result()

            if not ctx.cluster.status.infrastructure_ready:
                logger.info(
                    "Waiting for cluster infrastructure of %s", ctx.cluster.key
                )
                mark_false(
                    kubevirt_machine.status.conditions,
                    VM_PROVISIONED_CONDITION,
                    WAITING_FOR_CLUSTER_INFRASTRUCTURE_REASON,
                    ConditionSeverity.INFO,
                )
                return Result()

            if kubevirt_machine.is_deleting:
                return await self._reconcile_delete(ctx)
            return await self._reconcile_normal(ctx)

    async def _load_context(
        self, kubevirt_machine: KubevirtMachine
    ) -> Optional[MachineContext]:
        key = kubevirt_machine.key

        owner = kubevirt_machine.find_owner("Machine", CLUSTER_API_GROUP)
        if owner is None:
            logger.info("Waiting for Machine controller to set OwnerRef on %s", key)
            return None
        try:
            machine = await self._client.get(
                Machine, ObjectKey(namespace=key.namespace, name=owner.name)
            )
        except NotFoundError:
            logger.info("Owner Machine %s of %s not found", owner.name, key)
            return None

        cluster_name = machine.cluster_label
        if not cluster_name:
            logger.info(
                "Machine %s is not associated with a cluster (missing cluster-name label)",
                machine.key,
            )
            return None
        try:
            cluster = await self._client.get(
                Cluster, ObjectKey(namespace=machine.namespace, name=cluster_name)
            )
        except NotFoundError:
            logger.info("Cluster %s of machine %s not found", cluster_name, machine.key)
            return None

        infra_ref = cluster.spec.infrastructure_ref
        if infra_ref is None or not infra_ref.name:
            logger.info("Cluster %s has no infrastructure reference yet", cluster.key)
            return None
        try:
            kubevirt_cluster = await self._client.get(
                KubevirtCluster, ObjectKey(namespace=key.namespace, name=infra_ref.name)
            )
        except NotFoundError:
            logger.info("KubevirtCluster %s is not available yet", infra_ref.name)
            return None

        return MachineContext(
            kubevirt_machine=kubevirt_machine,
            machine=machine,
            cluster=cluster,
            kubevirt_cluster=kubevirt_cluster,
        )

    # ------------------------------------------------------------------
    # normal path
    # ------------------------------------------------------------------

    async def _reconcile_normal(self, ctx: MachineContext) -> Result:
        kvm = ctx.kubevirt_machine
        conditions = kvm.status.conditions
        settings = self.settings

        if kvm.spec.provider_id:
            # Status does not survive a move between management clusters.
            kvm.status.ready = True
            mark_true(conditions, VM_PROVISIONED_CONDITION)
            return Result()

        if not ctx.machine.spec.bootstrap.data_secret_name:
            if not ctx.machine.is_control_plane and not is_true(
                ctx.cluster.status.conditions, CONTROL_PLANE_INITIALIZED_CONDITION
            ):
                logger.info("Waiting for the control plane of %s to be initialized", ctx.cluster.key)
                mark_false(
                    conditions,
                    VM_PROVISIONED_CONDITION,
                    WAITING_FOR_CONTROL_PLANE_AVAILABLE_REASON,
                    ConditionSeverity.INFO,
                )
                return Result()
            logger.info("Waiting for bootstrap data of machine %s", ctx.machine.key)
            mark_false(
                conditions,
                VM_PROVISIONED_CONDITION,
                WAITING_FOR_BOOTSTRAP_DATA_REASON,
                ConditionSeverity.INFO,
            )
            return Result()

        ssh_keys = ClusterNodeSSHKeys(self._client, ctx.kubevirt_cluster)
        if not await ssh_keys.is_persisted():
            logger.info("Waiting for SSH keys secret %s", ssh_keys.secret_key)
            return Result(requeue_after=settings.ssh_keys_requeue_seconds)
        try:
            key_pair = await ssh_keys.fetch()
        except SSHKeysError as ex:
            raise RuntimeError("failed to fetch ssh keys for cluster nodes") from ex

        try:
            await ensure_bootstrap_secret(
                self._client,
                kvm,
                ctx.machine,
                settings=settings,
                ssh_keys=key_pair,
            )
        except (BootstrapDataError, BootstrapDocumentError, KubeApiError) as ex:
            logger.info("Waiting for bootstrap data of %s: %s", kvm.key, ex)
            mark_false(
                conditions,
                VM_PROVISIONED_CONDITION,
                WAITING_FOR_BOOTSTRAP_DATA_REASON,
                ConditionSeverity.INFO,
            )
            return Result()

        vm = await self._vm_loader(self._client, kvm, ctx.machine, ctx.cluster)
        if not vm.exists():
            logger.info("Creating VirtualMachine for %s", kvm.key)
            try:
                await vm.create()
            except (KubeApiError, ValueError) as ex:
                raise RuntimeError(f"failed to create VM instance {kvm.key}") from ex

        executor = self._executor_factory(vm.address(), key_pair)
        if not await vm.is_booted(executor):
            logger.info("Waiting for VM %s to boot", kvm.key)
            return Result(requeue_after=settings.boot_requeue_seconds)

        # Snapshot before marking so the transition below is part of the diff.
        helper = PatchHelper(self._client, kvm)
        mark_true(conditions, VM_PROVISIONED_CONDITION)
        if not has_condition(conditions, BOOTSTRAP_EXEC_SUCCEEDED_CONDITION):
            mark_false(
                conditions,
                BOOTSTRAP_EXEC_SUCCEEDED_CONDITION,
                BOOTSTRAPPING_REASON,
                ConditionSeverity.INFO,
            )
            await helper.patch(kvm)

        if not kvm.spec.bootstrapped:
            if not await vm.is_bootstrapped(executor):
                logger.info("Waiting for VM %s to bootstrap", kvm.key)
                mark_false(
                    conditions,
                    BOOTSTRAP_EXEC_SUCCEEDED_CONDITION,
                    BOOTSTRAP_FAILED_REASON,
                    ConditionSeverity.WARNING,
                    "VM not bootstrapped yet",
                )
                return Result(requeue_after=settings.bootstrap_requeue_seconds)
            kvm.spec.bootstrapped = True

        mark_true(conditions, BOOTSTRAP_EXEC_SUCCEEDED_CONDITION)
        address = vm.address()
        kvm.status.addresses = [
            MachineAddress(type=MachineAddressType.HOSTNAME, address=kvm.name),
            MachineAddress(type=MachineAddressType.INTERNAL_IP, address=address),
            MachineAddress(type=MachineAddressType.EXTERNAL_IP, address=address),
        ]

        try:
            kubeconfig = await get_workload_kubeconfig(self._client, ctx.kubevirt_cluster)
            workload_client = await self._workload_client_factory(kubeconfig)
        except (KubeconfigError, KubeApiError) as ex:
            logger.info("Workload cluster client for %s is not available: %s", ctx.cluster.key, ex)
            return Result(requeue_after=settings.workload_client_requeue_seconds)

        try:
            async with workload_client:
                provider_id = await vm.set_provider_id(workload_client)
        except KubeApiError as ex:
            logger.info("Failed to set provider id on node %s: %s", kvm.name, ex)
            return Result(requeue_after=settings.provider_id_requeue_seconds)

        kvm.spec.provider_id = provider_id
        kvm.status.ready = True
        mark_true(conditions, VM_PROVISIONED_CONDITION)
        logger.info("KubevirtMachine %s is ready (%s)", kvm.key, provider_id)
        return Result()

    # ------------------------------------------------------------------
    # delete path
    # ------------------------------------------------------------------

    async def _reconcile_delete(self, ctx: MachineContext) -> Result:
        kvm = ctx.kubevirt_machine

        helper = PatchHelper(self._client, kvm)
        mark_false(
            kvm.status.conditions,
            VM_PROVISIONED_CONDITION,
            DELETING_REASON,
            ConditionSeverity.INFO,
        )
        await helper.patch(kvm)

        if self.settings.delete_vm_on_machine_deletion:
            await self._delete_ignore_missing(VirtualMachine, kvm.key)
            data_secret_name = ctx.machine.spec.bootstrap.data_secret_name
            if data_secret_name:
                await self._delete_ignore_missing(
                    Secret,
                    ObjectKey(
                        namespace=kvm.namespace,
                        name=userdata_secret_name(data_secret_name),
                    ),
                )

        kvm.remove_finalizer(self.settings.finalizer)
        logger.info("Removed finalizer from %s", kvm.key)
        return Result()

    async def _delete_ignore_missing(
        self, model: Type[K8sObject], key: ObjectKey
    ) -> None:
        try:
            await self._client.delete(model, key)
            logger.info("Deleted %s %s", model.RESOURCE.kind, key)
        except NotFoundError:
            pass
