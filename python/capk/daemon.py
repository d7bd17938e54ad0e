"""
capk/daemon.py

The controller manager, run as a kopf operator:
  1) Connects to the management cluster (kubeconfig file or in-cluster
     service account) or fails => K8s restarts the container.
  2) KubevirtMachine resume/create/update/delete events and a periodic timer
     call KubevirtMachineReconciler.reconcile on that object. A Result asking
     for a requeue becomes kopf.TemporaryError(delay=...), so kopf calls the
     handler again after that delay. Any other error is retried by kopf after
     `retry_backoff_seconds`.
  3) Machine, Cluster and KubevirtCluster events are mapped onto the
     KubevirtMachines they affect, which are reconciled right away; a requeue
     they ask for is picked up by the KubevirtMachine's own timer.

KubevirtMachines carrying the paused annotation are filtered out by kopf, and
paused Clusters do not fan out to their machines. Reconciles of one
KubevirtMachine never overlap: every path takes that key's lock.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import weakref
from typing import Any, Dict, Iterable, List, Optional

import kopf

from capk.controllers.kubevirt_machine import KubevirtMachineReconciler, Result
from capk.controllers.mappers import (
    cluster_to_kubevirt_machines,
    kubevirt_cluster_to_kubevirt_machines,
    machine_to_kubevirt_machine,
)
from capk.models.cluster_api import PAUSED_ANNOTATION, Cluster, Machine
from capk.models.k8s import ObjectKey
from capk.models.kubevirt import KubevirtCluster, KubevirtMachine
from capk.models.settings import ManagerSettings, ReconcilerSettings
from capk.utils.k8s import AsyncKubeClient, KubeApiError, KubeClient

logger = logging.getLogger(__name__)


class KubevirtMachineHandlers:
    """
    The kopf handlers of the manager, bound to one reconciler.

    Args:
        client: Management cluster client (already entered).
        settings: Resync and retry periods.
        reconciler: Defaults to a KubevirtMachineReconciler on `client`.
    """

    def __init__(
        self,
        client: KubeClient,
        settings: Optional[ManagerSettings] = None,
        reconciler: Optional[KubevirtMachineReconciler] = None,
    ) -> None:
        self._client = client
        self.settings = settings or ManagerSettings()
        self.reconciler = reconciler or KubevirtMachineReconciler(
            client, self.settings.reconciler
        )
        self._locks: weakref.WeakValueDictionary[ObjectKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def reconcile(self, key: ObjectKey) -> Result:
        """Reconcile `key`, waiting for any reconcile of it already running."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            return await self.reconciler.reconcile(key)

    async def on_kubevirt_machine(self, name: str, namespace: str, **_: Any) -> None:
        """
        Reconcile one KubevirtMachine.

        Raises:
            kopf.TemporaryError: When the reconciler asks to be called again.
        """
        key = ObjectKey(namespace=namespace, name=name)
        result = await self.reconcile(key)
        if result.requeue_after:
            raise kopf.TemporaryError(
                f"KubevirtMachine {key} not converged yet",
                delay=result.requeue_after,
            )

    async def _reconcile_all(self, keys: Iterable[ObjectKey]) -> List[ObjectKey]:
        done: List[ObjectKey] = []
        for key in dict.fromkeys(keys):
            try:
                await self.reconcile(key)
            except Exception as ex:
                # The object's own handlers retry it.
                logger.error("Reconcile of %s failed: %s", key, ex)
            done.append(key)
        return done

    async def on_machine_event(self, body: Dict[str, Any], **_: Any) -> List[ObjectKey]:
        machine = Machine.model_validate(dict(body))
        return await self._reconcile_all(machine_to_kubevirt_machine(machine))

    async def on_cluster_event(self, body: Dict[str, Any], **_: Any) -> List[ObjectKey]:
        cluster = Cluster.model_validate(dict(body))
        if cluster.spec.paused or not cluster.status.infrastructure_ready:
            logger.debug("Cluster %s is paused or not ready, nothing to do", cluster.key)
            return []
        keys = await cluster_to_kubevirt_machines(self._client, cluster)
        return await self._reconcile_all(keys)

    async def on_kubevirt_cluster_event(
        self, body: Dict[str, Any], **_: Any
    ) -> List[ObjectKey]:
        kubevirt_cluster = KubevirtCluster.model_validate(dict(body))
        keys: List[ObjectKey] = []
        # The index yields Machines; follow each to its KubevirtMachine.
        for machine_key in await kubevirt_cluster_to_kubevirt_machines(
            self._client, kubevirt_cluster
        ):
            try:
                machine = await self._client.get(Machine, machine_key)
            except KubeApiError as ex:
                logger.debug("Machine %s unavailable: %s", machine_key, ex)
                continue
            keys.extend(machine_to_kubevirt_machine(machine))
        return await self._reconcile_all(keys)

    def register(self, registry: kopf.OperatorRegistry) -> None:
        """Register every handler of the manager on `registry`."""
        res = KubevirtMachine.RESOURCE
        not_paused = {PAUSED_ANNOTATION: kopf.ABSENT}
        backoff = self.settings.retry_backoff_seconds

        for reason, decorator in (
            ("resume", kopf.on.resume),
            ("create", kopf.on.create),
            ("update", kopf.on.update),
        ):
            decorator(
                res.group,
                res.version,
                res.plural,
                id=f"kubevirtmachine-{reason}",
                annotations=not_paused,
                backoff=backoff,
                registry=registry,
            )(self.on_kubevirt_machine)
        kopf.on.delete(
            res.group,
            res.version,
            res.plural,
            id="kubevirtmachine-delete",
            annotations=not_paused,
            optional=True,
            backoff=backoff,
            registry=registry,
        )(self.on_kubevirt_machine)
        kopf.timer(
            res.group,
            res.version,
            res.plural,
            id="kubevirtmachine-resync",
            interval=self.settings.resync_seconds,
            annotations=not_paused,
            backoff=backoff,
            registry=registry,
        )(self.on_kubevirt_machine)

        for model, handler in (
            (Machine, self.on_machine_event),
            (Cluster, self.on_cluster_event),
            (KubevirtCluster, self.on_kubevirt_cluster_event),
        ):
            watched = model.RESOURCE
            kopf.on.event(
                watched.group,
                watched.version,
                watched.plural,
                id=f"{watched.plural}-to-kubevirtmachines",
                registry=registry,
            )(handler)


def build_registry(handlers: KubevirtMachineHandlers) -> kopf.OperatorRegistry:
    """A registry holding the manager's handlers and its login/startup hooks."""
    registry = kopf.OperatorRegistry()
    handlers.register(registry)

    @kopf.on.login(registry=registry)
    def login(**kwargs: Any) -> Optional[kopf.ConnectionInfo]:
        return kopf.login_with_service_account(**kwargs) or kopf.login_with_kubeconfig(
            **kwargs
        )

    @kopf.on.startup(registry=registry)
    def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
        settings.watching.server_timeout = 210
        settings.persistence.finalizer = (
            f"capk.{KubevirtMachine.RESOURCE.group}/kopf-finalizer"
        )

    return registry


async def _connect(settings: ManagerSettings) -> AsyncKubeClient:
    if settings.kubeconfig_path:
        return await AsyncKubeClient.from_kubeconfig_file(settings.kubeconfig_path)
    return AsyncKubeClient.in_cluster()


async def run_manager(settings: ManagerSettings) -> None:
    if settings.kubeconfig_path:
        # kopf's own login reads the kubeconfig location from the environment.
        os.environ["KUBECONFIG"] = settings.kubeconfig_path
    client = await _connect(settings)
    async with client:
        logger.info("Manager starting against %s", client.host)
        handlers = KubevirtMachineHandlers(client, settings)
        await kopf.operator(
            registry=build_registry(handlers),
            clusterwide=settings.namespace is None,
            namespaces=[settings.namespace] if settings.namespace else (),
            standalone=True,
        )


def main() -> None:
    """CLI entry point of the controller manager."""
    parser = argparse.ArgumentParser(
        prog="capk-manager",
        description="KubeVirt infrastructure controller for Cluster API machines.",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Kubeconfig of the management cluster (default: in-cluster service account).",
    )
    parser.add_argument(
        "--namespace",
        default=None,
        help="Only watch this namespace (default: all namespaces).",
    )
    parser.add_argument(
        "--resync-seconds",
        type=float,
        default=None,
        help="Interval for re-reconciling every KubevirtMachine (default: 60).",
    )
    parser.add_argument(
        "--retry-backoff-seconds",
        type=float,
        default=None,
        help="Delay before retrying a failed reconcile (default: 10).",
    )
    parser.add_argument(
        "--inject-ssh-user",
        action="store_true",
        default=None,
        help="Add the cluster SSH user and public key to node bootstrap data.",
    )
    parser.add_argument(
        "--delete-vm-on-machine-deletion",
        action="store_true",
        default=None,
        help="Delete VMs explicitly instead of relying on garbage collection.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Unset flags fall back to CAPK_* environment variables, then to defaults.
    manager_args = {
        "kubeconfig_path": args.kubeconfig,
        "namespace": args.namespace,
        "resync_seconds": args.resync_seconds,
        "retry_backoff_seconds": args.retry_backoff_seconds,
    }
    reconciler_args = {
        "inject_ssh_user": args.inject_ssh_user,
        "delete_vm_on_machine_deletion": args.delete_vm_on_machine_deletion,
    }
    settings = ManagerSettings(
        **{k: v for k, v in manager_args.items() if v is not None},
        reconciler=ReconcilerSettings(
            **{k: v for k, v in reconciler_args.items() if v is not None}
        ),
    )
    try:
        asyncio.run(run_manager(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
