"""
capk/models/settings.py

Configuration for the control loop and the manager process. Every timing
constant the reconciler uses lives here and is injected, never hard-coded at
the call site.

Both models are pydantic settings: fields can be set from `CAPK_`-prefixed
environment variables (e.g. `CAPK_RESYNC_SECONDS=120`, `CAPK_INJECT_SSH_USER=true`);
explicit constructor arguments win.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CAPK_"

MACHINE_FINALIZER = "kubevirtmachine.infrastructure.cluster.x-k8s.io"


class ReconcilerSettings(BaseSettings):
    """
    Attributes:
        finalizer: Finalizer placed on every KubevirtMachine.
        ssh_keys_requeue_seconds: Poll interval while the cluster SSH keys are not persisted.
        boot_requeue_seconds: Poll interval while the VM has not booted.
        bootstrap_requeue_seconds: Poll interval while the VM has not bootstrapped.
        workload_client_requeue_seconds: Poll interval while the workload cluster is unreachable.
        provider_id_requeue_seconds: Poll interval while the workload Node cannot be patched.
        inject_ssh_user: Add the cluster SSH user/key to the bootstrap data.
        ssh_user: User the remote command executor logs in as.
        ssh_port: SSH port on the VMs.
        ssh_connect_timeout_seconds: ssh ConnectTimeout for readiness checks.
        delete_vm_on_machine_deletion: Delete the VM and derived secret explicitly
            on machine deletion instead of relying on owner-reference garbage collection.
    """

    finalizer: str = MACHINE_FINALIZER
    ssh_keys_requeue_seconds: float = 10.0
    boot_requeue_seconds: float = 20.0
    bootstrap_requeue_seconds: float = 10.0
    workload_client_requeue_seconds: float = 10.0
    provider_id_requeue_seconds: float = 5.0
    inject_ssh_user: bool = False
    ssh_user: str = "capk"
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    delete_vm_on_machine_deletion: bool = False

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX)

    @field_validator(
        "ssh_keys_requeue_seconds",
        "boot_requeue_seconds",
        "bootstrap_requeue_seconds",
        "workload_client_requeue_seconds",
        "provider_id_requeue_seconds",
    )
    @classmethod
    def validate_positive(cls, val: float) -> float:
        if val <= 0:
            raise ValueError("requeue intervals must be positive")
        return val


class ManagerSettings(BaseSettings):
    """
    Attributes:
        kubeconfig_path: Kubeconfig of the management cluster; None => in-cluster.
        namespace: Only watch this namespace; None => all namespaces.
        resync_seconds: How often every KubevirtMachine is reconciled regardless
            of events.
        retry_backoff_seconds: Delay before a failed reconcile is retried.
        reconciler: Settings handed to the machine reconciler.
    """

    kubeconfig_path: Optional[str] = None
    namespace: Optional[str] = None
    resync_seconds: float = Field(default=60.0, gt=0)
    retry_backoff_seconds: float = Field(default=10.0, gt=0)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX)
