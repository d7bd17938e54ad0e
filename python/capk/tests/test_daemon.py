from __future__ import annotations

import asyncio
import sys
from typing import Dict, List, Optional

import kopf
import pytest

from capk import daemon
from capk.controllers.kubevirt_machine import Result
from capk.daemon import KubevirtMachineHandlers, build_registry
from capk.models.k8s import ObjectKey
from capk.models.settings import ManagerSettings
from capk.tests import objects
from capk.tests.fakes import FakeKubeClient

KEY = ObjectKey(namespace=objects.NAMESPACE, name=objects.KUBEVIRT_MACHINE)
OTHER = ObjectKey(namespace=objects.NAMESPACE, name="other")


class StubReconciler:
    """Returns scripted results per call; exceptions are raised."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.keys: List[ObjectKey] = []
        self.gate: Optional[asyncio.Event] = None
        self.running = 0
        self.max_running = 0

    async def reconcile(self, key: ObjectKey) -> Result:
        self.keys.append(key)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            outcome = self.results.pop(0) if self.results else Result()
        finally:
            self.running -= 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def seed_cluster(client: FakeKubeClient, **cluster_kwargs) -> None:
    client.add(
        objects.cluster(**cluster_kwargs),
        objects.kubevirt_cluster(),
        objects.machine(),
        objects.kubevirt_machine(),
    )


@pytest.mark.asyncio
async def test_converged_machine_returns_quietly(client: FakeKubeClient):
    reconciler = StubReconciler(Result())
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    await handlers.on_kubevirt_machine(name=KEY.name, namespace=KEY.namespace)

    assert reconciler.keys == [KEY]


@pytest.mark.asyncio
async def test_requeue_becomes_temporary_error_with_delay(client: FakeKubeClient):
    handlers = KubevirtMachineHandlers(
        client, reconciler=StubReconciler(Result(requeue_after=20.0))
    )

    with pytest.raises(kopf.TemporaryError) as err:
        await handlers.on_kubevirt_machine(
            name=KEY.name, namespace=KEY.namespace, body={}, logger=None
        )

    assert err.value.delay == 20.0


@pytest.mark.asyncio
async def test_reconcile_errors_propagate_to_kopf(client: FakeKubeClient):
    handlers = KubevirtMachineHandlers(
        client, reconciler=StubReconciler(RuntimeError("boom"))
    )

    with pytest.raises(RuntimeError):
        await handlers.on_kubevirt_machine(name=KEY.name, namespace=KEY.namespace)


@pytest.mark.asyncio
async def test_same_key_is_never_reconciled_concurrently(client: FakeKubeClient):
    reconciler = StubReconciler()
    reconciler.gate = asyncio.Event()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    first = asyncio.create_task(handlers.reconcile(KEY))
    second = asyncio.create_task(handlers.reconcile(KEY))
    await asyncio.sleep(0.01)
    assert reconciler.running == 1

    reconciler.gate.set()
    await asyncio.gather(first, second)
    assert reconciler.max_running == 1
    assert reconciler.keys == [KEY, KEY]


@pytest.mark.asyncio
async def test_different_keys_reconcile_concurrently(client: FakeKubeClient):
    reconciler = StubReconciler()
    reconciler.gate = asyncio.Event()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    tasks = [asyncio.create_task(handlers.reconcile(k)) for k in (KEY, OTHER)]
    await asyncio.sleep(0.01)
    assert reconciler.running == 2

    reconciler.gate.set()
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_machine_event_reconciles_its_kubevirt_machine(client: FakeKubeClient):
    reconciler = StubReconciler()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    keys = await handlers.on_machine_event(body=objects.machine().to_json_dict())

    assert keys == [KEY]
    assert reconciler.keys == [KEY]


@pytest.mark.asyncio
async def test_mapped_reconcile_failure_is_logged_not_raised(client: FakeKubeClient, caplog):
    reconciler = StubReconciler(RuntimeError("boom"))
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    keys = await handlers.on_machine_event(body=objects.machine().to_json_dict())

    assert keys == [KEY]
    assert "boom" in caplog.text


@pytest.mark.asyncio
async def test_cluster_event_reaches_its_machines(client: FakeKubeClient):
    seed_cluster(client)
    reconciler = StubReconciler()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    keys = await handlers.on_cluster_event(body=objects.cluster().to_json_dict())

    assert keys == [KEY]
    assert reconciler.keys == [KEY]


@pytest.mark.asyncio
async def test_paused_cluster_event_is_ignored(client: FakeKubeClient):
    seed_cluster(client)
    reconciler = StubReconciler()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)
    paused = objects.cluster()
    paused.spec.paused = True

    assert await handlers.on_cluster_event(body=paused.to_json_dict()) == []
    assert reconciler.keys == []


@pytest.mark.asyncio
async def test_cluster_without_infrastructure_is_ignored(client: FakeKubeClient):
    seed_cluster(client, infrastructure_ready=False)
    reconciler = StubReconciler()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    body = objects.cluster(infrastructure_ready=False).to_json_dict()
    assert await handlers.on_cluster_event(body=body) == []


@pytest.mark.asyncio
async def test_kubevirt_cluster_event_reaches_its_machines(client: FakeKubeClient):
    seed_cluster(client)
    reconciler = StubReconciler()
    handlers = KubevirtMachineHandlers(client, reconciler=reconciler)

    keys = await handlers.on_kubevirt_cluster_event(
        body=objects.kubevirt_cluster().to_json_dict()
    )

    assert keys == [KEY]


@pytest.mark.asyncio
async def test_handlers_register_on_a_fresh_registry(client: FakeKubeClient):
    handlers = KubevirtMachineHandlers(client, reconciler=StubReconciler())

    registry = build_registry(handlers)

    assert isinstance(registry, kopf.OperatorRegistry)


def test_main_builds_settings_from_flags(monkeypatch):
    captured: Dict[str, Optional[ManagerSettings]] = {"settings": None}

    async def fake_run_manager(settings: ManagerSettings) -> None:
        captured["settings"] = settings

    monkeypatch.setattr(daemon, "run_manager", fake_run_manager)
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "capk-manager",
            "--kubeconfig",
            "/tmp/mgmt.kubeconfig",
            "--namespace",
            "capi-system",
            "--inject-ssh-user",
            "--log-level",
            "DEBUG",
        ],
    )

    daemon.main()

    settings = captured["settings"]
    assert settings is not None
    assert settings.kubeconfig_path == "/tmp/mgmt.kubeconfig"
    assert settings.namespace == "capi-system"
    assert settings.reconciler.inject_ssh_user is True
    assert settings.reconciler.delete_vm_on_machine_deletion is False


def test_main_falls_back_to_environment(monkeypatch):
    captured: Dict[str, Optional[ManagerSettings]] = {"settings": None}

    async def fake_run_manager(settings: ManagerSettings) -> None:
        captured["settings"] = settings

    monkeypatch.setattr(daemon, "run_manager", fake_run_manager)
    monkeypatch.setattr(sys, "argv", ["capk-manager", "--resync-seconds", "30"])
    monkeypatch.setenv("CAPK_RESYNC_SECONDS", "300")
    monkeypatch.setenv("CAPK_RETRY_BACKOFF_SECONDS", "2.5")
    monkeypatch.setenv("CAPK_DELETE_VM_ON_MACHINE_DELETION", "true")

    daemon.main()

    settings = captured["settings"]
    assert settings is not None
    assert settings.resync_seconds == 30.0
    assert settings.retry_backoff_seconds == 2.5
    assert settings.namespace is None
    assert settings.reconciler.delete_vm_on_machine_deletion is True


def test_intervals_must_be_positive():
    with pytest.raises(ValueError):
        ManagerSettings(resync_seconds=0)
