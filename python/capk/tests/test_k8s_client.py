from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Tuple

import pytest
import yaml
from aiohttp import web
from aiohttp.test_utils import TestServer

from capk.models.k8s import Node, ObjectKey, Secret
from capk.models.kubevirt import KubevirtMachine, VirtualMachine
from capk.tests import objects
from capk.utils.k8s import (
    AlreadyExistsError,
    AsyncKubeClient,
    KubeApiError,
    KubeconfigError,
    NotFoundError,
)

KVM_PATH = (
    "/apis/infrastructure.cluster.x-k8s.io/v1alpha4/namespaces/default/"
    "kubevirtmachines/test-machine-kv"
)


class Recorder:
    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []


def make_app(recorder: Recorder) -> web.Application:
    app = web.Application()

    async def record(request: web.Request) -> Dict[str, Any]:
        body = await request.read()
        entry = {
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "auth": request.headers.get("Authorization"),
            "content_type": request.headers.get("Content-Type"),
            "body": json.loads(body) if body else None,
        }
        recorder.requests.append(entry)
        return entry

    async def kubevirt_machine(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response(objects.kubevirt_machine().to_json_dict())

    async def patched(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response(objects.kubevirt_machine().to_json_dict())

    async def list_machines(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response(
            {
                "apiVersion": "infrastructure.cluster.x-k8s.io/v1alpha4",
                "kind": "KubevirtMachineList",
                "items": [objects.kubevirt_machine().to_json_dict()],
            }
        )

    async def secrets(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response(
            {"kind": "Status", "reason": "AlreadyExists", "message": 'secrets "s" already exists'},
            status=409,
        )

    async def secret(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "s", "namespace": "default", "resourceVersion": "7"},
                "type": "Opaque",
                "data": {"value": "eA=="},
            }
        )

    async def missing(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response(
            {"kind": "Status", "reason": "NotFound", "message": 'nodes "n1" not found'},
            status=404,
        )

    async def broken(request: web.Request) -> web.Response:
        await record(request)
        return web.Response(status=500, text="internal error")

    async def deleted(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response({"kind": "Status", "status": "Success"})

    app.router.add_get(KVM_PATH, kubevirt_machine)
    app.router.add_patch(KVM_PATH, patched)
    app.router.add_patch(KVM_PATH + "/status", patched)
    app.router.add_get(
        "/apis/infrastructure.cluster.x-k8s.io/v1alpha4/kubevirtmachines", list_machines
    )
    app.router.add_post("/api/v1/namespaces/default/secrets", secrets)
    app.router.add_get("/api/v1/namespaces/default/secrets/s", secret)
    app.router.add_get("/api/v1/nodes/n1", missing)
    app.router.add_get("/apis/kubevirt.io/v1/namespaces/default/virtualmachines/vm1", broken)
    app.router.add_delete(
        "/apis/kubevirt.io/v1/namespaces/default/virtualmachines/vm2", deleted
    )
    return app


def plain_kubeconfig(server: str) -> bytes:
    """A kubeconfig for `server` with a bearer token and no CA."""
    doc = yaml.safe_load(objects.kubeconfig_bytes(server))
    doc["users"][0]["user"]["token"] = "sekret"
    return yaml.safe_dump(doc).encode("utf-8")


@asynccontextmanager
async def api_server() -> AsyncIterator[Tuple[AsyncKubeClient, Recorder]]:
    recorder = Recorder()
    server = TestServer(make_app(recorder))
    await server.start_server()
    url = f"http://{server.host}:{server.port}"
    try:
        client = await AsyncKubeClient.from_kubeconfig(plain_kubeconfig(url))
        async with client:
            yield client, recorder
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_get_decodes_typed_object_with_bearer_token():
    async with api_server() as (client, recorder):
        kvm = await client.get(
            KubevirtMachine, ObjectKey(namespace="default", name="test-machine-kv")
        )

    assert kvm.name == objects.KUBEVIRT_MACHINE
    assert kvm.spec.vm_spec["domain"]["cpu"] == {"cores": 2}
    assert recorder.requests[0]["path"] == KVM_PATH
    assert recorder.requests[0]["auth"] == "Bearer sekret"


@pytest.mark.asyncio
async def test_core_kind_is_decoded_from_generated_model():
    async with api_server() as (client, _):
        secret = await client.get(
            Secret, ObjectKey(namespace="default", name="s")
        )

    assert secret.get_bytes("value") == b"x"
    assert secret.metadata.resource_version == "7"
    assert secret.kind == "Secret"


@pytest.mark.asyncio
async def test_list_across_namespaces_sends_label_selector():
    async with api_server() as (client, recorder):
        items = await client.list(KubevirtMachine, labels={"b": "2", "a": "1"})

    assert [i.name for i in items] == [objects.KUBEVIRT_MACHINE]
    assert recorder.requests[0]["query"]["labelSelector"] == "a=1,b=2"


@pytest.mark.asyncio
async def test_patch_uses_merge_patch():
    async with api_server() as (client, recorder):
        await client.patch(
            KubevirtMachine,
            ObjectKey(namespace="default", name="test-machine-kv"),
            {"metadata": {"finalizers": ["f"]}},
        )

    req = recorder.requests[0]
    assert req["method"] == "PATCH"
    assert req["path"] == KVM_PATH
    assert req["content_type"].startswith("application/merge-patch+json")
    assert req["body"] == {"metadata": {"finalizers": ["f"]}}


@pytest.mark.asyncio
async def test_patch_status_subresource():
    async with api_server() as (client, recorder):
        await client.patch(
            KubevirtMachine,
            ObjectKey(namespace="default", name="test-machine-kv"),
            {"status": {"ready": True}},
            subresource="status",
        )

    req = recorder.requests[0]
    assert req["path"] == KVM_PATH + "/status"
    assert req["content_type"].startswith("application/merge-patch+json")
    assert req["body"] == {"status": {"ready": True}}


@pytest.mark.asyncio
async def test_conflict_on_create_is_already_exists():
    async with api_server() as (client, recorder):
        with pytest.raises(AlreadyExistsError) as err:
            await client.create(objects.secret("s", {"value": b"x"}))

    assert err.value.status == 409
    assert "already exists" in str(err.value)
    assert recorder.requests[0]["body"]["data"] == {"value": "eA=="}


@pytest.mark.asyncio
async def test_missing_object_is_not_found():
    async with api_server() as (client, _):
        with pytest.raises(NotFoundError) as err:
            await client.get(Node, ObjectKey(name="n1"))

    assert err.value.status == 404
    assert "not found" in str(err.value)


@pytest.mark.asyncio
async def test_server_error_is_api_error():
    async with api_server() as (client, _):
        with pytest.raises(KubeApiError) as err:
            await client.get(VirtualMachine, ObjectKey(namespace="default", name="vm1"))

    assert not isinstance(err.value, NotFoundError)
    assert err.value.status == 500


@pytest.mark.asyncio
async def test_delete():
    async with api_server() as (client, recorder):
        await client.delete(VirtualMachine, ObjectKey(namespace="default", name="vm2"))

    assert recorder.requests[0]["method"] == "DELETE"


@pytest.mark.asyncio
async def test_unreachable_server_is_api_error():
    server = TestServer(web.Application())
    await server.start_server()
    url = f"http://{server.host}:{server.port}"
    await server.close()

    client = await AsyncKubeClient.from_kubeconfig(plain_kubeconfig(url))
    async with client:
        with pytest.raises(KubeApiError) as err:
            await client.get(Node, ObjectKey(name="n1"))

    assert err.value.status is None


@pytest.mark.asyncio
async def test_kubeconfig_file_is_loaded(tmp_path):
    path = tmp_path / "config"
    path.write_bytes(plain_kubeconfig("http://127.0.0.1:6443"))

    client = await AsyncKubeClient.from_kubeconfig_file(str(path))
    async with client:
        assert client.host == "http://127.0.0.1:6443"


@pytest.mark.asyncio
async def test_missing_kubeconfig_file(tmp_path):
    with pytest.raises(KubeconfigError):
        await AsyncKubeClient.from_kubeconfig_file(str(tmp_path / "absent"))


def test_in_cluster_requires_service_host(monkeypatch):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_PORT", raising=False)
    with pytest.raises(KubeconfigError):
        AsyncKubeClient.in_cluster()
