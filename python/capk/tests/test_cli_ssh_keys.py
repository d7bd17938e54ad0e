from __future__ import annotations

import argparse

import pytest

from capk.cli import ssh_keys as cli
from capk.models.k8s import ObjectKey, Secret
from capk.tests import objects
from capk.tests.fakes import FakeKubeClient


def cli_args(**kwargs) -> argparse.Namespace:
    values = {
        "kubeconfig": None,
        "namespace": objects.NAMESPACE,
        "cluster": objects.KUBEVIRT_CLUSTER,
        "comment": None,
    }
    values.update(kwargs)
    return argparse.Namespace(**values)


@pytest.fixture
def cli_client(monkeypatch, client: FakeKubeClient) -> FakeKubeClient:
    async def fake_client(kubeconfig):
        return client

    def fake_generate(comment: str = "capk"):
        return objects.key_pair()

    monkeypatch.setattr(cli, "_client", fake_client)
    monkeypatch.setattr(cli, "generate_ssh_key_pair", fake_generate)
    client.add(objects.kubevirt_cluster())
    return client


@pytest.mark.asyncio
async def test_generate_persists_keys(cli_client: FakeKubeClient, capsys):
    await cli.run_generate(cli_args())

    key = ObjectKey(namespace=objects.NAMESPACE, name=f"{objects.KUBEVIRT_CLUSTER}-ssh-keys")
    assert cli_client.read(Secret, key) is not None
    assert "Persisted SSH keys" in capsys.readouterr().out
    assert cli_client.closed


@pytest.mark.asyncio
async def test_generate_leaves_existing_keys(cli_client: FakeKubeClient, capsys):
    cli_client.add(objects.ssh_keys_secret())

    await cli.run_generate(cli_args())

    assert "already persisted" in capsys.readouterr().out
    assert cli_client.writes() == []


@pytest.mark.asyncio
async def test_show_prints_public_key(cli_client: FakeKubeClient, capsys):
    cli_client.add(objects.ssh_keys_secret())

    await cli.run_show(cli_args())

    assert capsys.readouterr().out.strip() == objects.PUBLIC_KEY


@pytest.mark.asyncio
async def test_show_without_keys_exits_nonzero(cli_client: FakeKubeClient, capsys):
    with pytest.raises(SystemExit) as err:
        await cli.run_show(cli_args())

    assert err.value.code == 1
    assert "Error" in capsys.readouterr().err
