from __future__ import annotations

import json

import pytest
import yaml

from capk.models.bootstrap import (
    BootstrapDocumentError,
    BootstrapUser,
    CloudConfigDocument,
    IgnitionDocument,
    parse_bootstrap_document,
)
from capk.tests import objects

USER = BootstrapUser(
    name="capk",
    gecos="CAPK User",
    sudo="ALL=(ALL) NOPASSWD:ALL",
    groups="users, admin",
    ssh_authorized_keys=[objects.PUBLIC_KEY],
)


def test_cloud_config_gets_user_and_keeps_other_fields():
    doc = parse_bootstrap_document(objects.CLOUD_CONFIG)
    assert isinstance(doc, CloudConfigDocument)

    rendered = doc.ensure_user(USER).render()

    assert rendered.startswith(b"#cloud-config\n")
    data = yaml.safe_load(rendered)
    assert data["runcmd"] == ["kubeadm join --config /run/kubeadm/kubeadm-join-config.yaml"]
    assert data["write_files"][0]["path"] == "/run/cluster-api/placeholder"
    assert data["users"] == [
        {
            "name": "capk",
            "gecos": "CAPK User",
            "sudo": "ALL=(ALL) NOPASSWD:ALL",
            "groups": "users, admin",
            "ssh_authorized_keys": [objects.PUBLIC_KEY],
        }
    ]


def test_ensure_user_is_idempotent_and_returns_new_document():
    doc = parse_bootstrap_document(objects.CLOUD_CONFIG)

    once = doc.ensure_user(USER)
    twice = once.ensure_user(USER)

    assert doc.config.users == []
    assert once.render() == twice.render()


def test_cloud_config_merges_keys_into_existing_user():
    payload = b"""#cloud-config
users:
  - default
  - name: capk
    shell: /bin/bash
    ssh_authorized_keys:
      - ssh-rsa AAAAexisting
"""
    doc = parse_bootstrap_document(payload).ensure_user(USER)

    data = yaml.safe_load(doc.render())
    assert data["users"][0] == "default"
    assert data["users"][1]["shell"] == "/bin/bash"
    assert data["users"][1]["ssh_authorized_keys"] == [
        "ssh-rsa AAAAexisting",
        objects.PUBLIC_KEY,
    ]
    assert len(data["users"]) == 2


def test_ignition_gets_user():
    doc = parse_bootstrap_document(objects.ignition_payload())
    assert isinstance(doc, IgnitionDocument)

    rendered = doc.ensure_user(
        BootstrapUser(name="core", ssh_authorized_keys=[objects.PUBLIC_KEY])
    ).render()

    data = json.loads(rendered)
    assert data["ignition"] == {"version": "3.2.0"}
    assert data["passwd"]["users"] == [
        {"name": "core", "sshAuthorizedKeys": [objects.PUBLIC_KEY]}
    ]


def test_ignition_merges_keys_into_existing_user():
    payload = objects.ignition_payload(
        users=[{"name": "core", "groups": ["wheel"], "sshAuthorizedKeys": ["ssh-rsa AAAA"]}]
    )
    doc = parse_bootstrap_document(payload).ensure_user(
        BootstrapUser(name="core", ssh_authorized_keys=[objects.PUBLIC_KEY])
    )

    users = json.loads(doc.render())["passwd"]["users"]
    assert users == [
        {
            "name": "core",
            "groups": ["wheel"],
            "sshAuthorizedKeys": ["ssh-rsa AAAA", objects.PUBLIC_KEY],
        }
    ]


@pytest.mark.parametrize(
    "payload",
    [
        b"#!/bin/bash\necho hello\n",
        b"{not json",
        b"#cloud-config\n- just\n- a list\n",
        b"#cloud-config\nusers: [\n",
        b"\xff\xfe",
    ],
)
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(BootstrapDocumentError):
        parse_bootstrap_document(payload)
