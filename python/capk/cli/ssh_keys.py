"""
capk/cli/ssh_keys.py

Thin CLI around capk.secrets.ssh:

  - `generate` subcommand -> generate_ssh_key_pair + ClusterNodeSSHKeys.persist
  - `show` subcommand -> ClusterNodeSSHKeys.fetch (prints the public key)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from capk.models.k8s import ObjectKey
from capk.models.kubevirt import KubevirtCluster
from capk.secrets.ssh import ClusterNodeSSHKeys, SSHKeysError, generate_ssh_key_pair
from capk.utils.k8s import AsyncKubeClient


async def _client(kubeconfig: Optional[str]) -> AsyncKubeClient:
    if kubeconfig:
        return await AsyncKubeClient.from_kubeconfig_file(kubeconfig)
    return AsyncKubeClient.in_cluster()


async def run_generate(args: argparse.Namespace) -> None:
    """
    Generate a key pair and persist it for the KubevirtCluster. An already
    persisted pair is left untouched.
    """
    async with await _client(args.kubeconfig) as client:
        kubevirt_cluster = await client.get(
            KubevirtCluster, ObjectKey(namespace=args.namespace, name=args.cluster)
        )
        keys = ClusterNodeSSHKeys(client, kubevirt_cluster)
        if await keys.is_persisted():
            print(f"SSH keys already persisted in '{keys.secret_key}'")
            return
        key_pair = generate_ssh_key_pair(comment=args.comment or args.cluster)
        secret_key = await keys.persist(key_pair)
    print(f"Persisted SSH keys in '{secret_key}'")


async def run_show(args: argparse.Namespace) -> None:
    async with await _client(args.kubeconfig) as client:
        kubevirt_cluster = await client.get(
            KubevirtCluster, ObjectKey(namespace=args.namespace, name=args.cluster)
        )
        try:
            key_pair = await ClusterNodeSSHKeys(client, kubevirt_cluster).fetch()
        except SSHKeysError as ex:
            print(f"Error: {ex}", file=sys.stderr)
            sys.exit(1)
    print(key_pair.public_key)


def main() -> None:
    """
    CLI entry point for managing the node SSH keys of a KubevirtCluster.
    """
    parser = argparse.ArgumentParser(
        prog="capk-ssh-keys",
        description="Generate or inspect the node SSH key pair of a KubevirtCluster.",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Kubeconfig of the management cluster (default: in-cluster service account).",
    )
    parser.add_argument("--namespace", required=True, help="KubevirtCluster namespace.")
    parser.add_argument("--cluster", required=True, help="KubevirtCluster name.")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate_parser = subparsers.add_parser(
        "generate", help="Generate and persist a key pair (no-op if one exists)."
    )
    generate_parser.add_argument(
        "--comment", default=None, help="Key comment (default: cluster name)."
    )
    generate_parser.set_defaults(func=run_generate)

    show_parser = subparsers.add_parser("show", help="Print the persisted public key.")
    show_parser.set_defaults(func=run_show)

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level))
    asyncio.run(args.func(args))


if __name__ == "__main__":
    main()
