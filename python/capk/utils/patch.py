"""
capk/utils/patch.py

PatchHelper snapshots an object and later sends only what changed as JSON
merge patches: status through the status subresource first, then finalizers
and spec on the main resource. Status goes first so that a finalizer removal
(which may let the API server purge the object) is always the last write.

`patch_on_exit` wraps a block so the object is patched exactly once on every
exit path. An exception raised inside the block wins over a failing patch,
which is only logged in that case.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from capk.models.k8s import K8sObject
from capk.utils.k8s import KubeClient

logger = logging.getLogger(__name__)


def _snapshot(obj: K8sObject) -> Dict[str, Any]:
    return obj.to_json_dict()


class PatchHelper:
    """Tracks an object's state since construction (or the last patch)."""

    def __init__(self, client: KubeClient, obj: K8sObject) -> None:
        self._client = client
        self._before = _snapshot(obj)

    async def patch(self, obj: K8sObject) -> None:
        """
        Persist the differences between the snapshot and `obj`.

        Raises:
            KubeApiError: If a patch request fails.
        """
        after = _snapshot(obj)
        model = type(obj)

        before_status = self._before.get("status", {})
        after_status = after.get("status", {})
        if before_status != after_status:
            await self._client.patch(
                model, obj.key, {"status": after_status}, subresource="status"
            )

        body: Dict[str, Any] = {}
        before_finalizers = self._before.get("metadata", {}).get("finalizers", [])
        after_finalizers = after.get("metadata", {}).get("finalizers", [])
        if before_finalizers != after_finalizers:
            body["metadata"] = {"finalizers": after_finalizers}
        if self._before.get("spec", {}) != after.get("spec", {}):
            body["spec"] = after.get("spec", {})
        if body:
            await self._client.patch(model, obj.key, body)

        self._before = after


@asynccontextmanager
async def patch_on_exit(
    client: KubeClient, obj: K8sObject
) -> AsyncGenerator[PatchHelper, None]:
    """
    Patch `obj` when the block exits, however it exits.

    Cancellation skips the patch: the request that owned this work is gone.
    """
    helper = PatchHelper(client, obj)
    try:
        yield helper
    except Exception:
        try:
            await helper.patch(obj)
        except Exception as patch_exc:
            logger.error("failed to patch %s %s: %s", obj.kind, obj.key, patch_exc)
        raise
    await helper.patch(obj)
