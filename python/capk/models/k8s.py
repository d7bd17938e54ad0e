"""
capk/models/k8s.py

Pydantic models for the generic parts of Kubernetes objects:
 - ResourceInfo: group/version/plural of a kind
 - ObjectKey: namespace + name identity of an object
 - ObjectMeta, OwnerReference, ObjectReference
 - K8sObject: base class for every typed object the controller reads or writes
 - Secret, Node

All models alias their fields to Kubernetes' camelCase JSON and keep unknown
fields (extra="allow"), so an object read from the API can be dumped and
patched back without losing anything we do not model.
"""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class K8sModel(BaseModel):
    """Base for all Kubernetes-shaped models (camelCase JSON, extras kept)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump to the JSON shape the API server expects."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ResourceInfo(BaseModel):
    """
    Describes where a kind lives in the API.

    Attributes:
        group: API group, "" for the core group.
        version: API version, e.g. "v1".
        kind: The object kind, e.g. "Secret".
        plural: The REST resource name, e.g. "secrets".
        namespaced: False for cluster-scoped kinds such as Node.
    """

    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


class ObjectKey(BaseModel):
    """Namespace/name identity of an object; also the reconcile request."""

    namespace: str = ""
    name: str

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


class OwnerReference(K8sModel):
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None

    @property
    def group(self) -> str:
        return self.api_version.split("/")[0] if "/" in self.api_version else ""


class ObjectReference(K8sModel):
    api_version: Optional[str] = None
    kind: Optional[str] = None
    name: str = ""
    namespace: Optional[str] = None


class ObjectMeta(K8sModel):
    name: str = ""
    namespace: str = ""
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None


class K8sObject(K8sModel):
    """
    Base for typed API objects. Subclasses set RESOURCE; apiVersion and kind
    are filled in from it when absent.
    """

    RESOURCE: ClassVar[ResourceInfo]

    api_version: str = ""
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @model_validator(mode="after")
    def fill_type_meta(self) -> K8sObject:
        if not self.api_version:
            self.api_version = self.RESOURCE.api_version
        if not self.kind:
            self.kind = self.RESOURCE.kind
        return self

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [
            f for f in self.metadata.finalizers if f != finalizer
        ]

    def owner_reference(self, controller: Optional[bool] = None) -> OwnerReference:
        """Build an OwnerReference pointing at this object."""
        return OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.metadata.name,
            uid=self.metadata.uid or "",
            controller=controller,
        )

    def find_owner(self, kind: str, group: str) -> Optional[OwnerReference]:
        """Return the first owner reference of the given kind and API group."""
        return next(
            (
                ref
                for ref in self.metadata.owner_references
                if ref.kind == kind and ref.group == group
            ),
            None,
        )


def ensure_owner_ref(
    refs: List[OwnerReference], ref: OwnerReference
) -> List[OwnerReference]:
    """
    Return refs with `ref` present exactly once, replacing any reference to the
    same kind/name (an owner re-created with a new uid replaces the stale one).
    """
    kept = [r for r in refs if not (r.kind == ref.kind and r.name == ref.name)]
    return kept + [ref]


class Secret(K8sObject):
    """A core/v1 Secret. `data` holds base64 strings, as on the wire."""

    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group="", version="v1", kind="Secret", plural="secrets"
    )

    type: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)

    def get_bytes(self, key: str) -> Optional[bytes]:
        """Return the decoded payload under `key`, or None if absent."""
        raw = self.data.get(key)
        if raw is None:
            return None
        return base64.b64decode(raw)

    @classmethod
    def from_bytes(
        cls,
        name: str,
        namespace: str,
        payload: Dict[str, bytes],
        *,
        secret_type: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        owner_references: Optional[List[OwnerReference]] = None,
    ) -> Secret:
        """Build a Secret whose data values are the base64 encoding of `payload`."""
        return cls(
            metadata=ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels or {},
                owner_references=owner_references or [],
            ),
            type=secret_type,
            data={k: base64.b64encode(v).decode("ascii") for k, v in payload.items()},
        )


class NodeSpec(K8sModel):
    provider_id: Optional[str] = Field(default=None, alias="providerID")


class Node(K8sObject):
    """A core/v1 Node of the workload cluster (cluster-scoped)."""

    RESOURCE: ClassVar[ResourceInfo] = ResourceInfo(
        group="", version="v1", kind="Node", plural="nodes", namespaced=False
    )

    spec: NodeSpec = Field(default_factory=NodeSpec)
