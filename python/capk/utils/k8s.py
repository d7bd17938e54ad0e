"""
capk/utils/k8s.py

The `KubeClient` protocol the controller codes against (so tests can
substitute an in-memory client), and `AsyncKubeClient`, which implements it
on top of kubernetes_asyncio.

Supports:
  - get / list (label selector) / create / JSON-merge-patch / delete of typed
    objects (any K8sObject subclass, addressed through its RESOURCE)
  - core kinds (Secret, Node) through CoreV1Api, every other kind through
    CustomObjectsApi
  - kubeconfig files, kubeconfig bytes (workload clusters) and the in-cluster
    service account, all loaded by kubernetes_asyncio.config

ApiException statuses are mapped onto error kinds: 404 => NotFoundError,
409 => AlreadyExistsError, anything else => KubeApiError. Transport errors and
timeouts also surface as KubeApiError so callers handle one family.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    Union,
)

import aiohttp
import yaml
from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    Configuration,
    CoreV1Api,
    CustomObjectsApi,
)
from kubernetes_asyncio.config import ConfigException
from pydantic.alias_generators import to_snake

from capk.models.k8s import K8sObject, ObjectKey, ResourceInfo

logger = logging.getLogger(__name__)

ObjT = TypeVar("ObjT", bound=K8sObject)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


class KubeconfigError(ValueError):
    """Raised when a kubeconfig (or the in-cluster config) cannot be used."""


class KubeApiError(RuntimeError):
    """An API request failed.

    Attributes:
        status (Optional[int]): HTTP status, None for transport failures.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(KubeApiError):
    """The requested object does not exist."""


class AlreadyExistsError(KubeApiError):
    """An object with the same name already exists."""


class KubeClient(Protocol):
    """The subset of the control-plane API the controller depends on."""

    async def __aenter__(self) -> KubeClient: ...

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None: ...

    async def get(self, model: Type[ObjT], key: ObjectKey) -> ObjT: ...

    async def list(
        self,
        model: Type[ObjT],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[ObjT]: ...

    async def create(self, obj: ObjT) -> ObjT: ...

    async def patch(
        self,
        model: Type[K8sObject],
        key: ObjectKey,
        body: Dict[str, Any],
        *,
        subresource: Optional[str] = None,
    ) -> None: ...

    async def delete(self, model: Type[K8sObject], key: ObjectKey) -> None: ...


class AsyncKubeClient:
    """
    A KubeClient bound to one kubernetes_asyncio ApiClient.

    Use as an async context manager; the ApiClient (and its connection pool)
    is closed on exit.
    """

    def __init__(self, api_client: ApiClient) -> None:
        """
        Initialize the AsyncKubeClient.

        Args:
            api_client (ApiClient): A configured kubernetes_asyncio client.
        """
        self._api_client = api_client
        self._core = CoreV1Api(api_client)
        self._custom = CustomObjectsApi(api_client)

    @classmethod
    async def from_kubeconfig(
        cls, data: bytes, context: Optional[str] = None
    ) -> AsyncKubeClient:
        """
        Build a client from kubeconfig bytes, e.g. a workload cluster secret.

        Raises:
            KubeconfigError: If the kubeconfig is invalid, its context missing,
                or its TLS material unusable.
        """
        try:
            doc = yaml.safe_load(data)
        except yaml.YAMLError as ex:
            raise KubeconfigError(f"kubeconfig is not valid YAML: {ex}") from ex
        if not isinstance(doc, dict):
            raise KubeconfigError("kubeconfig is not a mapping")
        try:
            api_client = await kube_config.new_client_from_config_dict(
                doc, context=context
            )
        except (ConfigException, ValueError, TypeError, OSError) as ex:
            raise KubeconfigError(f"unusable kubeconfig: {ex}") from ex
        return cls(api_client)

    @classmethod
    async def from_kubeconfig_file(
        cls, path: str, context: Optional[str] = None
    ) -> AsyncKubeClient:
        """
        Build a client from a kubeconfig file on disk.

        Raises:
            KubeconfigError: If the file cannot be loaded.
        """
        configuration = Configuration()
        try:
            await kube_config.load_kube_config(
                config_file=path,
                context=context,
                client_configuration=configuration,
            )
        except (ConfigException, ValueError, OSError) as ex:
            raise KubeconfigError(f"unusable kubeconfig {path}: {ex}") from ex
        logger.info("Loaded kubeconfig from %s", path)
        return cls(ApiClient(configuration))

    @classmethod
    def in_cluster(cls) -> AsyncKubeClient:
        """
        Build a client from the pod's service account.

        Raises:
            KubeconfigError: If not running inside a cluster.
        """
        configuration = Configuration()
        try:
            kube_config.load_incluster_config(client_configuration=configuration)
        except ConfigException as ex:
            raise KubeconfigError(f"in-cluster config unavailable: {ex}") from ex
        logger.info("Loaded in-cluster service account config")
        return cls(ApiClient(configuration))

    @property
    def host(self) -> str:
        return self._api_client.configuration.host

    async def __aenter__(self) -> AsyncKubeClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._api_client.close()

    def _operation(
        self,
        verb: str,
        resource: ResourceInfo,
        namespace: Optional[str] = None,
        subresource: Optional[str] = None,
    ) -> Tuple[Callable[..., Awaitable[Any]], Dict[str, Any]]:
        """
        Pick the generated API method for `verb` on `resource`.

        Returns:
            The method and the addressing keyword arguments it needs.
        """
        kwargs: Dict[str, Any] = {}
        suffix = f"_{subresource}" if subresource else ""
        if resource.group:
            api: Union[CoreV1Api, CustomObjectsApi] = self._custom
            kwargs.update(
                group=resource.group, version=resource.version, plural=resource.plural
            )
            if resource.namespaced and namespace:
                kwargs["namespace"] = namespace
                name = f"{verb}_namespaced_custom_object{suffix}"
            else:
                name = f"{verb}_cluster_custom_object{suffix}"
        else:
            api = self._core
            verb = "read" if verb == "get" else verb
            kind = to_snake(resource.kind)
            if not resource.namespaced:
                name = f"{verb}_{kind}{suffix}"
            elif namespace:
                kwargs["namespace"] = namespace
                name = f"{verb}_namespaced_{kind}{suffix}"
            else:
                name = f"{verb}_{kind}_for_all_namespaces"
        method = getattr(api, name, None)
        if method is None:
            raise ValueError(f"no API operation {name} for {resource.kind}")
        return method, kwargs

    async def _call(self, what: str, call: Awaitable[Any]) -> Dict[str, Any]:
        """
        Await one API call and return the response as a plain dict.

        Raises:
            NotFoundError: On 404.
            AlreadyExistsError: On 409.
            KubeApiError: On any other failure.
        """
        try:
            raw = await call
        except ApiException as ex:
            message = _status_message(ex.body) or ex.reason or ""
            detail = f"{what} failed: {ex.status} {message}"
            if ex.status == 404:
                raise NotFoundError(detail, ex.status) from ex
            if ex.status == 409:
                raise AlreadyExistsError(detail, ex.status) from ex
            raise KubeApiError(detail, ex.status) from ex
        except (aiohttp.ClientError, asyncio.TimeoutError) as ex:
            raise KubeApiError(f"{what} failed: {ex!r}") from ex
        # Core kinds come back as generated models; custom objects as dicts.
        parsed = self._api_client.sanitize_for_serialization(raw)
        return parsed if isinstance(parsed, dict) else {}

    async def get(self, model: Type[ObjT], key: ObjectKey) -> ObjT:
        method, kwargs = self._operation("get", model.RESOURCE, key.namespace)
        raw = await self._call(
            f"get {model.RESOURCE.kind} {key}", method(name=key.name, **kwargs)
        )
        return model.model_validate(raw)

    async def list(
        self,
        model: Type[ObjT],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[ObjT]:
        method, kwargs = self._operation("list", model.RESOURCE, namespace)
        if labels:
            kwargs["label_selector"] = ",".join(
                f"{k}={v}" for k, v in sorted(labels.items())
            )
        raw = await self._call(f"list {model.RESOURCE.plural}", method(**kwargs))
        return [model.model_validate(item) for item in raw.get("items") or []]

    async def create(self, obj: ObjT) -> ObjT:
        method, kwargs = self._operation("create", obj.RESOURCE, obj.namespace)
        raw = await self._call(
            f"create {obj.kind} {obj.key}", method(body=obj.to_json_dict(), **kwargs)
        )
        return type(obj).model_validate(raw)

    async def patch(
        self,
        model: Type[K8sObject],
        key: ObjectKey,
        body: Dict[str, Any],
        *,
        subresource: Optional[str] = None,
    ) -> None:
        method, kwargs = self._operation(
            "patch", model.RESOURCE, key.namespace, subresource
        )
        await self._call(
            f"patch {model.RESOURCE.kind} {key}",
            method(
                name=key.name,
                body=body,
                _content_type=MERGE_PATCH_CONTENT_TYPE,
                **kwargs,
            ),
        )

    async def delete(self, model: Type[K8sObject], key: ObjectKey) -> None:
        method, kwargs = self._operation("delete", model.RESOURCE, key.namespace)
        await self._call(
            f"delete {model.RESOURCE.kind} {key}", method(name=key.name, **kwargs)
        )


def _status_message(body: Union[str, bytes, None]) -> Optional[str]:
    """Extract `message` from a metav1.Status body, if the body is one."""
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        msg = parsed.get("message")
        return msg if isinstance(msg, str) else None
    return None
