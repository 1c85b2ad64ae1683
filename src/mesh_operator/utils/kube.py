# ABOUTME: Kubernetes API client wrapper with retry logic and error handling
# ABOUTME: Provides async list/get/create/update/delete and upsert over arbitrary manifests

"""
Cluster control-plane client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The operator talks to the Kubernetes API for two reasons:

1. APPLYING RENDERED MANIFESTS: desired-state workload manifests of any
   kind (Deployments, Services, ConfigMaps ...) are created or updated.
2. REPAIRING LIVE WORKLOADS: the reconciliation loop lists Pods,
   Deployments and StatefulSets and re-applies the ones it mutated.

Manifests are plain dicts throughout, the same shape as YAML on disk, so the
dynamic client is used rather than the typed per-kind APIs.

=============================================================================
APPLY MODES
=============================================================================

    CREATE_OR_UPDATE  - create if missing, otherwise replace with our copy
    GET_OR_CREATE     - create if missing, otherwise leave the live object

=============================================================================
THREADS
=============================================================================

The kubernetes client is synchronous. Every call runs in a worker thread via
``asyncio.to_thread`` so the operator's loops never stall on the API server.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = structlog.get_logger(__name__)


POD = ("v1", "Pod")
DEPLOYMENT = ("apps/v1", "Deployment")
STATEFULSET = ("apps/v1", "StatefulSet")


class ApplyMode(str, Enum):
    CREATE_OR_UPDATE = "create_or_update"
    GET_OR_CREATE = "get_or_create"


# =============================================================================
# CLUSTER ERROR CLASS
# =============================================================================


class ClusterError(Exception):
    """
    Structured Kubernetes API error.

    USAGE:
    ------
    try:
        live = await cluster.get("apps/v1", "Deployment", "web", "apps")
    except ClusterError as e:
        if e.is_not_found:
            ...
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Kubernetes API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def is_not_found(self) -> bool:
        return self.code == 404

    @classmethod
    def from_api_exception(cls, e: ApiException) -> ClusterError:
        return cls(code=e.status or 0, message=e.reason or "request failed", details=_body(e))


def _body(e: ApiException) -> str | None:
    body = e.body
    if isinstance(body, bytes):
        body = body.decode(errors="replace")
    return body[:200] if body else None


def _is_transient(exc: BaseException) -> bool:
    """Retry throttling, server errors and dropped connections; never 4xx."""
    if isinstance(exc, ApiException):
        return exc.status in (0, 429) or (exc.status or 0) >= 500
    return isinstance(exc, urllib3.exceptions.HTTPError)


def object_ref(obj: dict[str, Any]) -> str:
    """``namespace/name`` label for logs and audit entries."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    name = metadata.get("name") or ""
    return f"{namespace}/{name}" if namespace else name


# =============================================================================
# CLUSTER CLIENT
# =============================================================================


class ClusterClient:
    """
    Async Kubernetes client over the dynamic API.

    RETRY LOGIC:
    ------------
    Every API call retries transient failures (HTTP 429/5xx, connection
    errors) with exponential backoff:
    - Attempt 1: Immediate
    - Attempt 2: Wait 1 second
    - Attempt 3: Wait 2 seconds
    - Give up: Raise ClusterError
    """

    def __init__(self, api_client: k8s_client.ApiClient | None = None) -> None:
        """
        Initialize cluster client.

        Args:
            api_client: Configured kubernetes ApiClient. When None, the default
                        configuration loaded by ``from_environment`` is used.
        """
        self._api_client = api_client
        self._dynamic: DynamicClient | None = None

    @classmethod
    def from_environment(cls) -> ClusterClient:
        """Load in-cluster configuration, falling back to the local kubeconfig."""
        try:
            k8s_config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            k8s_config.load_kube_config()
            logger.info("Loaded Kubernetes configuration from kubeconfig")
        return cls(k8s_client.ApiClient())

    def _client(self) -> DynamicClient:
        if self._dynamic is None:
            # Discovery happens here, so this is only ever called from a worker thread
            self._dynamic = DynamicClient(self._api_client or k8s_client.ApiClient())
        return self._dynamic

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return fn(*args, **kwargs)

    def _resource(self, api_version: str, kind: str) -> Any:
        try:
            return self._call(self._client().resources.get, api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ClusterError(404, f"unknown resource type {api_version}/{kind}") from e

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except ApiException as e:
            raise ClusterError.from_api_exception(e) from e
        except urllib3.exceptions.HTTPError as e:
            raise ClusterError(0, "connection failed", str(e)) from e

    # =========================================================================
    # PRIMITIVE OPERATIONS
    # =========================================================================

    async def list(self, api_version: str, kind: str, namespace: str) -> list[dict[str, Any]]:
        """
        List objects of one kind in one namespace.

        List items come back without apiVersion/kind; both are filled in so
        every returned dict is a complete manifest that can be re-applied.
        """

        def _list() -> list[dict[str, Any]]:
            resource = self._resource(api_version, kind)
            result = self._call(resource.get, namespace=namespace)
            items = result.to_dict().get("items") or []
            for item in items:
                item.setdefault("apiVersion", api_version)
                item.setdefault("kind", kind)
            return items

        items: list[dict[str, Any]] = await self._run(_list)
        return items

    async def get(self, api_version: str, kind: str, name: str, namespace: str | None) -> dict[str, Any]:
        """
        Get one object.

        Raises:
            ClusterError: ``is_not_found`` is set when the object does not exist
        """

        def _get() -> dict[str, Any]:
            resource = self._resource(api_version, kind)
            kwargs = {"name": name}
            if resource.namespaced:
                kwargs["namespace"] = namespace
            return self._call(resource.get, **kwargs).to_dict()

        obj: dict[str, Any] = await self._run(_get)
        return obj

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        def _create() -> dict[str, Any]:
            resource = self._resource(obj["apiVersion"], obj["kind"])
            kwargs: dict[str, Any] = {"body": obj}
            if resource.namespaced:
                kwargs["namespace"] = obj.get("metadata", {}).get("namespace")
            return self._call(resource.create, **kwargs).to_dict()

        created: dict[str, Any] = await self._run(_create)
        return created

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        def _replace() -> dict[str, Any]:
            resource = self._resource(obj["apiVersion"], obj["kind"])
            metadata = obj.get("metadata", {})
            kwargs: dict[str, Any] = {"body": obj, "name": metadata.get("name")}
            if resource.namespaced:
                kwargs["namespace"] = metadata.get("namespace")
            return self._call(resource.replace, **kwargs).to_dict()

        updated: dict[str, Any] = await self._run(_replace)
        return updated

    async def delete(self, api_version: str, kind: str, name: str, namespace: str | None) -> None:
        """Delete one object. A missing object is not an error."""

        def _delete() -> None:
            resource = self._resource(api_version, kind)
            kwargs = {"name": name}
            if resource.namespaced:
                kwargs["namespace"] = namespace
            self._call(resource.delete, **kwargs)

        try:
            await self._run(_delete)
        except ClusterError as e:
            if not e.is_not_found:
                raise
            logger.debug("Object already absent", kind=kind, name=name, namespace=namespace)

    # =========================================================================
    # APPLY
    # =========================================================================

    async def apply(
        self,
        obj: dict[str, Any],
        mode: ApplyMode = ApplyMode.CREATE_OR_UPDATE,
    ) -> dict[str, Any]:
        """
        Upsert ``obj`` keyed by its namespace and name.

        Args:
            obj: Complete manifest (apiVersion, kind, metadata.name required)
            mode: CREATE_OR_UPDATE replaces a live object with ``obj``;
                  GET_OR_CREATE leaves a live object untouched.

        Returns:
            The object as stored by the API server.
        """
        metadata = obj.setdefault("metadata", {})
        log = logger.bind(kind=obj.get("kind"), ref=object_ref(obj), mode=mode.value)
        try:
            live = await self.get(obj["apiVersion"], obj["kind"], metadata["name"], metadata.get("namespace"))
        except ClusterError as e:
            if not e.is_not_found:
                raise
            log.debug("Creating object")
            return await self.create(obj)

        if mode is ApplyMode.GET_OR_CREATE:
            return live

        # Replace requires the live resourceVersion for optimistic concurrency
        live_version = (live.get("metadata") or {}).get("resourceVersion")
        if live_version:
            metadata["resourceVersion"] = live_version
        log.debug("Updating object")
        return await self.update(obj)

    # =========================================================================
    # WORKLOAD LISTING
    # =========================================================================

    async def list_pods(self, namespace: str) -> list[dict[str, Any]]:
        return await self.list(*POD, namespace)

    async def list_deployments(self, namespace: str) -> list[dict[str, Any]]:
        return await self.list(*DEPLOYMENT, namespace)

    async def list_statefulsets(self, namespace: str) -> list[dict[str, Any]]:
        return await self.list(*STATEFULSET, namespace)
