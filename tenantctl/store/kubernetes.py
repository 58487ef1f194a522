"""Kubernetes-backed desired-state store.

Tenants are cluster-scoped custom objects; child resources go through the
typed core, networking and RBAC APIs. The official client is synchronous,
so every call runs in a worker thread.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from tenantctl.api.tenant import ResourceKind, TenantRecord
from tenantctl.core.exceptions import ConfigurationError, StoreError
from tenantctl.core.settings import KubernetesSettings
from tenantctl.store.base import (
    ClusterStore,
    CreateResult,
    ResourceManifest,
    WatchEvent,
    WatchEventType,
    WriteOutcome,
    WriteResult,
)

logger = logging.getLogger(__name__)

# Raised by the client for refused connections, DNS failures and timeouts
CONNECTION_ERRORS: tuple[type[Exception], ...] = (urllib3.exceptions.HTTPError, OSError)

_END = object()


def is_retryable_status(status: int | None) -> bool:
    """429, 5xx and status-less (transport) failures are worth retrying."""
    if not status:
        return True
    return status == 429 or status >= 500


def build_api_client(settings: KubernetesSettings) -> client.ApiClient:
    """Build an API client from in-cluster config or a kubeconfig file.

    In-cluster config wins unless a kubeconfig path or context is set.

    Raises:
        ConfigurationError: If no usable configuration is found.
    """
    if settings.kubeconfig is None and settings.context is None:
        configuration = client.Configuration()
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Using in-cluster Kubernetes configuration")
            return client.ApiClient(configuration)
        except ConfigException:
            logger.debug("Not running in a cluster, falling back to kubeconfig")

    try:
        return config.new_client_from_config(
            config_file=settings.kubeconfig, context=settings.context
        )
    except (ConfigException, OSError) as e:
        raise ConfigurationError(f"Cannot load Kubernetes configuration: {e}") from e


def record_from_object(obj: dict[str, Any]) -> TenantRecord:
    """Convert a Tenant custom object into a store record."""
    metadata = obj.get("metadata") or {}
    return TenantRecord(
        name=metadata.get("name", ""),
        generation=int(metadata.get("generation") or 1),
        uid=metadata.get("uid"),
        resource_version=metadata.get("resourceVersion"),
        spec=obj.get("spec") or {},
        status=obj.get("status"),
    )


class KubernetesClusterStore(ClusterStore):
    """ClusterStore over the official Kubernetes Python client."""

    def __init__(
        self,
        settings: KubernetesSettings | None = None,
        api_client: client.ApiClient | None = None,
        request_timeout: float | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            settings: CRD coordinates and kubeconfig selection.
            api_client: Pre-built client; built from ``settings`` if omitted.
            request_timeout: Per-request timeout handed to the client.
        """
        self.settings = settings or KubernetesSettings()
        self._api_client = api_client or build_api_client(self.settings)
        self._request_timeout = request_timeout
        self._core = client.CoreV1Api(self._api_client)
        self._networking = client.NetworkingV1Api(self._api_client)
        self._rbac = client.RbacAuthorizationV1Api(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)
        self._watches: set[watch.Watch] = set()
        self._closed = False

    @property
    def store_type(self) -> str:
        return "kubernetes"

    @property
    def _crd(self) -> tuple[str, str, str]:
        return (self.settings.group, self.settings.version, self.settings.plural)

    def _call_kwargs(self) -> dict[str, Any]:
        if self._request_timeout is None:
            return {}
        return {"_request_timeout": self._request_timeout}

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs, **self._call_kwargs())

    # ----- Tenants -----

    async def list_tenants(self) -> list[TenantRecord]:
        try:
            result = await self._call(
                self._custom.list_cluster_custom_object, *self._crd
            )
        except ApiException as e:
            raise StoreError(
                f"Listing tenants failed: {e.status} {e.reason}",
                retryable=is_retryable_status(e.status),
            ) from e
        except CONNECTION_ERRORS as e:
            raise StoreError(f"Listing tenants failed: {e}") from e
        return [record_from_object(item) for item in result.get("items", [])]

    async def get_tenant(self, name: str) -> TenantRecord | None:
        try:
            obj = await self._call(
                self._custom.get_cluster_custom_object, *self._crd, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(
                f"Reading tenant {name} failed: {e.status} {e.reason}",
                retryable=is_retryable_status(e.status),
            ) from e
        except CONNECTION_ERRORS as e:
            raise StoreError(f"Reading tenant {name} failed: {e}") from e
        return record_from_object(obj)

    async def watch(self) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        watcher = watch.Watch()
        self._watches.add(watcher)

        def pump() -> None:
            try:
                for event in watcher.stream(
                    self._custom.list_cluster_custom_object,
                    *self._crd,
                    timeout_seconds=self.settings.watch_timeout_seconds,
                ):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as e:
                # Handed to the consuming coroutine, which re-raises it
                loop.call_soon_threadsafe(queue.put_nowait, e)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _END)

        loop.run_in_executor(None, pump)
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, ApiException):
                    raise StoreError(
                        f"Tenant watch failed: {item.status} {item.reason}",
                        retryable=is_retryable_status(item.status),
                    ) from item
                if isinstance(item, Exception):
                    raise StoreError(f"Tenant watch failed: {item}") from item

                event_type = item.get("type")
                if event_type == "ERROR":
                    # Typically 410 Gone: the resource version expired
                    status = item.get("raw_object") or item.get("object") or {}
                    raise StoreError(
                        f"Tenant watch ended by server: {status.get('message', status)}"
                    )
                if event_type not in WatchEventType.__members__:
                    continue
                yield WatchEvent(
                    type=WatchEventType(event_type),
                    record=record_from_object(item["object"]),
                )
        finally:
            watcher.stop()
            self._watches.discard(watcher)

    # ----- Child resources -----

    def _create_fn(self, manifest: ResourceManifest) -> Callable[..., Any]:
        if manifest.kind == ResourceKind.NAMESPACE:
            return self._core.create_namespace
        if manifest.kind == ResourceKind.RESOURCE_QUOTA:
            return self._core.create_namespaced_resource_quota
        if manifest.kind == ResourceKind.NETWORK_POLICY:
            return self._networking.create_namespaced_network_policy
        if manifest.kind == ResourceKind.ROLE_BINDING:
            return self._rbac.create_namespaced_role_binding
        raise ValueError(f"Unsupported kind: {manifest.kind}")

    async def create(self, manifest: ResourceManifest) -> CreateResult:
        fn = self._create_fn(manifest)
        args: tuple[Any, ...] = (
            (manifest.namespace, manifest.body)
            if manifest.namespaced
            else (manifest.body,)
        )
        try:
            await self._call(fn, *args)
        except ApiException as e:
            if e.status == 409:
                return CreateResult.already_exists()
            return CreateResult.error(
                f"create {manifest.describe()}: {e.status} {e.reason}",
                retryable=is_retryable_status(e.status),
            )
        except CONNECTION_ERRORS as e:
            return CreateResult.error(f"create {manifest.describe()}: {e}")
        return CreateResult.created()

    # ----- Status -----

    async def write_status(
        self, name: str, status: dict[str, Any], generation: int
    ) -> WriteResult:
        try:
            current = await self._call(
                self._custom.get_cluster_custom_object, *self._crd, name
            )
        except ApiException as e:
            return WriteResult(
                outcome=WriteOutcome.ERROR,
                cause=f"read tenant {name}: {e.status} {e.reason}",
            )
        except CONNECTION_ERRORS as e:
            return WriteResult(outcome=WriteOutcome.ERROR, cause=str(e))

        metadata = current.get("metadata") or {}
        live_generation = int(metadata.get("generation") or 1)
        if live_generation != generation:
            return WriteResult(
                outcome=WriteOutcome.CONFLICT,
                cause=f"tenant {name} is at generation {live_generation}",
            )

        body = {
            "apiVersion": current.get("apiVersion"),
            "kind": current.get("kind"),
            "metadata": {
                "name": name,
                "resourceVersion": metadata.get("resourceVersion"),
            },
            "status": status,
        }
        try:
            await self._call(
                self._custom.replace_cluster_custom_object_status,
                *self._crd,
                name,
                body,
            )
        except ApiException as e:
            if e.status == 409:
                return WriteResult(
                    outcome=WriteOutcome.CONFLICT,
                    cause=f"tenant {name} was modified concurrently",
                )
            return WriteResult(
                outcome=WriteOutcome.ERROR,
                cause=f"write status {name}: {e.status} {e.reason}",
            )
        except CONNECTION_ERRORS as e:
            return WriteResult(outcome=WriteOutcome.ERROR, cause=str(e))
        return WriteResult(outcome=WriteOutcome.OK)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for watcher in list(self._watches):
            watcher.stop()
        await asyncio.to_thread(self._api_client.close)
