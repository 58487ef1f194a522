"""Resource Synchronizer.

Turns a validated Tenant into its four child resources and makes each one
exist. Creation is create-if-absent: an object that already exists counts
as success and is never compared or overwritten.

Order is fixed. The Namespace goes first because the other three live in
it; after that ResourceQuota, NetworkPolicy and RoleBinding are created in
turn and the run stops at the first failure, so every kind after a failure
is reported as not attempted.
"""

import asyncio
import json
import logging
from typing import Any

from tenantctl.api.tenant import ResourceKind, Tenant
from tenantctl.controller.models import KindResult, SyncOutcome, SyncResult
from tenantctl.core.exceptions import StoreError
from tenantctl.core.metrics import record_child_create
from tenantctl.store.base import ClusterStore, CreateOutcome, ResourceManifest

logger = logging.getLogger(__name__)

TENANT_API_VERSION = "platform.xyz.com/v1alpha1"
TENANT_LABEL = "platform.xyz.com/tenant"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "tenant-operator"

QUOTA_NAME = "tenant-quota"
NETWORK_POLICY_NAME = "default-deny-ingress"
EDIT_CLUSTER_ROLE = "edit"

DEFAULT_REQUESTS_CPU = "10"
DEFAULT_REQUESTS_MEMORY = "20Gi"
DEFAULT_LIMITS_CPU = "20"
DEFAULT_LIMITS_MEMORY = "40Gi"
DEFAULT_PODS = 100


def quota_hard(tenant: Tenant) -> dict[str, str]:
    """Compute the ResourceQuota ``hard`` map for a tenant."""
    quota = tenant.spec.quota

    hard = {
        "requests.cpu": quota.cpu or DEFAULT_REQUESTS_CPU,
        "requests.memory": quota.memory or DEFAULT_REQUESTS_MEMORY,
        "limits.cpu": quota.cpu_limit or DEFAULT_LIMITS_CPU,
        "limits.memory": quota.memory_limit or DEFAULT_LIMITS_MEMORY,
        "pods": str(quota.pods if quota.pods is not None else DEFAULT_PODS),
    }
    if quota.pvcs is not None:
        hard["persistentvolumeclaims"] = str(quota.pvcs)
    if quota.services is not None:
        hard["services"] = str(quota.services)
    return hard


def _metadata(
    tenant: Tenant,
    name: str,
    namespace: str | None,
    api_version: str,
    extra_labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace is not None:
        metadata["namespace"] = namespace
    metadata["labels"] = {
        TENANT_LABEL: tenant.name,
        MANAGED_BY_LABEL: MANAGED_BY,
        **(extra_labels or {}),
    }
    if annotations:
        metadata["annotations"] = annotations
    if tenant.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": api_version,
                "kind": "Tenant",
                "name": tenant.name,
                "uid": tenant.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
    return metadata


def _namespace_annotations(tenant: Tenant) -> dict[str, str]:
    spec = tenant.spec
    annotations = {"platform.xyz.com/owner": spec.owner}
    if spec.cost_center:
        annotations["platform.xyz.com/cost-center"] = spec.cost_center
    if spec.contacts:
        annotations["platform.xyz.com/contacts"] = json.dumps(
            spec.contacts, sort_keys=True
        )
    if spec.allowed_integrations:
        annotations["platform.xyz.com/allowed-integrations"] = ",".join(
            spec.allowed_integrations
        )
    return annotations


def build_children(
    tenant: Tenant, api_version: str = TENANT_API_VERSION
) -> list[ResourceManifest]:
    """Compute the child resources of a tenant, in creation order.

    Pure function of the tenant: no store access.
    """
    ns = tenant.name

    namespace = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": _metadata(
            tenant,
            ns,
            None,
            api_version,
            extra_labels={
                "istio-injection": "enabled",
                "pod-security.kubernetes.io/enforce": "restricted",
            },
            annotations=_namespace_annotations(tenant),
        ),
    }

    resource_quota = {
        "apiVersion": "v1",
        "kind": "ResourceQuota",
        "metadata": _metadata(tenant, QUOTA_NAME, ns, api_version),
        "spec": {"hard": quota_hard(tenant)},
    }

    network_policy = {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": _metadata(tenant, NETWORK_POLICY_NAME, ns, api_version),
        "spec": {"podSelector": {}, "policyTypes": ["Ingress"]},
    }

    role_binding_name = f"{tenant.name}-developers"
    role_binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": _metadata(tenant, role_binding_name, ns, api_version),
        "subjects": [
            {
                "kind": "Group",
                "name": f"{tenant.name}-team",
                "apiGroup": "rbac.authorization.k8s.io",
            }
        ],
        "roleRef": {
            "kind": "ClusterRole",
            "name": EDIT_CLUSTER_ROLE,
            "apiGroup": "rbac.authorization.k8s.io",
        },
    }

    return [
        ResourceManifest(kind=ResourceKind.NAMESPACE, name=ns, body=namespace),
        ResourceManifest(
            kind=ResourceKind.RESOURCE_QUOTA,
            name=QUOTA_NAME,
            namespace=ns,
            body=resource_quota,
        ),
        ResourceManifest(
            kind=ResourceKind.NETWORK_POLICY,
            name=NETWORK_POLICY_NAME,
            namespace=ns,
            body=network_policy,
        ),
        ResourceManifest(
            kind=ResourceKind.ROLE_BINDING,
            name=role_binding_name,
            namespace=ns,
            body=role_binding,
        ),
    ]


class ResourceSynchronizer:
    """Ensures a tenant's child resources exist."""

    def __init__(
        self,
        store: ClusterStore,
        call_timeout: float = 10.0,
        api_version: str = TENANT_API_VERSION,
    ) -> None:
        """
        Initialize the synchronizer.

        Args:
            store: Store that receives the create calls.
            call_timeout: Seconds allowed per create call.
            api_version: Tenant apiVersion used in owner references.
        """
        self.store = store
        self.call_timeout = call_timeout
        self.api_version = api_version

    def render(self, tenant: Tenant) -> list[dict[str, Any]]:
        """Return the child manifests without touching the store."""
        return [m.body for m in build_children(tenant, self.api_version)]

    async def sync(self, tenant: Tenant) -> SyncResult:
        """Create every missing child resource, stopping at the first failure."""
        results: list[KindResult] = []
        stopped = False

        for manifest in build_children(tenant, self.api_version):
            if stopped:
                results.append(
                    KindResult(kind=manifest.kind, outcome=SyncOutcome.NOT_ATTEMPTED)
                )
                continue

            result = await self._ensure(manifest)
            results.append(result)
            if result.outcome == SyncOutcome.FAILED:
                logger.warning(
                    "Creating %s failed (retryable=%s): %s",
                    manifest.describe(),
                    result.retryable,
                    result.cause,
                )
                stopped = True

        return SyncResult(results=results)

    async def _ensure(self, manifest: ResourceManifest) -> KindResult:
        try:
            created = await asyncio.wait_for(
                self.store.create(manifest), timeout=self.call_timeout
            )
        except TimeoutError:
            result = KindResult(
                kind=manifest.kind,
                outcome=SyncOutcome.FAILED,
                cause=f"create {manifest.describe()} timed out after "
                f"{self.call_timeout}s",
            )
        except StoreError as e:
            result = KindResult(
                kind=manifest.kind,
                outcome=SyncOutcome.FAILED,
                cause=str(e),
                retryable=e.retryable,
            )
        else:
            if created.outcome == CreateOutcome.CREATED:
                logger.info("Created %s", manifest.describe())
                result = KindResult(kind=manifest.kind, outcome=SyncOutcome.APPLIED)
            elif created.outcome == CreateOutcome.ALREADY_EXISTS:
                logger.debug("%s already exists", manifest.describe())
                result = KindResult(
                    kind=manifest.kind, outcome=SyncOutcome.ALREADY_PRESENT
                )
            else:
                result = KindResult(
                    kind=manifest.kind,
                    outcome=SyncOutcome.FAILED,
                    cause=created.cause or f"create {manifest.describe()} failed",
                    retryable=created.retryable,
                )

        record_child_create(manifest.kind.value, result.outcome.value)
        return result
