"""Tenant desired-state schema and status block.

The store hands the controller an untyped :class:`TenantRecord`. Each pass
validates it into a :class:`Tenant` before any external call is made, so a
malformed spec never reaches the cluster.
"""

import re
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from tenantctl.api.quantity import QuantityError, compare_quantities, normalize_quantity
from tenantctl.core.exceptions import TenantValidationError

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_LABEL_MAX = 63


class Phase(str, Enum):
    """Lifecycle phase reported on the Tenant status block."""

    PENDING = "Pending"
    RECONCILING = "Reconciling"
    READY = "Ready"
    FAILED = "Failed"


class ResourceKind(str, Enum):
    """Child resource kinds owned by a Tenant, in creation order."""

    NAMESPACE = "Namespace"
    RESOURCE_QUOTA = "ResourceQuota"
    NETWORK_POLICY = "NetworkPolicy"
    ROLE_BINDING = "RoleBinding"


# Status ledger attribute for each child kind
LEDGER_FIELDS: dict[ResourceKind, str] = {
    ResourceKind.NAMESPACE: "namespace_created",
    ResourceKind.RESOURCE_QUOTA: "quota_applied",
    ResourceKind.NETWORK_POLICY: "network_policy_applied",
    ResourceKind.ROLE_BINDING: "rbac_applied",
}


def validate_dns_label(value: str) -> str:
    """Validate an RFC 1123 label (the namespace naming rule)."""
    if not value:
        raise ValueError("name must not be empty")
    if len(value) > _DNS_LABEL_MAX:
        raise ValueError(f"name must be at most {_DNS_LABEL_MAX} characters")
    if not _DNS_LABEL_RE.match(value):
        raise ValueError(
            f"name {value!r} must consist of lowercase alphanumerics or '-', "
            "and start and end with an alphanumeric"
        )
    return value


class TenantQuota(BaseModel):
    """Quota overrides. Absent fields fall back to platform defaults."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    cpu: str | None = Field(default=None, description="requests.cpu")
    memory: str | None = Field(default=None, description="requests.memory")
    cpu_limit: str | None = Field(
        default=None, alias="cpuLimit", description="limits.cpu"
    )
    memory_limit: str | None = Field(
        default=None, alias="memoryLimit", description="limits.memory"
    )
    pods: int | None = Field(default=None, ge=0, description="Maximum pods")
    pvcs: int | None = Field(
        default=None, ge=0, description="Maximum persistent volume claims"
    )
    services: int | None = Field(default=None, ge=0, description="Maximum services")

    @field_validator("cpu", "memory", "cpu_limit", "memory_limit", mode="before")
    @classmethod
    def validate_quantity(cls, v: Any) -> str | None:
        """Accept quantity strings and bare numbers."""
        if v is None:
            return None
        try:
            return normalize_quantity(v)
        except QuantityError as e:
            raise ValueError(str(e)) from e

    @model_validator(mode="after")
    def validate_limits_cover_requests(self) -> "TenantQuota":
        """A limit ceiling below its request ceiling can never be satisfied."""
        pairs = (("cpu", "cpu_limit"), ("memory", "memory_limit"))
        for request_field, limit_field in pairs:
            request = getattr(self, request_field)
            limit = getattr(self, limit_field)
            if request is not None and limit is not None:
                if compare_quantities(limit, request) < 0:
                    raise ValueError(
                        f"{limit_field} ({limit}) must be >= "
                        f"{request_field} ({request})"
                    )
        return self


class TenantSpec(BaseModel):
    """Desired state of a Tenant."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    owner: str = Field(..., min_length=1, description="Accountable team")
    cost_center: str | None = Field(
        default=None, alias="costCenter", description="Billing label"
    )
    quota: TenantQuota = Field(default_factory=TenantQuota)
    allowed_integrations: list[str] = Field(
        default_factory=list,
        alias="allowedIntegrations",
        description="Tenants this tenant may call cross-domain",
    )
    contacts: dict[str, str] = Field(
        default_factory=dict, description="Role to contact identifier"
    )

    @field_validator("owner")
    @classmethod
    def validate_owner(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("owner must not be blank")
        return v.strip()

    @field_validator("allowed_integrations")
    @classmethod
    def dedupe_integrations(cls, v: list[str]) -> list[str]:
        """Treat the list as a set while keeping first-seen order."""
        return list(dict.fromkeys(v))


class TenantRecord(BaseModel):
    """A Tenant object as delivered by the desired-state store.

    ``spec`` stays a raw mapping until :meth:`Tenant.from_record` validates it.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    generation: int = Field(default=1, ge=0)
    uid: str | None = None
    resource_version: str | None = None
    spec: dict[str, Any] = Field(default_factory=dict)
    status: dict[str, Any] | None = None


class Tenant(BaseModel):
    """A validated Tenant at a specific generation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    generation: int = Field(ge=0)
    uid: str | None = None
    spec: TenantSpec

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_dns_label(v)

    @classmethod
    def from_record(cls, record: TenantRecord) -> "Tenant":
        """Validate a store record.

        Raises:
            TenantValidationError: If the name or spec is malformed.
        """
        try:
            return cls.model_validate(
                {
                    "name": record.name,
                    "generation": record.generation,
                    "uid": record.uid,
                    "spec": record.spec,
                }
            )
        except ValidationError as e:
            raise TenantValidationError(
                format_validation_errors(e), tenant=record.name or None
            ) from e


def format_validation_errors(error: ValidationError) -> str:
    """Render pydantic errors as ``path: message`` pairs, one per error."""
    parts = []
    for err in error.errors():
        loc = [str(p) for p in err["loc"]]
        if loc and loc[0] == "spec":
            loc = loc[1:]
        path = ".".join(loc) or "spec"
        message = err["msg"].removeprefix("Value error, ")
        parts.append(f"{path}: {message}")
    return "; ".join(parts)


class TenantStatus(BaseModel):
    """Observed state written back onto the Tenant object."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    phase: Phase = Phase.PENDING
    namespace_created: bool = Field(default=False, alias="namespaceCreated")
    quota_applied: bool = Field(default=False, alias="quotaApplied")
    network_policy_applied: bool = Field(default=False, alias="networkPolicyApplied")
    rbac_applied: bool = Field(default=False, alias="rbacApplied")
    last_error: str | None = Field(default=None, alias="lastError")
    observed_generation: int = Field(default=0, ge=0, alias="observedGeneration")
    last_reconcile_time: str | None = Field(default=None, alias="lastReconcileTime")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TenantStatus":
        """Read a stored status block, tolerating missing or garbled data."""
        if not data:
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError:
            return cls()

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the camelCase field names used on the object."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def applied(self, kind: ResourceKind) -> bool:
        return getattr(self, LEDGER_FIELDS[kind])

    @property
    def all_applied(self) -> bool:
        return all(self.applied(kind) for kind in ResourceKind)

    def ledger(self) -> dict[str, bool]:
        """The per-resource applied flags keyed by status field name."""
        return {
            alias: value
            for alias, value in self.to_dict().items()
            if isinstance(value, bool)
        }
