"""Typed desired-state schema for Tenant resources."""

from tenantctl.api.quantity import (
    QuantityError,
    compare_quantities,
    normalize_quantity,
    parse_quantity,
)
from tenantctl.api.tenant import (
    LEDGER_FIELDS,
    Phase,
    ResourceKind,
    Tenant,
    TenantQuota,
    TenantRecord,
    TenantSpec,
    TenantStatus,
    format_validation_errors,
    validate_dns_label,
)

__all__ = [
    "compare_quantities",
    "format_validation_errors",
    "LEDGER_FIELDS",
    "normalize_quantity",
    "parse_quantity",
    "Phase",
    "QuantityError",
    "ResourceKind",
    "Tenant",
    "TenantQuota",
    "TenantRecord",
    "TenantSpec",
    "TenantStatus",
    "validate_dns_label",
]
