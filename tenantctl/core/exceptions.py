"""tenantctl exceptions."""


class TenantCtlError(Exception):
    """Base exception for all tenantctl errors."""


class ConfigurationError(TenantCtlError):
    """Invalid or unreadable controller configuration."""


class TenantValidationError(TenantCtlError):
    """Tenant spec failed local validation.

    Never retried: only a corrected spec (a new generation) re-triggers
    reconciliation.
    """

    def __init__(
        self,
        message: str,
        tenant: str | None = None,
        field: str | None = None,
    ):
        self.message = message
        self.tenant = tenant
        self.field = field

        location_parts = []
        if tenant:
            location_parts.append(f"Tenant: {tenant}")
        if field:
            location_parts.append(f"Field: {field}")

        if location_parts:
            full_message = f"{', '.join(location_parts)}: {message}"
        else:
            full_message = message

        super().__init__(full_message)


class ManifestError(TenantCtlError):
    """Tenant manifest file could not be read or parsed."""


class StoreError(TenantCtlError):
    """Error talking to the desired-state store."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class ControllerError(TenantCtlError):
    """Controller lifecycle error (start/stop misuse)."""
