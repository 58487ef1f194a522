"""Data models for store fault injection."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class FaultType(str, Enum):
    """Failures a store call can be made to return."""

    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    SERVER_ERROR = "server_error"
    RATE_LIMIT = "rate_limit"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    INVALID = "invalid"


class Operation(str, Enum):
    """Store operations faults can target."""

    CREATE = "create"
    WRITE_STATUS = "write_status"
    GET = "get"
    LIST = "list"


# Faults the controller should give up on instead of retrying
NON_RETRYABLE_FAULTS = frozenset({FaultType.FORBIDDEN, FaultType.INVALID})

DEFAULT_FAULT_MESSAGES: dict[FaultType, str] = {
    FaultType.TIMEOUT: "request timed out",
    FaultType.CONNECTION_ERROR: "connection refused",
    FaultType.SERVER_ERROR: "500 Internal Server Error",
    FaultType.RATE_LIMIT: "429 Too Many Requests",
    FaultType.CONFLICT: "409 Conflict: the object has been modified",
    FaultType.FORBIDDEN: "403 Forbidden",
    FaultType.INVALID: "422 Unprocessable Entity",
}


class FaultRule(BaseModel):
    """One fault injection rule.

    ``target`` is an fnmatch pattern. Create calls are matched as
    ``<Kind>/<tenant>`` (for example ``ResourceQuota/candidate``); every
    other operation is matched on the tenant name.
    """

    operation: Operation = Field(..., description="Store operation to affect")
    target: str = Field("*", description="Pattern of calls to affect")
    fault: FaultType = Field(
        default=FaultType.SERVER_ERROR, description="Failure to return"
    )
    probability: float = Field(
        1.0, description="Probability of failure (0.0 to 1.0)", ge=0.0, le=1.0
    )
    times: int | None = Field(
        None, description="Stop after this many injections (None for unlimited)", ge=1
    )
    after_call: bool = Field(
        False,
        description="Let the call reach the store, then report the failure",
    )
    message: str | None = Field(
        None, description="Custom error message (uses default if not specified)"
    )

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Target pattern cannot be empty")
        return v.strip()

    @property
    def retryable(self) -> bool:
        return self.fault not in NON_RETRYABLE_FAULTS

    def error_message(self) -> str:
        return self.message or DEFAULT_FAULT_MESSAGES[self.fault]


class LatencyConfig(BaseModel):
    """Configuration for latency injection."""

    min_ms: int = Field(0, description="Minimum latency in milliseconds", ge=0)
    max_ms: int = Field(0, description="Maximum latency in milliseconds", ge=0)
    operations: list[Operation] = Field(
        default_factory=lambda: list(Operation),
        description="Operations to slow down",
    )

    @field_validator("max_ms")
    @classmethod
    def validate_max_ms(cls, v: int, info: Any) -> int:
        """Ensure max_ms >= min_ms."""
        min_ms = info.data.get("min_ms", 0)
        if v < min_ms:
            raise ValueError(f"max_ms ({v}) must be >= min_ms ({min_ms})")
        return v


class FaultConfig(BaseModel):
    """Complete fault injection configuration."""

    enabled: bool = Field(True, description="Enable fault injection")
    rules: list[FaultRule] = Field(
        default_factory=list, description="Fault injection rules"
    )
    latency: LatencyConfig | None = Field(None, description="Latency injection config")
    seed: int | None = Field(
        None, description="Random seed for reproducible faults (None for random)"
    )

    def is_empty(self) -> bool:
        """Check if the config has no active injections."""
        if not self.enabled:
            return True
        has_latency = self.latency is not None and self.latency.max_ms > 0
        return not self.rules and not has_latency


class FaultProfile(str, Enum):
    """Predefined fault profiles for demos and soak runs."""

    NONE = "none"
    FLAKY = "flaky"
    SLOW = "slow"
    HOSTILE = "hostile"


_PROFILES: dict[FaultProfile, FaultConfig] = {
    FaultProfile.NONE: FaultConfig(enabled=False),
    FaultProfile.FLAKY: FaultConfig(
        rules=[
            FaultRule(operation=Operation.CREATE, probability=0.2),
            FaultRule(
                operation=Operation.WRITE_STATUS,
                fault=FaultType.CONFLICT,
                probability=0.1,
            ),
        ],
    ),
    FaultProfile.SLOW: FaultConfig(latency=LatencyConfig(min_ms=50, max_ms=500)),
    FaultProfile.HOSTILE: FaultConfig(
        rules=[
            FaultRule(operation=Operation.CREATE, probability=0.3),
            FaultRule(
                operation=Operation.CREATE,
                fault=FaultType.TIMEOUT,
                probability=0.1,
                after_call=True,
            ),
            FaultRule(
                operation=Operation.WRITE_STATUS,
                fault=FaultType.CONFLICT,
                probability=0.2,
            ),
            FaultRule(
                operation=Operation.GET,
                fault=FaultType.CONNECTION_ERROR,
                probability=0.05,
            ),
        ],
        latency=LatencyConfig(min_ms=10, max_ms=200),
    ),
}


def get_profile(profile: FaultProfile | str) -> FaultConfig:
    """Get a predefined fault configuration by profile name.

    Raises:
        ValueError: If the profile name is unknown.
    """
    if isinstance(profile, str):
        try:
            profile = FaultProfile(profile)
        except ValueError as e:
            valid = [p.value for p in FaultProfile]
            raise ValueError(
                f"Unknown fault profile: '{profile}'. Valid profiles: {valid}"
            ) from e
    return _PROFILES[profile].model_copy(deep=True)


def list_profiles() -> list[str]:
    return [p.value for p in FaultProfile]
