"""tenantctl configuration management.

Configuration is loaded from multiple sources with the following priority
(highest to lowest):
1. CLI arguments (when applicable)
2. Environment variables (with TENANTCTL_ prefix)
3. Configuration files (tenantctl.config.yaml)
4. Default values

Example usage:
    from tenantctl.core.settings import get_settings

    settings = get_settings()
    print(settings.workers)

Environment variable support:
    TENANTCTL_WORKERS=8
    TENANTCTL_BACKOFF_MAX_SECONDS=120
    TENANTCTL_KUBERNETES__CONTEXT=staging
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = ["tenantctl.config.yaml", "tenantctl.config.yml"]

_NESTED_SECTIONS = ("kubernetes", "logging", "metrics")


def _find_config_file(start_dir: Path | None = None) -> Path | None:
    """Find a configuration file in the start directory or its parents.

    Args:
        start_dir: Directory to start search from.
            Defaults to current working directory.

    Returns:
        Path to config file if found, None otherwise.
    """
    search_dir = start_dir or Path.cwd()

    for _ in range(10):
        for filename in CONFIG_FILE_NAMES:
            config_path = search_dir / filename
            if config_path.exists():
                return config_path

        parent = search_dir.parent
        if parent == search_dir:
            break
        search_dir = parent

    return None


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Unreadable or malformed files are logged and treated as empty.
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
            return config if isinstance(config, dict) else {}
    except yaml.YAMLError as e:
        logger.warning("Failed to parse config file %s: %s", config_path, e)
        return {}
    except OSError as e:
        logger.warning("Failed to read config file %s: %s", config_path, e)
        return {}


class KubernetesSettings(BaseModel):
    """Kubernetes backend settings."""

    kubeconfig: str | None = Field(
        default=None,
        description="Path to kubeconfig. In-cluster config is tried first",
    )
    context: str | None = Field(
        default=None,
        description="kubeconfig context to use",
    )
    group: str = Field(
        default="platform.xyz.com",
        description="API group of the Tenant custom resource",
    )
    version: str = Field(
        default="v1alpha1",
        description="API version of the Tenant custom resource",
    )
    plural: str = Field(
        default="tenants",
        description="Plural resource name of the Tenant custom resource",
    )
    watch_timeout_seconds: int = Field(
        default=300,
        ge=10,
        le=3600,
        description="Server-side timeout of a single watch request",
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_output: bool | None = Field(
        default=None,
        description="Output logs in JSON format (auto-detect when unset)",
    )
    file: str | None = Field(
        default=None,
        description="Log file path (optional)",
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


class MetricsEndpointSettings(BaseModel):
    """Prometheus metrics collection and exposition settings."""

    enabled: bool = Field(
        default=True,
        description="Collect metrics and serve them over HTTP",
    )
    prefix: str = Field(
        default="tenantctl",
        description="Prefix for all metric names",
    )
    default_buckets: list[float] = Field(
        default=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        description="Histogram buckets for pass duration (seconds)",
    )
    bind_address: str = Field(
        default=":8080",
        description="Address the metrics endpoint binds to ([host]:port)",
    )

    @field_validator("bind_address")
    @classmethod
    def validate_bind_address(cls, v: str) -> str:
        """Require a [host]:port address with a valid port."""
        host, sep, port = v.rpartition(":")
        if not sep or not port.isdigit() or not 0 <= int(port) <= 65535:
            raise ValueError(f"Invalid bind address: {v!r}, expected [host]:port")
        return v

    @property
    def host(self) -> str:
        return self.bind_address.rpartition(":")[0] or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.bind_address.rpartition(":")[2])


class ControllerSettings(BaseSettings):
    """Main tenantctl configuration settings.

    Provides:
    - Environment variable support (TENANTCTL_ prefix, ``__`` for nesting)
    - .env file loading
    - YAML config file loading (tenantctl.config.yaml)
    - Type validation via Pydantic

    Example:
        settings = ControllerSettings(workers=8)
        print(settings.kubernetes.group)
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANTCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    backend: Literal["memory", "kubernetes"] = Field(
        default="memory",
        description="Desired-state store backend",
    )
    workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Number of parallel reconcile workers",
    )
    resync_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Interval of the periodic full resync",
    )
    backoff_initial_seconds: float = Field(
        default=1.0,
        gt=0,
        description="First retry delay after a transient failure",
    )
    backoff_max_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound of the retry delay",
    )
    call_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Timeout of a single create or status write call",
    )

    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsEndpointSettings = Field(default_factory=MetricsEndpointSettings)

    @model_validator(mode="before")
    @classmethod
    def load_from_config_file(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Merge values from tenantctl.config.yaml under explicit values."""
        if data.get("_skip_file_loading"):
            data.pop("_skip_file_loading", None)
            return data

        config_path = _find_config_file()
        if not config_path:
            return data

        file_config = _load_yaml_config(config_path)
        if not file_config:
            return data

        logger.debug("Loaded configuration from %s", config_path)
        merged = {**file_config, **data}
        for section in _NESTED_SECTIONS:
            if isinstance(file_config.get(section), dict):
                override = data.get(section)
                merged[section] = {
                    **file_config[section],
                    **(override if isinstance(override, dict) else {}),
                }
        return merged

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "ControllerSettings":
        """Ensure the backoff cap is not below the initial delay."""
        if self.backoff_max_seconds < self.backoff_initial_seconds:
            raise ValueError(
                f"backoff_max_seconds ({self.backoff_max_seconds}) must be >= "
                f"backoff_initial_seconds ({self.backoff_initial_seconds})"
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to a plain dictionary."""
        return self.model_dump(mode="json")


def get_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> ControllerSettings:
    """Get a settings instance.

    Sources in order of precedence: explicit overrides, environment
    variables, configuration file, defaults.

    Args:
        config_file: Optional explicit path to configuration file.
        **overrides: Explicit configuration overrides.
    """
    if config_file and config_file.exists():
        file_config = _load_yaml_config(config_file)
        merged = {**file_config, **overrides, "_skip_file_loading": True}
        return ControllerSettings(**merged)

    return ControllerSettings(**overrides)


@lru_cache
def get_cached_settings() -> ControllerSettings:
    """Get cached settings instance.

    The cache can be cleared with get_cached_settings.cache_clear().
    """
    return get_settings()


def generate_example_config(output_path: Path | None = None) -> str:
    """Generate a commented example configuration file.

    Args:
        output_path: Optional path to write example config file.

    Returns:
        Example configuration as YAML string.
    """
    example = """\
# tenantctl configuration
# Environment variables override these values with the TENANTCTL_ prefix
# Example: TENANTCTL_WORKERS=8, TENANTCTL_KUBERNETES__CONTEXT=staging

backend: memory                # memory | kubernetes
workers: 4                     # Parallel reconcile workers
resync_interval_seconds: 300   # Periodic full resync
backoff_initial_seconds: 1     # First retry delay
backoff_max_seconds: 300       # Retry delay cap
call_timeout_seconds: 10       # Timeout per create/status call

kubernetes:
  # kubeconfig: ~/.kube/config
  # context: staging
  group: platform.xyz.com
  version: v1alpha1
  plural: tenants
  watch_timeout_seconds: 300

logging:
  level: INFO
  # json_output: true
  # file: /var/log/tenantctl.log

metrics:
  enabled: true
  bind_address: ":8080"
"""

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(example)
        logger.info("Generated example config at %s", output_path)

    return example
