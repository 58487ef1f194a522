"""Shared pytest fixtures for tenantctl tests."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from tenantctl.api.tenant import Tenant, TenantRecord
from tenantctl.controller import TenantController
from tenantctl.store import ClusterStore, InMemoryClusterStore


@pytest.fixture
def anyio_backend() -> str:
    """Run anyio-marked tests on asyncio, which the controller is built on."""
    return "asyncio"


@pytest.fixture
def fixtures_dir() -> Path:
    """Return path to the fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def tenants_dir(fixtures_dir: Path) -> Path:
    """Return path to the tenant manifest fixtures."""
    return fixtures_dir / "tenants"


@pytest.fixture
def candidate_spec() -> dict[str, Any]:
    """Spec of the ``candidate`` tenant: only the pod count is overridden."""
    return {
        "owner": "team-candidate",
        "costCenter": "cc-1234",
        "quota": {"pods": 200},
        "allowedIntegrations": ["payments"],
        "contacts": {"oncall": "candidate-oncall@example.com"},
    }


@pytest.fixture
def minimal_spec() -> dict[str, Any]:
    return {"owner": "team-a"}


@pytest.fixture
def make_tenant() -> Callable[..., Tenant]:
    """Build a validated Tenant from a spec mapping."""

    def _make(
        name: str = "acme",
        spec: dict[str, Any] | None = None,
        generation: int = 1,
        uid: str | None = "uid-acme",
    ) -> Tenant:
        record = TenantRecord(
            name=name,
            generation=generation,
            uid=uid,
            spec=spec if spec is not None else {"owner": "team-a"},
        )
        return Tenant.from_record(record)

    return _make


@pytest.fixture
def memory_store() -> InMemoryClusterStore:
    """Return an empty in-memory store."""
    return InMemoryClusterStore()


@pytest.fixture
def make_controller() -> Callable[..., TenantController]:
    """Build a controller with short backoff suitable for tests."""

    def _make(store: ClusterStore, **overrides: Any) -> TenantController:
        options: dict[str, Any] = {
            "workers": 2,
            "resync_interval": 0,
            "backoff_initial": 0.01,
            "backoff_max": 0.05,
            "call_timeout": 1.0,
        }
        options.update(overrides)
        return TenantController(store, **options)

    return _make
