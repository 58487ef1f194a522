"""Desired-state store interface.

The store is the controller's only window onto the cluster: it lists and
watches Tenant objects, creates child resources and persists status. Stores
are injected into the controller and synchronizer; nothing in tenantctl
holds a process-wide client.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tenantctl.api.tenant import ResourceKind, TenantRecord


class ResourceManifest(BaseModel):
    """A child resource to create, with its full object body."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: ResourceKind
    name: str
    namespace: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def namespaced(self) -> bool:
        return self.namespace is not None

    @property
    def key(self) -> tuple[str, str | None, str]:
        return (self.kind.value, self.namespace, self.name)

    def describe(self) -> str:
        if self.namespace:
            return f"{self.kind.value} {self.namespace}/{self.name}"
        return f"{self.kind.value} {self.name}"


class CreateOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"


class CreateResult(BaseModel):
    """Result of a single create call."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    outcome: CreateOutcome
    cause: str | None = None
    retryable: bool = True

    @classmethod
    def created(cls) -> "CreateResult":
        return cls(outcome=CreateOutcome.CREATED)

    @classmethod
    def already_exists(cls) -> "CreateResult":
        return cls(outcome=CreateOutcome.ALREADY_EXISTS)

    @classmethod
    def error(cls, cause: str, retryable: bool = True) -> "CreateResult":
        return cls(outcome=CreateOutcome.ERROR, cause=cause, retryable=retryable)


class WriteOutcome(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    ERROR = "error"


class WriteResult(BaseModel):
    """Result of a status write."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    outcome: WriteOutcome
    cause: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == WriteOutcome.OK


class WatchEventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class WatchEvent(BaseModel):
    """A change notification for one Tenant."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: WatchEventType
    record: TenantRecord


class ClusterStore(ABC):
    """
    Base class for desired-state stores.

    Implementations translate the controller's four operations (list/watch
    tenants, create child, write status) into calls against a concrete
    backend. Create and write failures are reported through result objects;
    ``StoreError`` is reserved for list/get/watch failures.
    """

    @property
    @abstractmethod
    def store_type(self) -> str:
        """Return the store type identifier."""

    @abstractmethod
    async def list_tenants(self) -> list[TenantRecord]:
        """
        List every Tenant currently known to the store.

        Raises:
            StoreError: If the store cannot be reached.
        """

    @abstractmethod
    async def get_tenant(self, name: str) -> TenantRecord | None:
        """
        Read one Tenant fresh from the store.

        Returns:
            The record, or None if the Tenant no longer exists.

        Raises:
            StoreError: If the store cannot be reached.
        """

    @abstractmethod
    def watch(self) -> AsyncIterator[WatchEvent]:
        """
        Stream Tenant change notifications.

        The iterator ends when the store is closed or the server ends the
        watch; callers re-list and re-watch in that case.

        Raises:
            StoreError: If the watch cannot be established.
        """
        ...

    @abstractmethod
    async def create(self, manifest: ResourceManifest) -> CreateResult:
        """Create a child resource if it does not exist yet."""

    @abstractmethod
    async def write_status(
        self, name: str, status: dict[str, Any], generation: int
    ) -> WriteResult:
        """
        Persist a Tenant's status block.

        Returns CONFLICT when the Tenant's spec moved past ``generation``
        or a concurrent writer won.
        """

    async def close(self) -> None:
        """Release any resources held by the store."""

    async def __aenter__(self) -> "ClusterStore":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
