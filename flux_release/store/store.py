"""Store module for holding HelmRelease resources and their status."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from flux_release.manifest import BaseManifest, NamedResource, ReleaseStatus

T = TypeVar("T", bound=BaseManifest)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    STATUS_UPDATED = "status_updated"


class Store(ABC):
    """Abstract base class for the central object store with listener support.

    Every write bumps the resource version of the object. Status writes must
    name the resource version they were based on and are refused with a
    `ConflictError` when the object changed in the meantime.
    """

    @abstractmethod
    def add_object(self, obj: BaseManifest) -> None:
        """Add or replace a manifest object in the store.

        Replacing a HelmRelease keeps its status and increments its
        generation when the spec changed.
        """

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a manifest object by resource identity and type."""

    @abstractmethod
    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List all manifest objects in the store, optionally filtered by kind."""

    @abstractmethod
    def get_resource_version(self, resource_id: NamedResource) -> int:
        """Return the current resource version of an object."""

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> ReleaseStatus | None:
        """Retrieve the status of a HelmRelease."""

    @abstractmethod
    def update_status(
        self, resource_id: NamedResource, status: ReleaseStatus, resource_version: int
    ) -> int:
        """Replace the status of a HelmRelease, returning the new resource version."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """
