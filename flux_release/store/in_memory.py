"""Module for in memory object store."""

import dataclasses
from collections import defaultdict
from collections.abc import Callable
import logging
from typing import Any, DefaultDict, TypeVar

from flux_release.exceptions import ConflictError, ObjectNotFoundError
from flux_release.manifest import (
    BaseManifest,
    HelmRelease,
    NamedResource,
    ReleaseStatus,
)

from .store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseManifest)


def _resource_id(obj: BaseManifest) -> NamedResource:
    if not hasattr(obj, "kind") or not hasattr(obj, "name"):
        raise ValueError("Object must have kind, namespace, and name attributes")
    return NamedResource(obj.kind, getattr(obj, "namespace", None), obj.name)


def _spec_dict(release: HelmRelease) -> dict[str, Any]:
    """Return the parts of a HelmRelease that count towards its generation."""
    spec = release.to_dict()
    spec.pop("status", None)
    spec.pop("generation", None)
    return spec


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores manifest objects keyed by NamedResource along with a resource
    version per object. Supports event listeners for object and status changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, BaseManifest] = {}
        self._versions: dict[NamedResource, int] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_object(self, obj: BaseManifest) -> None:
        """Add or replace a manifest object in the store."""
        resource_id = _resource_id(obj)
        existing = self._objects.get(resource_id)
        if isinstance(existing, HelmRelease) and isinstance(obj, HelmRelease):
            generation = existing.generation
            if _spec_dict(existing) != _spec_dict(obj):
                generation += 1
            obj = dataclasses.replace(
                obj, generation=generation, status=existing.status
            )
            _LOGGER.debug(
                "Updating existing object %s in store (generation %d)",
                resource_id,
                generation,
            )
        else:
            _LOGGER.debug("Adding object %s to store", resource_id)
        self._objects[resource_id] = obj
        self._versions[resource_id] = self._versions.get(resource_id, 0) + 1
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)

    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a manifest object by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is not None:
            if isinstance(obj, cls):
                return obj
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return None

    def list_objects(self, kind: str | None = None) -> list[BaseManifest]:
        """List all manifest objects in the store, optionally filtered by kind."""
        if kind is None:
            return list(self._objects.values())
        return [
            obj for obj in self._objects.values() if getattr(obj, "kind", None) == kind
        ]

    def get_resource_version(self, resource_id: NamedResource) -> int:
        """Return the current resource version of an object."""
        if resource_id not in self._versions:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        return self._versions[resource_id]

    def get_status(self, resource_id: NamedResource) -> ReleaseStatus | None:
        """Retrieve the status of a HelmRelease."""
        if (release := self.get_object(resource_id, HelmRelease)) is None:
            return None
        return release.status

    def update_status(
        self, resource_id: NamedResource, status: ReleaseStatus, resource_version: int
    ) -> int:
        """Replace the status of a HelmRelease, returning the new resource version."""
        if (release := self.get_object(resource_id, HelmRelease)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        current_version = self._versions[resource_id]
        if current_version != resource_version:
            raise ConflictError(
                f"Object {resource_id} has been modified (resource version "
                f"{current_version}, expected {resource_version})"
            )
        _LOGGER.debug(
            "Updating status for resource %s (resource version %d)",
            resource_id.namespaced_name,
            current_version + 1,
        )
        self._objects[resource_id] = dataclasses.replace(release, status=status)
        self._versions[resource_id] = current_version + 1
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, status)
        return current_version + 1

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event (object added, status updated)."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
