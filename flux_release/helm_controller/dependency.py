"""Readiness checks of the HelmReleases a release depends on."""

import logging

from flux_release.exceptions import DependencyNotReadyError
from flux_release.manifest import (
    HELM_RELEASE,
    DependencyReference,
    HelmRelease,
    NamedResource,
)
from flux_release.store import Store

__all__ = [
    "DependencyGate",
]

_LOGGER = logging.getLogger(__name__)


class DependencyGate:
    """Passes only when every dependency of a release is ready.

    A dependency is ready when its status was observed at its latest
    generation and its Ready condition is true.
    """

    def __init__(self, store: Store) -> None:
        """Initialize DependencyGate."""
        self._store = store

    def _resource_id(
        self, release: HelmRelease, ref: DependencyReference
    ) -> NamedResource:
        return NamedResource(
            kind=HELM_RELEASE,
            namespace=ref.namespace or release.namespace,
            name=ref.name,
        )

    async def check_dependency(
        self, release: HelmRelease, ref: DependencyReference
    ) -> None:
        """Raise DependencyNotReadyError unless the dependency is ready."""
        resource_id = self._resource_id(release, ref)
        dependency_id = resource_id.namespaced_name
        if (dependency := self._store.get_object(resource_id, HelmRelease)) is None:
            raise DependencyNotReadyError(
                release.namespaced_name, dependency_id, "does not exist"
            )
        status = dependency.status
        if status.observed_generation != dependency.generation:
            raise DependencyNotReadyError(
                release.namespaced_name,
                dependency_id,
                f"is not observed at generation {dependency.generation} "
                f"(observed {status.observed_generation})",
            )
        if not status.is_ready():
            raise DependencyNotReadyError(
                release.namespaced_name, dependency_id, "is not ready"
            )

    async def check(self, release: HelmRelease) -> None:
        """Raise DependencyNotReadyError for the first dependency not ready."""
        for ref in release.depends_on:
            await self.check_dependency(release, ref)
        if release.depends_on:
            _LOGGER.debug(
                "All %d dependencies of %s are ready",
                len(release.depends_on),
                release.namespaced_name,
            )
