"""Conflict safe partial updates of a HelmRelease status.

A reconciliation starts from a snapshot of the status and proposes a new
status. Only the fields that differ between the two are written, on top of
whatever the latest stored status is, so concurrent writers of other fields
are not overwritten. A write based on a stale resource version is retried
with a fresh read.
"""

import logging
from typing import Any

from flux_release.exceptions import ConflictError, ObjectNotFoundError
from flux_release.manifest import HelmRelease, NamedResource, ReleaseStatus

from .store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "StatusPatcher",
    "status_delta",
    "apply_delta",
]


def status_delta(base: ReleaseStatus, target: ReleaseStatus) -> dict[str, Any]:
    """Return the top level status fields changed from base to target.

    Fields removed in the target are reported with a None value.
    """
    base_dict = base.to_dict()
    target_dict = target.to_dict()
    delta: dict[str, Any] = {
        key: value for key, value in target_dict.items() if base_dict.get(key) != value
    }
    for key in base_dict:
        if key not in target_dict:
            delta[key] = None
    return delta


def apply_delta(status: ReleaseStatus, delta: dict[str, Any]) -> ReleaseStatus:
    """Return a new status with the delta applied."""
    merged = status.to_dict()
    for key, value in delta.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return ReleaseStatus.from_dict(merged)


class StatusPatcher:
    """Writes status changes with optimistic concurrency."""

    def __init__(self, store: Store, retries: int = 5) -> None:
        """Initialize StatusPatcher."""
        self._store = store
        self._retries = max(retries, 1)

    async def patch(
        self,
        resource_id: NamedResource,
        base: ReleaseStatus,
        target: ReleaseStatus,
    ) -> ReleaseStatus | None:
        """Write the changes between base and target to the stored status.

        Returns the status as written, or None when there was nothing to write.
        """
        if not (delta := status_delta(base, target)):
            _LOGGER.debug("No status changes for %s", resource_id)
            return None
        for attempt in range(1, self._retries + 1):
            if (release := self._store.get_object(resource_id, HelmRelease)) is None:
                raise ObjectNotFoundError(f"Object {resource_id} not found")
            version = self._store.get_resource_version(resource_id)
            merged = apply_delta(release.status, delta)
            try:
                self._store.update_status(resource_id, merged, version)
            except ConflictError as err:
                _LOGGER.info(
                    "Conflict writing status of %s (attempt %d/%d): %s",
                    resource_id,
                    attempt,
                    self._retries,
                    err,
                )
                continue
            _LOGGER.debug("Patched status of %s: %s", resource_id, sorted(delta))
            return merged
        raise ConflictError(
            f"Unable to write status of {resource_id} after {self._retries} attempts"
        )
