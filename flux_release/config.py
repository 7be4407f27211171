"""Configuration objects for flux-release."""

import datetime
from dataclasses import dataclass, field

from .manifest import RollbackTarget


@dataclass
class HelmControllerConfig:
    """Configuration for the HelmReleaseReconciler."""

    history_limit: int = 5
    """Number of attempts retained in the status history."""

    dependency_requeue_interval: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(seconds=30)
    )
    """Fixed interval used while waiting for dependencies to become ready."""

    backoff_base: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(seconds=5)
    )
    """First requeue delay after an error, doubled on each consecutive failure."""

    backoff_max: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(minutes=5)
    )
    """Upper bound of the error backoff."""

    patch_retries: int = 5
    """Attempts made to write the status when the resource keeps changing."""

    no_cross_namespace_refs: bool = False
    """Refuse chart sources outside of the HelmRelease namespace."""

    default_rollback_target: RollbackTarget = RollbackTarget.LAST_SUCCESSFUL
    """Rollback target used when a HelmRelease does not configure one."""

    def backoff(self, failures: int) -> datetime.timedelta:
        """Return the requeue delay after the given number of consecutive failures."""
        exponent = max(failures - 1, 0)
        delay = self.backoff_base * (2 ** min(exponent, 16))
        return min(delay, self.backoff_max)
