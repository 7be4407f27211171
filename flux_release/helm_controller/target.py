"""Detection of a change of the deployment target of a release.

The target is what identifies the deployment in the backend: the namespace it
deploys to, the release name, the chart name and the namespace the backend
keeps its records in. A deployment made for a different target has to be
removed before the new target is installed.
"""

from dataclasses import dataclass

from flux_release.manifest import ReleaseStatus

__all__ = [
    "ReleaseTarget",
    "current_target",
    "release_target_changed",
]


@dataclass(frozen=True)
class ReleaseTarget:
    """Identity of a deployment in the backend."""

    namespace: str
    name: str
    chart_name: str
    storage_namespace: str


def current_target(status: ReleaseStatus) -> ReleaseTarget | None:
    """Return the target of the current deployment, if any."""
    if (current := status.current_deployment) is None:
        return None
    return ReleaseTarget(
        namespace=current.namespace,
        name=current.name,
        chart_name=current.chart_name,
        storage_namespace=status.storage_namespace or current.namespace,
    )


def release_target_changed(status: ReleaseStatus, desired: ReleaseTarget) -> bool:
    """Return True when the recorded deployment belongs to another target."""
    if (
        status.storage_namespace
        and status.storage_namespace != desired.storage_namespace
    ):
        return True
    if (previous := current_target(status)) is None:
        return False
    return (
        previous.namespace != desired.namespace
        or previous.name != desired.name
        or previous.chart_name != desired.chart_name
    )
