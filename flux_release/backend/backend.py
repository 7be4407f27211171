"""Interface to the system that actually deploys releases."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import datetime
from typing import Any

from flux_release.chart import Chart
from flux_release.manifest import ReleaseAction, Snapshot

__all__ = [
    "ReleaseIdentity",
    "DeployedRelease",
    "ActionRequest",
    "DeploymentBackend",
]


@dataclass(frozen=True, kw_only=True)
class ReleaseIdentity:
    """Identifies one release inside the deployment backend."""

    name: str
    """Release name in the backend."""

    namespace: str
    """Namespace the release deploys its workloads to."""

    storage_namespace: str
    """Namespace the backend keeps its release records in."""

    owner: str
    """Namespaced name of the owning HelmRelease, used in messages."""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, kw_only=True)
class DeployedRelease:
    """A release as listed by the deployment backend."""

    name: str
    namespace: str
    chart_name: str
    chart_version: str
    revision: int
    """Sequence number of the release in the backend."""

    status: str
    """Backend specific status, for example `deployed` or `failed`."""

    config_digest: str | None = None
    """Digest of the values, when the backend can report it."""

    updated: datetime.datetime | None = None


@dataclass(frozen=True, kw_only=True)
class ActionRequest:
    """One action to perform through the backend."""

    action: ReleaseAction
    identity: ReleaseIdentity
    chart: Chart | None = None
    """Chart to install or upgrade to."""

    values: dict[str, Any] = field(default_factory=dict)
    config_digest: str | None = None

    target: Snapshot | None = None
    """Deployment to return to, for a rollback."""

    timeout: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(minutes=5)
    )
    wait: bool = True
    create_namespace: bool = False
    keep_history: bool = False


class DeploymentBackend(ABC):
    """Performs release actions and lists what is deployed.

    Actions are not idempotent: installing a name that is in use raises
    `ReleaseExistsError`, acting on a release that does not exist raises
    `ReleaseNotFoundError`. Any other failure of the action itself raises
    `ActionFailedError`.
    """

    @abstractmethod
    async def get(self, identity: ReleaseIdentity) -> DeployedRelease | None:
        """Return the deployed release, or None when nothing is deployed."""

    @abstractmethod
    async def run(self, request: ActionRequest) -> DeployedRelease | None:
        """Perform the action, returning the release afterwards.

        Returns None after an uninstall.
        """
