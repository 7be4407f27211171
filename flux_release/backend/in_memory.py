"""Deployment backend that keeps releases in memory.

Useful for dry runs and as a stand-in for a cluster in tests. Failures of
individual actions can be scheduled with `fail`.
"""

from collections import defaultdict
from collections.abc import Callable
import dataclasses
import datetime
import logging
from typing import DefaultDict

from flux_release.exceptions import (
    ActionFailedError,
    ReleaseExistsError,
    ReleaseNotFoundError,
)
from flux_release.manifest import ReleaseAction

from .backend import ActionRequest, DeployedRelease, DeploymentBackend, ReleaseIdentity
from .log_buffer import LogBuffer

__all__ = [
    "InMemoryBackend",
]

_LOGGER = logging.getLogger(__name__)

STATUS_DEPLOYED = "deployed"
STATUS_SUPERSEDED = "superseded"
STATUS_UNINSTALLED = "uninstalled"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class InMemoryBackend(DeploymentBackend):
    """In-memory implementation of the DeploymentBackend interface."""

    def __init__(
        self, now: Callable[[], datetime.datetime] = _now, log_size: int = 10
    ) -> None:
        """Initialize InMemoryBackend."""
        self._now = now
        self._log_size = log_size
        self._releases: dict[tuple[str, str], list[DeployedRelease]] = {}
        self._failures: DefaultDict[ReleaseAction, list[str]] = defaultdict(list)
        self._always_fail: dict[ReleaseAction, str] = {}
        self.requests: list[ActionRequest] = []
        """Every action requested, in order."""

    def fail(
        self, action: ReleaseAction, message: str = "simulated failure", times: int = 1
    ) -> None:
        """Make the next `times` runs of an action fail, negative for always."""
        if times < 0:
            self._always_fail[action] = message
            return
        self._failures[action].extend([message] * times)

    def clear_failures(self) -> None:
        """Stop failing actions."""
        self._failures.clear()
        self._always_fail.clear()

    def seed(
        self,
        identity: ReleaseIdentity,
        chart_name: str,
        chart_version: str,
        config_digest: str | None = None,
    ) -> DeployedRelease:
        """Record a deployed release without going through an action."""
        return self._append(identity, chart_name, chart_version, config_digest)

    def actions(self) -> list[ReleaseAction]:
        """Return the actions requested so far."""
        return [request.action for request in self.requests]

    def revisions(self, identity: ReleaseIdentity) -> list[DeployedRelease]:
        """Return all recorded revisions of a release, oldest first."""
        return list(self._releases.get(self._key(identity), []))

    def _key(self, identity: ReleaseIdentity) -> tuple[str, str]:
        return (identity.storage_namespace, identity.name)

    def _append(
        self,
        identity: ReleaseIdentity,
        chart_name: str,
        chart_version: str,
        config_digest: str | None,
    ) -> DeployedRelease:
        revisions = self._releases.setdefault(self._key(identity), [])
        if revisions and revisions[-1].status == STATUS_DEPLOYED:
            revisions[-1] = dataclasses.replace(revisions[-1], status=STATUS_SUPERSEDED)
        release = DeployedRelease(
            name=identity.name,
            namespace=identity.namespace,
            chart_name=chart_name,
            chart_version=chart_version,
            revision=(revisions[-1].revision + 1) if revisions else 1,
            status=STATUS_DEPLOYED,
            config_digest=config_digest,
            updated=self._now(),
        )
        revisions.append(release)
        return release

    async def get(self, identity: ReleaseIdentity) -> DeployedRelease | None:
        """Return the deployed release, or None when nothing is deployed."""
        revisions = self._releases.get(self._key(identity))
        if not revisions or revisions[-1].status == STATUS_UNINSTALLED:
            return None
        return revisions[-1]

    def _scheduled_failure(self, action: ReleaseAction) -> str | None:
        if (message := self._always_fail.get(action)) is not None:
            return message
        if self._failures[action]:
            return self._failures[action].pop(0)
        return None

    async def run(self, request: ActionRequest) -> DeployedRelease | None:
        """Perform the action, returning the release afterwards."""
        self.requests.append(request)
        identity = request.identity
        buffer = LogBuffer(_LOGGER.debug, self._log_size)
        buffer.log("running %s for release %s", request.action, identity)

        current = await self.get(identity)
        if request.action == ReleaseAction.INSTALL:
            if current is not None:
                raise ReleaseExistsError(
                    f"cannot install {identity}: a release with this name is still in use"
                )
        elif current is None:
            raise ReleaseNotFoundError(
                f"cannot {request.action} {identity}: release not found"
            )

        if (message := self._scheduled_failure(request.action)) is not None:
            buffer.log("%s", message)
            raise ActionFailedError(
                identity.owner, str(request.action), message, str(buffer)
            )

        if request.action in (ReleaseAction.INSTALL, ReleaseAction.UPGRADE):
            if request.chart is None:
                raise ActionFailedError(
                    identity.owner, str(request.action), "no chart to deploy"
                )
            return self._append(
                identity,
                request.chart.name,
                request.chart.version,
                request.config_digest,
            )
        if request.action == ReleaseAction.TEST:
            return current
        if request.action == ReleaseAction.ROLLBACK:
            return self._rollback(request)

        revisions = self._releases[self._key(identity)]
        if request.keep_history:
            revisions[-1] = dataclasses.replace(
                revisions[-1], status=STATUS_UNINSTALLED
            )
        else:
            del self._releases[self._key(identity)]
        buffer.log("uninstalled release %s", identity)
        return None

    def _rollback(self, request: ActionRequest) -> DeployedRelease:
        identity = request.identity
        target = request.target
        if target is None:
            raise ActionFailedError(
                identity.owner, str(request.action), "no rollback target"
            )
        # Failed actions leave no revision behind, so the target may be live
        for candidate in reversed(self._releases[self._key(identity)]):
            if (
                candidate.chart_version == target.chart_version
                and candidate.config_digest == target.config_digest
            ):
                return self._append(
                    identity,
                    candidate.chart_name,
                    candidate.chart_version,
                    candidate.config_digest,
                )
        raise ActionFailedError(
            identity.owner,
            str(request.action),
            f"no earlier revision of {identity} with chart version {target.chart_version}",
        )
