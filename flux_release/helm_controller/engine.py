"""The atomic release engine.

Each call to `AtomicReleaseEngine.reconcile` performs at most one backend
action for a release and returns the status that results from it. The
engine works on a copy of the status it is given and never writes it
anywhere: persisting the result is up to the caller.

A reconciliation proceeds as follows:
1. A deployment made for another target (name, namespace, chart or storage
   namespace) is uninstalled, the status is cleared and an immediate requeue
   is requested.
2. The failure counters are reset when a new chart version or values digest
   is attempted.
3. The backend is asked what is deployed; its answer and the status decide
   the state of the release.
4. The action of that state, if any, is performed and recorded as an Attempt.

Cancellation while an action runs propagates to the caller with the input
status untouched, so the next reconciliation derives its decision from the
backend again.
"""

import asyncio
from collections.abc import Callable
import copy
from dataclasses import dataclass
import datetime
from enum import StrEnum
from typing import Any

from flux_release.backend import (
    ActionRequest,
    DeployedRelease,
    DeploymentBackend,
    ReleaseIdentity,
)
from flux_release.chart import Chart
from flux_release.digest import digest_values
from flux_release.exceptions import (
    ActionFailedError,
    AmbiguousBackendError,
    FluxReleaseException,
)
from flux_release.manifest import (
    Attempt,
    AttemptOutcome,
    HelmRelease,
    ReleaseAction,
    ReleaseStatus,
    RollbackTarget,
    Snapshot,
)

from .history import DEFAULT_LIMIT, ReleaseHistory
from .policy import must_reset_failures, record_failure, reset_failures
from .state import NextStep, ReleaseState, counted_action, derive_state
from .target import ReleaseTarget, current_target, release_target_changed

__all__ = [
    "AtomicReleaseEngine",
    "ReconcileResult",
    "RequeueHint",
]

# Time given to the backend beyond the action timeout before giving up on it
DEFAULT_TIMEOUT_GRACE = datetime.timedelta(seconds=30)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RequeueHint(StrEnum):
    """When the release should be reconciled again."""

    NONE = "none"
    """Only on the next event or regular interval."""

    DEPENDENCY = "dependency"
    """After the fixed dependency interval."""

    BACKOFF = "backoff"
    """After a backoff interval, following an error."""

    IMMEDIATE = "immediate"
    """Right away, a state transition is pending."""


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation."""

    status: ReleaseStatus
    """The proposed new status."""

    state: ReleaseState
    requeue: RequeueHint
    reason: str = ""
    error: Exception | None = None


class AtomicReleaseEngine:
    """Drives a release towards its desired state one action at a time."""

    def __init__(
        self,
        backend: DeploymentBackend,
        history_limit: int = DEFAULT_LIMIT,
        rollback_target: RollbackTarget = RollbackTarget.LAST_SUCCESSFUL,
        timeout_grace: datetime.timedelta = DEFAULT_TIMEOUT_GRACE,
        now: Callable[[], datetime.datetime] = _now,
    ) -> None:
        """Initialize AtomicReleaseEngine."""
        self._backend = backend
        self._history_limit = history_limit
        self._rollback_target = rollback_target
        self._timeout_grace = timeout_grace
        self._now = now

    async def reconcile(
        self,
        status: ReleaseStatus,
        release: HelmRelease,
        chart: Chart,
        values: dict[str, Any],
    ) -> ReconcileResult:
        """Perform the next step of the release and return the new status."""
        working = copy.deepcopy(status)
        revision = chart.version
        config_digest = digest_values(values)
        identity = ReleaseIdentity(
            name=release.release_name,
            namespace=release.release_namespace,
            storage_namespace=release.storage_namespace,
            owner=release.namespaced_name,
        )
        desired = ReleaseTarget(
            namespace=identity.namespace,
            name=identity.name,
            chart_name=chart.name,
            storage_namespace=identity.storage_namespace,
        )
        if release_target_changed(working, desired):
            return await self._teardown(status, working, release)

        reset = must_reset_failures(working, revision, config_digest)
        if reset:
            reset_failures(working)
        working.last_attempted_revision = revision
        working.last_attempted_config_digest = config_digest
        working.storage_namespace = identity.storage_namespace

        try:
            deployed = await self._backend.get(identity)
        except FluxReleaseException as err:
            return ReconcileResult(
                status,
                ReleaseState.IDLE,
                RequeueHint.BACKOFF,
                reason=f"unable to observe release {identity}",
                error=err,
            )
        if deployed is None and working.current_deployment is not None:
            # The backend is authoritative for what is installed
            working.current_deployment = None

        history = ReleaseHistory(working.history, self._history_limit)
        step = derive_state(
            release,
            working,
            history,
            revision,
            config_digest,
            deployed,
            reset,
            self._rollback_target_of(release),
        )
        if (action := step.action) is None:
            working.history = history.to_list()
            return ReconcileResult(working, step.state, RequeueHint.NONE, step.reason)
        return await self._perform(
            status,
            working,
            history,
            step,
            action,
            release,
            identity,
            chart,
            values,
            deployed,
        )

    async def uninstall(
        self, status: ReleaseStatus, release: HelmRelease
    ) -> ReconcileResult:
        """Remove the deployment of a release that is being deleted."""
        working = copy.deepcopy(status)
        if (previous := current_target(working)) is not None:
            identity = ReleaseIdentity(
                name=previous.name,
                namespace=previous.namespace,
                storage_namespace=previous.storage_namespace,
                owner=release.namespaced_name,
            )
        else:
            identity = ReleaseIdentity(
                name=release.release_name,
                namespace=release.release_namespace,
                storage_namespace=working.storage_namespace
                or release.storage_namespace,
                owner=release.namespaced_name,
            )
        try:
            if await self._backend.get(identity) is not None:
                await self._call(
                    self._request(ReleaseAction.UNINSTALL, release, identity)
                )
        except FluxReleaseException as err:
            return ReconcileResult(
                status,
                ReleaseState.UNINSTALLING,
                RequeueHint.BACKOFF,
                reason=f"unable to uninstall release {identity}",
                error=err,
            )
        working.current_deployment = None
        working.storage_namespace = None
        working.history = []
        return ReconcileResult(
            working,
            ReleaseState.IDLE,
            RequeueHint.NONE,
            reason=f"uninstalled release {identity}",
        )

    def _rollback_target_of(self, release: HelmRelease) -> RollbackTarget:
        return release.rollback.target or self._rollback_target

    def _request(
        self,
        action: ReleaseAction,
        release: HelmRelease,
        identity: ReleaseIdentity,
        **kwargs: Any,
    ) -> ActionRequest:
        disable_wait = {
            ReleaseAction.INSTALL: release.install.disable_wait,
            ReleaseAction.UPGRADE: release.upgrade.disable_wait,
            ReleaseAction.TEST: False,
            ReleaseAction.ROLLBACK: release.rollback.disable_wait,
            ReleaseAction.UNINSTALL: release.uninstall.disable_wait,
        }
        return ActionRequest(
            action=action,
            identity=identity,
            timeout=release.action_timeout(action),
            wait=not disable_wait[action],
            create_namespace=(
                action == ReleaseAction.INSTALL and release.install.create_namespace
            ),
            keep_history=(
                action == ReleaseAction.UNINSTALL and release.uninstall.keep_history
            ),
            **kwargs,
        )

    async def _call(self, request: ActionRequest) -> DeployedRelease | None:
        """Run one backend action within its deadline.

        Any failure other than an ambiguous backend state is reported as an
        ActionFailedError.
        """
        deadline = request.timeout + self._timeout_grace
        try:
            async with asyncio.timeout(deadline.total_seconds()):
                return await self._backend.run(request)
        except TimeoutError as err:
            raise ActionFailedError(
                request.identity.owner,
                str(request.action),
                f"timed out after {request.timeout}",
            ) from err
        except (ActionFailedError, AmbiguousBackendError):
            raise
        except FluxReleaseException as err:
            raise ActionFailedError(
                request.identity.owner, str(request.action), str(err)
            ) from err

    async def _teardown(
        self, status: ReleaseStatus, working: ReleaseStatus, release: HelmRelease
    ) -> ReconcileResult:
        """Remove the deployment of a previous target."""
        if (previous := current_target(working)) is not None:
            old_identity = ReleaseIdentity(
                name=previous.name,
                namespace=previous.namespace,
                storage_namespace=previous.storage_namespace,
                owner=release.namespaced_name,
            )
            started = self._now()
            try:
                if await self._backend.get(old_identity) is not None:
                    await self._call(
                        self._request(ReleaseAction.UNINSTALL, release, old_identity)
                    )
            except AmbiguousBackendError as err:
                return ReconcileResult(
                    status,
                    ReleaseState.UNINSTALLING,
                    RequeueHint.BACKOFF,
                    reason=str(err),
                    error=err,
                )
            except FluxReleaseException as err:
                current = working.current_deployment
                history = ReleaseHistory(working.history, self._history_limit)
                history.append(
                    Attempt(
                        revision=current.chart_version if current else "",
                        config_digest=current.config_digest if current else "",
                        action=ReleaseAction.UNINSTALL,
                        outcome=AttemptOutcome.FAILED,
                        started=started,
                        finished=self._now(),
                    )
                )
                working.history = history.to_list()
                record_failure(working, ReleaseAction.UNINSTALL)
                return ReconcileResult(
                    working,
                    ReleaseState.UNINSTALLING,
                    RequeueHint.BACKOFF,
                    reason=f"unable to uninstall previous target {old_identity}",
                    error=err,
                )
        # The history and budgets belong to the previous target
        working.current_deployment = None
        working.storage_namespace = None
        working.history = []
        working.last_attempted_revision = None
        working.last_attempted_config_digest = None
        reset_failures(working)
        return ReconcileResult(
            working,
            ReleaseState.IDLE,
            RequeueHint.IMMEDIATE,
            reason="release target changed, previous deployment removed",
        )

    async def _perform(
        self,
        status: ReleaseStatus,
        working: ReleaseStatus,
        history: ReleaseHistory,
        step: NextStep,
        action: ReleaseAction,
        release: HelmRelease,
        identity: ReleaseIdentity,
        chart: Chart,
        values: dict[str, Any],
        deployed: DeployedRelease | None,
    ) -> ReconcileResult:
        """Perform the action of a step and record its outcome."""
        revision = chart.version
        config_digest = working.last_attempted_config_digest or ""
        current = working.current_deployment

        kwargs: dict[str, Any] = {}
        attempted = (revision, config_digest)
        if action in (ReleaseAction.INSTALL, ReleaseAction.UPGRADE):
            kwargs = {"chart": chart, "values": values, "config_digest": config_digest}
        elif action == ReleaseAction.ROLLBACK and (target := step.rollback_to):
            attempted = (target.revision, target.config_digest)
            kwargs = {
                "target": Snapshot(
                    name=identity.name,
                    namespace=identity.namespace,
                    chart_name=current.chart_name if current else chart.name,
                    chart_version=target.revision,
                    config_digest=target.config_digest,
                    deployed=target.finished,
                )
            }
        elif action == ReleaseAction.UNINSTALL and current is not None:
            attempted = (current.chart_version, current.config_digest)

        working.storage_namespace = identity.storage_namespace
        started = self._now()
        try:
            result = await self._call(
                self._request(action, release, identity, **kwargs)
            )
        except AmbiguousBackendError as err:
            return ReconcileResult(
                status, step.state, RequeueHint.BACKOFF, reason=str(err), error=err
            )
        except ActionFailedError as err:
            history.append(
                Attempt(
                    revision=attempted[0],
                    config_digest=attempted[1],
                    action=action,
                    outcome=AttemptOutcome.FAILED,
                    started=started,
                    finished=self._now(),
                )
            )
            working.history = history.to_list()
            return await self._after_failure(
                working, history, step, action, release, identity, chart, deployed, err
            )

        finished = self._now()
        history.append(
            Attempt(
                revision=attempted[0],
                config_digest=attempted[1],
                action=action,
                outcome=AttemptOutcome.SUCCEEDED,
                started=started,
                finished=finished,
            )
        )
        working.history = history.to_list()

        if action in (ReleaseAction.INSTALL, ReleaseAction.UPGRADE):
            working.current_deployment = Snapshot(
                name=identity.name,
                namespace=identity.namespace,
                chart_name=chart.name,
                chart_version=revision,
                config_digest=config_digest,
                deployed=finished,
            )
            if release.test.enable:
                return ReconcileResult(
                    working,
                    ReleaseState.TESTING,
                    RequeueHint.IMMEDIATE,
                    reason=f"{action} of {revision} succeeded, tests pending",
                )
            return ReconcileResult(
                working,
                ReleaseState.READY,
                RequeueHint.NONE,
                reason=f"{action} of {revision} succeeded",
            )
        if action == ReleaseAction.TEST:
            return ReconcileResult(
                working,
                ReleaseState.READY,
                RequeueHint.NONE,
                reason=f"tests of {revision} succeeded",
            )
        if action == ReleaseAction.ROLLBACK:
            working.current_deployment = Snapshot(
                name=identity.name,
                namespace=identity.namespace,
                chart_name=result.chart_name if result else chart.name,
                chart_version=attempted[0],
                config_digest=attempted[1],
                deployed=finished,
            )
            return ReconcileResult(
                working,
                ReleaseState.READY,
                RequeueHint.NONE,
                reason=f"rolled back to {attempted[0]}",
            )
        working.current_deployment = None
        working.storage_namespace = None
        return ReconcileResult(
            working,
            ReleaseState.IDLE,
            RequeueHint.NONE,
            reason=f"uninstalled release {identity}",
        )

    async def _after_failure(
        self,
        working: ReleaseStatus,
        history: ReleaseHistory,
        step: NextStep,
        action: ReleaseAction,
        release: HelmRelease,
        identity: ReleaseIdentity,
        chart: Chart,
        deployed: DeployedRelease | None,
        err: ActionFailedError,
    ) -> ReconcileResult:
        """Count a failed action and decide how the release continues."""
        if action in (ReleaseAction.ROLLBACK, ReleaseAction.UNINSTALL):
            record_failure(working, action)
            return ReconcileResult(
                working, step.state, RequeueHint.BACKOFF, reason=str(err), error=err
            )
        if action == ReleaseAction.TEST and release.test.ignore_failures:
            return ReconcileResult(
                working,
                ReleaseState.READY,
                RequeueHint.NONE,
                reason=f"tests of {chart.version} failed, failures ignored",
                error=err,
            )
        record_failure(working, counted_action(history))

        # The failed action may have left something behind
        try:
            deployed = await self._backend.get(identity)
        except FluxReleaseException as observe_err:
            err = ActionFailedError(
                identity.owner,
                str(action),
                f"{err.message}; unable to observe release afterwards: {observe_err}",
                err.log,
            )
        if deployed is None:
            working.current_deployment = None
        following = derive_state(
            release,
            working,
            history,
            chart.version,
            working.last_attempted_config_digest or "",
            deployed,
            False,
            self._rollback_target_of(release),
        )
        if following.state in (ReleaseState.ROLLING_BACK, ReleaseState.UNINSTALLING):
            return ReconcileResult(
                working,
                following.state,
                RequeueHint.IMMEDIATE,
                reason=following.reason,
                error=err,
            )
        if following.state == ReleaseState.STALLED:
            return ReconcileResult(
                working, following.state, RequeueHint.NONE, following.reason, err
            )
        return ReconcileResult(
            working, ReleaseState.IDLE, RequeueHint.BACKOFF, following.reason, err
        )
