"""HelmRelease Controller implementation.

This controller reconciles HelmRelease resources held in a Store, one
reconciliation per call to `HelmReleaseReconciler.reconcile`:

    - Deleted releases are uninstalled, suspended releases are left alone.
    - Dependencies must be ready before anything else happens.
    - The chart is resolved and the values composed by collaborators.
    - The AtomicReleaseEngine performs at most one backend action.
    - The resulting status is written back as a conflict safe partial update.

The controller can also watch the store and reconcile releases as they are
added or changed.
"""

import asyncio
from collections.abc import Callable
import copy
from dataclasses import dataclass
import datetime
import logging

from flux_release.backend import DeploymentBackend
from flux_release.chart import ChartResolver
from flux_release.config import HelmControllerConfig
from flux_release.exceptions import (
    AccessDeniedError,
    ChartException,
    ConflictError,
    DependencyNotReadyError,
    FluxReleaseException,
    InvalidValuesReference,
    ObjectNotFoundError,
    aggregate,
)
from flux_release.manifest import (
    HELM_RELEASE,
    READY_CONDITION,
    RECONCILING_CONDITION,
    STALLED_CONDITION,
    BaseManifest,
    Condition,
    HelmRelease,
    NamedResource,
    ReleaseStatus,
)
from flux_release.store import StatusPatcher, Store, StoreEvent
from flux_release.values import StoreValuesComposer, ValuesComposer

from .dependency import DependencyGate
from .engine import AtomicReleaseEngine, ReconcileResult, RequeueHint
from .state import ReleaseState

__all__ = [
    "HelmReleaseReconciler",
    "ReconcileOutcome",
]

_LOGGER = logging.getLogger(__name__)

# Bound on back to back reconciliations of a release by the watcher
MAX_IMMEDIATE_REQUEUES = 20

_RECONCILING_STATES = (
    ReleaseState.INSTALLING,
    ReleaseState.UPGRADING,
    ReleaseState.TESTING,
    ReleaseState.ROLLING_BACK,
    ReleaseState.UNINSTALLING,
)


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of reconciling one HelmRelease."""

    resource_id: NamedResource
    state: ReleaseState
    requeue_after: datetime.timedelta | None
    """Delay before the next reconciliation, None to wait for a change."""

    reason: str = ""
    status: ReleaseStatus | None = None
    """Status as written, None when nothing was written."""

    error: Exception | None = None


def render_conditions(
    status: ReleaseStatus, state: ReleaseState, reason: str
) -> list[Condition]:
    """Return the conditions describing the state of a release."""
    current = status.current_deployment
    ready = (
        state == ReleaseState.READY
        and current is not None
        and current.chart_version == status.last_attempted_revision
        and current.config_digest == status.last_attempted_config_digest
    )
    conditions = [
        Condition(
            type=READY_CONDITION,
            status=ready,
            reason="ReconciliationSucceeded" if ready else str(state),
            message=reason,
        )
    ]
    if state == ReleaseState.STALLED:
        conditions.append(
            Condition(
                type=STALLED_CONDITION, status=True, reason=str(state), message=reason
            )
        )
    if state in _RECONCILING_STATES:
        conditions.append(
            Condition(
                type=RECONCILING_CONDITION,
                status=True,
                reason=str(state),
                message=reason,
            )
        )
    return conditions


class HelmReleaseReconciler:
    """Reconciles HelmRelease resources held in a Store."""

    def __init__(
        self,
        store: Store,
        backend: DeploymentBackend,
        charts: ChartResolver,
        values: ValuesComposer | None = None,
        config: HelmControllerConfig | None = None,
    ) -> None:
        """Initialize HelmReleaseReconciler."""
        self._store = store
        self._charts = charts
        self._values = values or StoreValuesComposer(store)
        self._config = config or HelmControllerConfig()
        self._engine = AtomicReleaseEngine(
            backend,
            history_limit=self._config.history_limit,
            rollback_target=self._config.default_rollback_target,
        )
        self._gate = DependencyGate(store)
        self._patcher = StatusPatcher(store, self._config.patch_retries)
        self._errors: dict[NamedResource, int] = {}
        self._tasks: dict[NamedResource, asyncio.Task[None]] = {}
        self._pending: set[NamedResource] = set()
        self._remove_listeners: list[Callable[[], None]] = []

    def _requeue_after(
        self, release: HelmRelease, requeue: RequeueHint, state: ReleaseState
    ) -> datetime.timedelta | None:
        resource_id = release.resource_id
        if requeue == RequeueHint.BACKOFF:
            self._errors[resource_id] = self._errors.get(resource_id, 0) + 1
            return self._config.backoff(self._errors[resource_id])
        self._errors.pop(resource_id, None)
        if requeue == RequeueHint.IMMEDIATE:
            return datetime.timedelta(0)
        if requeue == RequeueHint.DEPENDENCY:
            return self._config.dependency_requeue_interval
        if state == ReleaseState.STALLED:
            return None
        return release.requeue_interval

    async def _write(
        self,
        release: HelmRelease,
        result: ReconcileResult,
    ) -> ReconcileOutcome:
        """Persist the result of a reconciliation."""
        resource_id = release.resource_id
        status = copy.deepcopy(result.status)
        status.observed_generation = release.generation
        status.conditions = render_conditions(status, result.state, result.reason)
        patch_error: Exception | None = None
        written: ReleaseStatus | None = None
        try:
            written = await self._patcher.patch(resource_id, release.status, status)
        except (ConflictError, ObjectNotFoundError) as err:
            _LOGGER.warning("Unable to write status of %s: %s", resource_id, err)
            patch_error = err
        error = aggregate([result.error, patch_error])
        requeue = result.requeue
        if patch_error is not None:
            requeue = RequeueHint.BACKOFF
        return ReconcileOutcome(
            resource_id=resource_id,
            state=result.state,
            requeue_after=self._requeue_after(release, requeue, result.state),
            reason=result.reason,
            status=written,
            error=error,
        )

    def _check_access(self, release: HelmRelease) -> None:
        """Refuse chart sources outside of the release namespace when configured."""
        if (
            self._config.no_cross_namespace_refs
            and release.chart.repo_namespace != release.namespace
        ):
            raise AccessDeniedError(
                f"HelmRelease {release.namespaced_name} can not reference "
                f"{release.chart.repo_kind} {release.chart.repo_namespace}/"
                f"{release.chart.repo_name}, cross-namespace references are disabled"
            )

    async def reconcile(self, resource_id: NamedResource) -> ReconcileOutcome:
        """Reconcile a single HelmRelease."""
        if (release := self._store.get_object(resource_id, HelmRelease)) is None:
            raise ObjectNotFoundError(f"HelmRelease {resource_id} not found")
        _LOGGER.info("Reconciling HelmRelease %s", resource_id)

        if release.suspend:
            _LOGGER.info("Reconciliation of %s is suspended", resource_id)
            return ReconcileOutcome(
                resource_id, ReleaseState.IDLE, None, reason="reconciliation suspended"
            )

        if release.deleted:
            if not release.status.storage_namespace:
                _LOGGER.debug("Nothing to uninstall for %s", resource_id)
                return ReconcileOutcome(
                    resource_id, ReleaseState.IDLE, None, reason="nothing installed"
                )
            return await self._write(
                release, await self._engine.uninstall(release.status, release)
            )

        try:
            await self._gate.check(release)
        except DependencyNotReadyError as err:
            _LOGGER.info("Waiting for dependencies of %s: %s", resource_id, err)
            return ReconcileOutcome(
                resource_id,
                ReleaseState.AWAITING_DEPENDENCIES,
                self._requeue_after(
                    release, RequeueHint.DEPENDENCY, ReleaseState.AWAITING_DEPENDENCIES
                ),
                reason=str(err),
                error=err,
            )

        try:
            self._check_access(release)
        except AccessDeniedError as err:
            _LOGGER.error("Stalled %s: %s", resource_id, err)
            return await self._write(
                release,
                ReconcileResult(
                    release.status,
                    ReleaseState.STALLED,
                    RequeueHint.NONE,
                    reason=str(err),
                    error=err,
                ),
            )

        try:
            chart = await self._charts.resolve(release)
            values = await self._values.compose(release)
        except (ChartException, InvalidValuesReference) as err:
            _LOGGER.warning("Unable to prepare %s: %s", resource_id, err)
            return await self._write(
                release,
                ReconcileResult(
                    release.status,
                    ReleaseState.IDLE,
                    RequeueHint.BACKOFF,
                    reason=str(err),
                    error=err,
                ),
            )

        result = await self._engine.reconcile(release.status, release, chart, values)
        if result.error is not None:
            _LOGGER.warning(
                "Reconciliation of %s ended in %s: %s",
                resource_id,
                result.state,
                result.error,
            )
        else:
            _LOGGER.info(
                "Reconciliation of %s ended in %s: %s",
                resource_id,
                result.state,
                result.reason,
            )
        return await self._write(release, result)

    def start(self) -> None:
        """Reconcile HelmReleases whenever they are added to the store.

        Releases waiting on a dependency are reconciled again as soon as the
        status of that dependency changes.
        """
        self._remove_listeners.extend(
            [
                self._store.add_listener(StoreEvent.OBJECT_ADDED, self._added_listener),
                self._store.add_listener(
                    StoreEvent.STATUS_UPDATED, self._status_listener
                ),
            ]
        )

    def _added_listener(self, resource_id: NamedResource, obj: BaseManifest) -> None:
        """Event listener for new or changed HelmRelease objects."""
        if resource_id.kind != HELM_RELEASE or not isinstance(obj, HelmRelease):
            return
        self._schedule(resource_id)

    def _status_listener(
        self, resource_id: NamedResource, status: ReleaseStatus
    ) -> None:
        """Event listener that wakes up the dependants of a release."""
        if not status.is_ready():
            return
        for obj in self._store.list_objects(HELM_RELEASE):
            if not isinstance(obj, HelmRelease):
                continue
            for ref in obj.depends_on:
                if (
                    ref.name == resource_id.name
                    and (ref.namespace or obj.namespace) == resource_id.namespace
                ):
                    _LOGGER.debug(
                        "Dependency %s of %s changed", resource_id, obj.resource_id
                    )
                    self._schedule(obj.resource_id)

    def _schedule(self, resource_id: NamedResource) -> None:
        if (task := self._tasks.get(resource_id)) is not None and not task.done():
            # A reconciliation is in flight, run once more when it is done
            self._pending.add(resource_id)
            return
        self._tasks[resource_id] = asyncio.create_task(self._worker(resource_id))

    async def _worker(self, resource_id: NamedResource) -> None:
        """Reconcile a release until it needs no immediate followup."""
        for _ in range(MAX_IMMEDIATE_REQUEUES):
            self._pending.discard(resource_id)
            try:
                outcome = await self.reconcile(resource_id)
            except FluxReleaseException as err:
                _LOGGER.error("Failed to reconcile %s: %s", resource_id, err)
                return
            if outcome.requeue_after == datetime.timedelta(0):
                continue
            if resource_id not in self._pending:
                return
        _LOGGER.warning(
            "Giving up on %s after %d consecutive reconciliations",
            resource_id,
            MAX_IMMEDIATE_REQUEUES,
        )

    async def wait(self) -> None:
        """Wait for all in flight reconciliations to finish."""
        while tasks := [task for task in self._tasks.values() if not task.done()]:
            await asyncio.gather(*tasks)

    async def close(self) -> None:
        """Stop watching the store and cancel in flight reconciliations."""
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        for task in self._tasks.values():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
