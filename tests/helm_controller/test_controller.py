"""Tests for the helm controller."""

from collections.abc import AsyncGenerator
import dataclasses
import datetime

import pytest

from flux_release.backend import InMemoryBackend
from flux_release.chart import Chart, ChartResolver
from flux_release.config import HelmControllerConfig
from flux_release.exceptions import (
    AccessDeniedError,
    ActionFailedError,
    AggregateError,
    ChartException,
    ConflictError,
    DependencyNotReadyError,
    InvalidValuesReference,
    ObjectNotFoundError,
)
from flux_release.helm_controller import HelmReleaseReconciler, ReleaseState
from flux_release.manifest import (
    READY_CONDITION,
    RECONCILING_CONDITION,
    STALLED_CONDITION,
    ConfigMap,
    DependencyReference,
    HelmChart,
    HelmRelease,
    InstallPolicy,
    NamedResource,
    ReleaseAction,
    ReleaseStatus,
    Remediation,
    TestPolicy,
    ValuesReference,
)
from flux_release.store import InMemoryStore

from . import FakeChartResolver, identity_of, make_release

INTERVAL = datetime.timedelta(minutes=10)


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create a test store."""
    return InMemoryStore()


@pytest.fixture(name="charts")
def charts_fixture() -> FakeChartResolver:
    """Create a chart resolver that needs no chart sources."""
    return FakeChartResolver()


@pytest.fixture(name="config")
def config_fixture() -> HelmControllerConfig:
    """Create the controller configuration."""
    return HelmControllerConfig()


@pytest.fixture(name="reconciler")
async def reconciler_fixture(
    store: InMemoryStore,
    backend: InMemoryBackend,
    charts: FakeChartResolver,
    config: HelmControllerConfig,
) -> AsyncGenerator[HelmReleaseReconciler, None]:
    """Create a test reconciler."""
    reconciler = HelmReleaseReconciler(store, backend, charts, config=config)
    yield reconciler
    await reconciler.close()


def stored_status(store: InMemoryStore, release: HelmRelease) -> ReleaseStatus:
    status = store.get_status(release.resource_id)
    assert status is not None
    return status


async def test_reconcile_install(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a new HelmRelease is installed and its status written."""
    release = make_release(values={"replicaCount": 1})
    store.add_object(release)

    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.READY
    assert outcome.requeue_after == INTERVAL
    assert outcome.error is None
    assert backend.actions() == [ReleaseAction.INSTALL]
    assert backend.requests[0].values == {"replicaCount": 1}

    status = stored_status(store, release)
    assert outcome.status == status
    assert status.observed_generation == 1
    assert status.is_ready()
    ready = status.get_condition(READY_CONDITION)
    assert ready is not None
    assert ready.reason == "ReconciliationSucceeded"
    assert status.get_condition(STALLED_CONDITION) is None
    assert status.get_condition(RECONCILING_CONDITION) is None
    assert status.current_deployment is not None
    assert status.current_deployment.chart_version == "1.0.0"

    # Nothing is deployed again on the next reconciliation
    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.state == ReleaseState.READY
    assert backend.actions() == [ReleaseAction.INSTALL]
    assert stored_status(store, release).history == status.history
    assert stored_status(store, release).is_ready()


async def test_reconcile_missing_release(reconciler: HelmReleaseReconciler) -> None:
    """Test reconciling a HelmRelease that is not in the store."""
    with pytest.raises(ObjectNotFoundError):
        await reconciler.reconcile(NamedResource("HelmRelease", "podinfo", "missing"))


async def test_values_from_config_map(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test the release is deployed with values composed from a ConfigMap."""
    store.add_object(
        ConfigMap(
            name="podinfo-values",
            namespace="podinfo",
            data={"values.yaml": "replicaCount: 3\nimage: nginx\n"},
        )
    )
    release = make_release(
        values={"replicaCount": 1},
        values_from=[ValuesReference(kind="ConfigMap", name="podinfo-values")],
    )
    store.add_object(release)

    await reconciler.reconcile(release.resource_id)

    assert backend.requests[0].values == {"replicaCount": 1, "image": "nginx"}


async def test_missing_values_reference(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a missing values reference is retried with a backoff."""
    release = make_release(
        values_from=[ValuesReference(kind="Secret", name="podinfo-values")]
    )
    store.add_object(release)

    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.IDLE
    assert outcome.requeue_after == datetime.timedelta(seconds=5)
    assert isinstance(outcome.error, InvalidValuesReference)
    assert backend.actions() == []


async def test_dependencies_not_ready(
    store: InMemoryStore,
    backend: InMemoryBackend,
    charts: FakeChartResolver,
    reconciler: HelmReleaseReconciler,
    config: HelmControllerConfig,
) -> None:
    """Test a release waits for its dependencies without any action."""
    release = make_release(depends_on=[DependencyReference(name="database")])
    store.add_object(release)

    for _ in range(3):
        outcome = await reconciler.reconcile(release.resource_id)
        assert outcome.state == ReleaseState.AWAITING_DEPENDENCIES
        assert outcome.requeue_after == config.dependency_requeue_interval
        assert isinstance(outcome.error, DependencyNotReadyError)

    assert backend.actions() == []
    assert charts.resolved == 0
    assert stored_status(store, release) == ReleaseStatus()

    database = make_release(name="database")
    store.add_object(database)
    outcome = await reconciler.reconcile(database.resource_id)
    assert outcome.state == ReleaseState.READY

    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.state == ReleaseState.READY
    assert backend.actions() == [ReleaseAction.INSTALL, ReleaseAction.INSTALL]


async def test_suspended(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a suspended release is left alone, even when deleted."""
    release = make_release(suspend=True, deleted=True)
    store.add_object(release)

    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.IDLE
    assert outcome.requeue_after is None
    assert outcome.status is None
    assert backend.actions() == []
    assert stored_status(store, release) == ReleaseStatus()


async def test_deleted(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a deleted release is uninstalled."""
    release = make_release()
    store.add_object(release)
    await reconciler.reconcile(release.resource_id)

    store.add_object(dataclasses.replace(release, deleted=True))
    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.IDLE
    assert outcome.error is None
    assert backend.actions() == [ReleaseAction.INSTALL, ReleaseAction.UNINSTALL]
    assert await backend.get(identity_of(release)) is None
    status = stored_status(store, release)
    assert status.current_deployment is None
    assert status.storage_namespace is None
    assert status.observed_generation == 2


async def test_deleted_never_installed(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test deleting a release that was never installed needs no action."""
    release = make_release(deleted=True)
    store.add_object(release)

    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.IDLE
    assert outcome.requeue_after is None
    assert backend.actions() == []


@pytest.mark.parametrize(
    "config", [HelmControllerConfig(no_cross_namespace_refs=True)]
)
async def test_cross_namespace_refused(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a chart source in another namespace stalls the release."""
    release = make_release(
        chart=HelmChart(
            name="podinfo",
            version="1.0.0",
            repo_name="podinfo",
            repo_namespace="flux-system",
        )
    )
    store.add_object(release)

    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.STALLED
    assert outcome.requeue_after is None
    assert isinstance(outcome.error, AccessDeniedError)
    assert backend.actions() == []
    status = stored_status(store, release)
    assert not status.is_ready()
    stalled = status.get_condition(STALLED_CONDITION)
    assert stalled is not None
    assert stalled.status
    assert "cross-namespace references are disabled" in stalled.message


class BrokenChartResolver(ChartResolver):
    """Resolver for a chart source that is unavailable."""

    async def resolve(self, release: HelmRelease) -> Chart:
        raise ChartException("chart repository unavailable")


@pytest.mark.parametrize("charts", [BrokenChartResolver()])
async def test_chart_errors_back_off(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test consecutive chart errors increase the requeue delay."""
    release = make_release()
    store.add_object(release)

    delays = [
        (await reconciler.reconcile(release.resource_id)).requeue_after
        for _ in range(3)
    ]

    assert delays == [
        datetime.timedelta(seconds=5),
        datetime.timedelta(seconds=10),
        datetime.timedelta(seconds=20),
    ]
    assert backend.actions() == []
    assert not stored_status(store, release).is_ready()


async def test_failed_install_conditions(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a failed install is reported and backed off."""
    release = make_release(install=InstallPolicy(remediation=Remediation(retries=3)))
    store.add_object(release)
    backend.fail(ReleaseAction.INSTALL, times=2)

    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.state == ReleaseState.IDLE
    assert outcome.requeue_after == datetime.timedelta(seconds=5)
    assert isinstance(outcome.error, ActionFailedError)
    status = stored_status(store, release)
    assert status.install_failures == 1
    ready = status.get_condition(READY_CONDITION)
    assert ready is not None
    assert not ready.status

    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.requeue_after == datetime.timedelta(seconds=10)

    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.state == ReleaseState.READY
    assert outcome.requeue_after == INTERVAL
    assert stored_status(store, release).is_ready()


async def test_remediated_release_not_ready(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test a release rolled back from a failed upgrade is not ready."""
    store.add_object(make_release("1.0.0"))
    release = make_release("1.1.0")
    await reconciler.reconcile(release.resource_id)

    store.add_object(release)
    backend.fail(ReleaseAction.UPGRADE)
    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.state == ReleaseState.ROLLING_BACK
    assert outcome.requeue_after == datetime.timedelta(0)
    reconciling = stored_status(store, release).get_condition(RECONCILING_CONDITION)
    assert reconciling is not None
    assert reconciling.status

    outcome = await reconciler.reconcile(release.resource_id)
    assert outcome.state == ReleaseState.READY
    status = stored_status(store, release)
    assert status.observed_generation == 2
    assert status.current_deployment is not None
    assert status.current_deployment.chart_version == "1.0.0"
    assert not status.is_ready()
    assert backend.actions() == [
        ReleaseAction.INSTALL,
        ReleaseAction.UPGRADE,
        ReleaseAction.ROLLBACK,
    ]


class ConflictingStore(InMemoryStore):
    """Store where every status write loses against another writer."""

    def update_status(
        self, resource_id: NamedResource, status: ReleaseStatus, resource_version: int
    ) -> int:
        raise ConflictError(f"Object {resource_id} has been modified")


async def test_status_conflict(backend: InMemoryBackend) -> None:
    """Test a status that can not be written is reported and backed off."""
    store = ConflictingStore()
    release = make_release()
    store.add_object(release)
    reconciler = HelmReleaseReconciler(store, backend, FakeChartResolver())

    outcome = await reconciler.reconcile(release.resource_id)

    assert outcome.state == ReleaseState.READY
    assert outcome.status is None
    assert isinstance(outcome.error, ConflictError)
    assert outcome.requeue_after == datetime.timedelta(seconds=5)


async def test_status_conflict_with_action_error(backend: InMemoryBackend) -> None:
    """Test an action error and a status conflict are both reported."""
    store = ConflictingStore()
    release = make_release(install=InstallPolicy(remediation=Remediation(retries=3)))
    store.add_object(release)
    backend.fail(ReleaseAction.INSTALL)
    reconciler = HelmReleaseReconciler(store, backend, FakeChartResolver())

    outcome = await reconciler.reconcile(release.resource_id)

    assert isinstance(outcome.error, AggregateError)
    assert [type(err) for err in outcome.error.errors] == [
        ActionFailedError,
        ConflictError,
    ]


async def test_watch_dependencies(
    store: InMemoryStore,
    backend: InMemoryBackend,
    reconciler: HelmReleaseReconciler,
) -> None:
    """Test watched releases are reconciled once their dependencies are ready."""
    reconciler.start()

    app = make_release(name="app", depends_on=[DependencyReference(name="database")])
    database = make_release(name="database", test=TestPolicy(enable=True))
    store.add_object(app)
    store.add_object(database)
    await reconciler.wait()

    assert stored_status(store, database).is_ready()
    assert stored_status(store, app).is_ready()
    assert backend.actions() == [
        ReleaseAction.INSTALL,
        ReleaseAction.TEST,
        ReleaseAction.INSTALL,
    ]

    await reconciler.close()
    store.add_object(make_release(name="frontend"))
    await reconciler.wait()
    assert backend.actions() == [
        ReleaseAction.INSTALL,
        ReleaseAction.TEST,
        ReleaseAction.INSTALL,
    ]
