"""Flux-release reconcile action."""

import dataclasses
import logging
from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import pathlib
import tempfile
from typing import Any, cast

import aiofiles
from aiofiles.ospath import exists
import yaml

from flux_release.backend import (
    DeploymentBackend,
    HelmCliBackend,
    InMemoryBackend,
    ReleaseIdentity,
)
from flux_release.chart import LocalChartResolver
from flux_release.config import HelmControllerConfig
from flux_release.exceptions import FluxReleaseException, InputException
from flux_release.helm_controller import HelmReleaseReconciler, ReconcileOutcome
from flux_release.manifest import (
    BaseManifest,
    HelmRelease,
    ReleaseStatus,
    RollbackTarget,
    parse_raw_obj,
    read_status,
    write_status,
)
from flux_release.store import InMemoryStore

from .format import PrintFormatter


_LOGGER = logging.getLogger(__name__)


async def read_objects(path: pathlib.Path) -> list[BaseManifest]:
    """Parse all supported objects from a multi document yaml file."""
    try:
        async with aiofiles.open(path) as objects_file:
            content = await objects_file.read()
    except OSError as err:
        raise InputException(f"Unable to read {path}: {err}") from err
    try:
        docs = list(yaml.load_all(content, Loader=yaml.SafeLoader))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    return [parse_raw_obj(doc) for doc in docs if doc]


def seed_backend(backend: InMemoryBackend, release: HelmRelease) -> None:
    """Make a dry run backend report the deployment recorded in the status."""
    status = release.status
    if (current := status.current_deployment) is None:
        return
    backend.seed(
        ReleaseIdentity(
            name=current.name,
            namespace=current.namespace,
            storage_namespace=status.storage_namespace or current.namespace,
            owner=release.namespaced_name,
        ),
        current.chart_name,
        current.chart_version,
        current.config_digest,
    )


def outcome_rows(outcome: ReconcileOutcome) -> list[dict[str, Any]]:
    return [
        {
            "name": outcome.resource_id.namespaced_name,
            "state": str(outcome.state),
            "requeue": (
                "-" if outcome.requeue_after is None else str(outcome.requeue_after)
            ),
            "reason": outcome.reason,
        }
    ]


class ReconcileAction:
    """Reconcile a HelmRelease once."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile a HelmRelease once",
                description=(
                    "Performs the next lifecycle action of a HelmRelease and "
                    "writes the resulting status."
                ),
            ),
        )
        args.add_argument(
            "release",
            type=pathlib.Path,
            help="Path of the yaml file holding the HelmRelease",
        )
        args.add_argument(
            "--status",
            type=pathlib.Path,
            required=True,
            help="Path of the yaml file holding the status, created when missing",
        )
        args.add_argument(
            "--chart-dir",
            type=pathlib.Path,
            required=True,
            help="Directory holding chart directories and packaged chart archives",
        )
        args.add_argument(
            "--values-from",
            type=pathlib.Path,
            default=None,
            help="Yaml file with the ConfigMaps, Secrets and HelmReleases referenced by the release",
        )
        args.add_argument(
            "--dry-run",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Perform the actions against an in-memory backend seeded from the status",
        )
        args.add_argument(
            "--kube-context",
            default=None,
            help="Kube context used by helm",
        )
        args.add_argument(
            "--history-limit",
            type=int,
            default=HelmControllerConfig.history_limit,
            help="Number of attempts retained in the status",
        )
        args.add_argument(
            "--rollback-target",
            choices=[str(target) for target in RollbackTarget],
            default=str(RollbackTarget.LAST_SUCCESSFUL),
            help="Deployment a rollback returns to when the release does not say",
        )
        args.add_argument(
            "--no-cross-namespace-refs",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Refuse chart sources outside of the HelmRelease namespace",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        release: pathlib.Path,
        status: pathlib.Path,
        chart_dir: pathlib.Path,
        values_from: pathlib.Path | None,
        dry_run: bool,
        kube_context: str | None,
        history_limit: int,
        rollback_target: str,
        no_cross_namespace_refs: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        objects = await read_objects(release)
        releases = [obj for obj in objects if isinstance(obj, HelmRelease)]
        if len(releases) != 1:
            raise InputException(
                f"Expected exactly one HelmRelease in {release}, found {len(releases)}"
            )
        helm_release = releases[0]
        if await exists(status):
            helm_release = dataclasses.replace(
                helm_release, status=await read_status(status)
            )
        else:
            helm_release = dataclasses.replace(helm_release, status=ReleaseStatus())

        store = InMemoryStore()
        if values_from is not None:
            for obj in await read_objects(values_from):
                store.add_object(obj)
        store.add_object(helm_release)

        config = HelmControllerConfig(
            history_limit=history_limit,
            no_cross_namespace_refs=no_cross_namespace_refs,
            default_rollback_target=RollbackTarget(rollback_target),
        )
        with tempfile.TemporaryDirectory() as tmp_dir:
            backend: DeploymentBackend
            if dry_run:
                backend = InMemoryBackend()
                seed_backend(backend, helm_release)
            else:
                backend = HelmCliBackend(
                    pathlib.Path(tmp_dir), kube_context=kube_context
                )
            reconciler = HelmReleaseReconciler(
                store, backend, LocalChartResolver(chart_dir), config=config
            )
            outcome = await reconciler.reconcile(helm_release.resource_id)

        if (new_status := store.get_status(helm_release.resource_id)) is not None:
            if dry_run:
                _LOGGER.info("Dry run, not writing status to %s", status)
                print(new_status.yaml(), end="")
            else:
                await write_status(status, new_status)
        PrintFormatter().print(outcome_rows(outcome))
        if outcome.error is not None:
            if isinstance(outcome.error, FluxReleaseException):
                raise outcome.error
            raise FluxReleaseException(str(outcome.error)) from outcome.error
