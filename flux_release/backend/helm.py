"""Deployment backend that runs the `helm` binary.

Each action is a single helm invocation against the current kube context:
```python
from flux_release.backend.helm import HelmCliBackend

backend = HelmCliBackend(Path("/tmp/path/work"))
deployed = await backend.get(identity)
```

Helm keeps its release records in the release namespace, so a storage
namespace that differs from the release namespace is not supported and is
reported with a warning.
"""

import json
import logging
from pathlib import Path
import re
from typing import Any

import aiofiles
import yaml

from flux_release import command
from flux_release.exceptions import (
    ActionFailedError,
    HelmException,
    ReleaseExistsError,
    ReleaseNotFoundError,
)
from flux_release.manifest import ReleaseAction

from .backend import ActionRequest, DeployedRelease, DeploymentBackend, ReleaseIdentity
from .log_buffer import LogBuffer

__all__ = [
    "HelmCliBackend",
]

_LOGGER = logging.getLogger(__name__)

HELM_BIN = "helm"

# Extra time given to the helm process beyond its own --timeout
_COMMAND_GRACE = 30.0

_CHART_RE = re.compile(r"^(?P<name>.+)-(?P<version>v?\d+(\.\d+)*([-+].*)?)$")

_EXISTS_MARKERS = ("cannot re-use a name that is still in use",)
_NOT_FOUND_MARKERS = ("not found", "has no deployed releases")
_ROLLBACK_STATUSES = ("deployed", "superseded")
STATUS_UNINSTALLED = "uninstalled"


def _split_chart(chart: str) -> tuple[str, str]:
    """Split helm's `<name>-<version>` chart column."""
    if match := _CHART_RE.match(chart):
        return match.group("name"), match.group("version")
    return chart, ""


def _timeout_arg(request: ActionRequest) -> str:
    return f"{int(request.timeout.total_seconds())}s"


def _classify(
    request: ActionRequest, err: HelmException, log: LogBuffer
) -> Exception:
    """Translate a failed helm invocation into a backend error."""
    message = str(err)
    lowered = message.lower()
    if any(marker in lowered for marker in _EXISTS_MARKERS):
        return ReleaseExistsError(
            f"cannot {request.action} {request.identity}: {message}"
        )
    if request.action != ReleaseAction.INSTALL and any(
        marker in lowered for marker in _NOT_FOUND_MARKERS
    ):
        return ReleaseNotFoundError(
            f"cannot {request.action} {request.identity}: {message}"
        )
    for line in message.splitlines():
        if line.strip():
            log.log("%s", line.strip())
    return ActionFailedError(
        request.identity.owner,
        str(request.action),
        message.splitlines()[0] if message else "helm failed",
        str(log),
    )


class HelmCliBackend(DeploymentBackend):
    """Performs release actions with the helm command line tool."""

    def __init__(
        self,
        tmp_dir: Path,
        kube_context: str | None = None,
        log_size: int = 10,
    ) -> None:
        """Initialize HelmCliBackend."""
        self._tmp_dir = tmp_dir
        self._flags: list[str] = []
        if kube_context:
            self._flags.extend(["--kube-context", kube_context])
        self._log_size = log_size

    def _namespace(self, identity: ReleaseIdentity) -> str:
        if identity.storage_namespace != identity.namespace:
            _LOGGER.warning(
                "helm stores release %s in %s, ignoring storage namespace %s",
                identity,
                identity.namespace,
                identity.storage_namespace,
            )
        return identity.namespace

    async def _helm(self, args: list[str], timeout: float = 60.0) -> str:
        cmd = [HELM_BIN, *args, *self._flags]
        return await command.run(
            command.Command(cmd, exc=HelmException, timeout=timeout)
        )

    async def get(self, identity: ReleaseIdentity) -> DeployedRelease | None:
        """Return the deployed release, or None when nothing is deployed."""
        out = await self._helm(
            [
                "list",
                "--namespace",
                self._namespace(identity),
                "--filter",
                f"^{re.escape(identity.name)}$",
                "--all",
                "--output",
                "json",
            ]
        )
        try:
            listed = json.loads(out or "[]")
        except json.JSONDecodeError as err:
            raise HelmException(f"Unable to parse helm list output: {err}") from err
        for entry in listed:
            if entry.get("name") != identity.name:
                continue
            if entry.get("status") == STATUS_UNINSTALLED:
                continue
            chart_name, chart_version = _split_chart(entry.get("chart", ""))
            return DeployedRelease(
                name=entry["name"],
                namespace=entry.get("namespace", identity.namespace),
                chart_name=chart_name,
                chart_version=chart_version,
                revision=int(entry.get("revision", 0)),
                status=entry.get("status", ""),
            )
        return None

    async def _history(self, identity: ReleaseIdentity) -> list[dict[str, Any]]:
        out = await self._helm(
            [
                "history",
                identity.name,
                "--namespace",
                self._namespace(identity),
                "--output",
                "json",
            ]
        )
        try:
            return json.loads(out or "[]")
        except json.JSONDecodeError as err:
            raise HelmException(f"Unable to parse helm history output: {err}") from err

    async def _write_values(self, request: ActionRequest) -> Path:
        values_path = self._tmp_dir / f"{request.identity.name}-values.yaml"
        async with aiofiles.open(values_path, mode="w") as values_file:
            await values_file.write(yaml.dump(request.values, sort_keys=False))
        return values_path

    async def _args(self, request: ActionRequest) -> list[str]:
        """Build the helm arguments of the requested action."""
        identity = request.identity
        namespace = self._namespace(identity)
        args: list[str]
        if request.action in (ReleaseAction.INSTALL, ReleaseAction.UPGRADE):
            if request.chart is None:
                raise ActionFailedError(
                    identity.owner, str(request.action), "no chart to deploy"
                )
            args = [
                str(request.action),
                identity.name,
                str(request.chart.path),
                "--values",
                str(await self._write_values(request)),
            ]
            if request.config_digest:
                args.extend(["--description", request.config_digest])
            if request.action == ReleaseAction.INSTALL and request.create_namespace:
                args.append("--create-namespace")
        elif request.action == ReleaseAction.TEST:
            args = ["test", identity.name]
        elif request.action == ReleaseAction.ROLLBACK:
            revision = await self._rollback_revision(request)
            args = ["rollback", identity.name, str(revision)]
        else:
            args = ["uninstall", identity.name]
            if request.keep_history:
                args.append("--keep-history")
        args.extend(["--namespace", namespace, "--timeout", _timeout_arg(request)])
        if request.wait and request.action != ReleaseAction.TEST:
            args.append("--wait")
        return args

    async def _rollback_revision(self, request: ActionRequest) -> int:
        """Find the helm revision that deployed the rollback target."""
        if (target := request.target) is None:
            raise ActionFailedError(
                request.identity.owner, str(request.action), "no rollback target"
            )
        chart = f"{target.chart_name}-{target.chart_version}"
        history = await self._history(request.identity)
        for entry in reversed(history[:-1]):
            if entry.get("chart") != chart:
                continue
            if entry.get("status") not in _ROLLBACK_STATUSES:
                continue
            description = entry.get("description")
            if description and description.startswith("sha256:"):
                if description != target.config_digest:
                    continue
            return int(entry["revision"])
        raise ActionFailedError(
            request.identity.owner,
            str(request.action),
            f"no earlier helm revision of {request.identity} deployed chart {chart}",
        )

    async def run(self, request: ActionRequest) -> DeployedRelease | None:
        """Perform the action, returning the release afterwards."""
        buffer = LogBuffer(_LOGGER.debug, self._log_size)
        args = await self._args(request)
        buffer.log("helm %s", " ".join(args))
        try:
            out = await self._helm(
                args, timeout=request.timeout.total_seconds() + _COMMAND_GRACE
            )
        except HelmException as err:
            raise _classify(request, err, buffer) from err
        for line in out.splitlines():
            if line.strip():
                buffer.log("%s", line.strip())
        _LOGGER.info("helm %s of %s succeeded", request.action, request.identity)
        if request.action == ReleaseAction.UNINSTALL:
            return None
        if (deployed := await self.get(request.identity)) is None:
            raise ReleaseNotFoundError(
                f"release {request.identity} not listed after {request.action}"
            )
        return deployed
