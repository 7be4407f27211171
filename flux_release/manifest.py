"""Representation of a HelmRelease resource and its persisted status.

The HelmRelease is parsed from the same documents Flux users write, and the
status is serialized with the camelCase field names other tools (dashboards,
CLIs) read from the resource.
"""

import datetime
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from pathlib import Path
import re
from typing import Any, ClassVar, Optional

import aiofiles
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.exceptions import MissingField

from .exceptions import InputException

__all__ = [
    "read_status",
    "write_status",
    "parse_duration",
    "NamedResource",
    "HelmChart",
    "HelmRelease",
    "ValuesReference",
    "DependencyReference",
    "Remediation",
    "RemediationStrategy",
    "RollbackTarget",
    "ReleaseAction",
    "AttemptOutcome",
    "Attempt",
    "Snapshot",
    "Condition",
    "ReleaseStatus",
    "ConfigMap",
    "Secret",
    "parse_raw_obj",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
HELM_RELEASE_DOMAIN = "helm.toolkit.fluxcd.io"
HELM_RELEASE = "HelmRelease"
HELM_REPO_KIND = "HelmRepository"
HELM_CHART = "HelmChart"
SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"
DEFAULT_NAMESPACE = "flux-system"
DEFAULT_INTERVAL = "10m"
DEFAULT_TIMEOUT = "5m"

READY_CONDITION = "Ready"
STALLED_CONDITION = "Stalled"
RECONCILING_CONDITION = "Reconciling"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}


def parse_duration(value: str) -> datetime.timedelta:
    """Parse a duration string such as `1h30m` or `45s`."""
    value = value.strip()
    if not value:
        raise InputException("Invalid empty duration")
    pos = 0
    seconds = 0.0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise InputException(f"Invalid duration '{value}'")
    return datetime.timedelta(seconds=seconds)


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class HelmChart(BaseManifest):
    """A representation of an instantiation of a chart for a HelmRelease."""

    kind: ClassVar[str] = HELM_CHART
    """The kind of the object."""

    name: str
    """The name of the chart within the source."""

    version: Optional[str]
    """The version (or semver range) of the chart."""

    repo_name: str
    """The short name of the source."""

    repo_namespace: str
    """The namespace of the source."""

    repo_kind: str = HELM_REPO_KIND
    """The kind of the sourceRef (e.g. HelmRepository, GitRepository)."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any], default_namespace: str) -> "HelmChart":
        """Parse a HelmChart from a HelmRelease resource object."""
        _check_version(doc, HELM_RELEASE_DOMAIN)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        chart_ref = spec.get("chartRef")
        chart = spec.get("chart")
        if not chart_ref and not chart:
            raise InputException(
                f"Invalid {cls} missing spec.chart or spec.chartRef: {doc}"
            )
        if chart_ref:
            if not (kind := chart_ref.get("kind")):
                raise InputException(f"Invalid {cls} missing spec.chartRef.kind: {doc}")
            if not (name := chart_ref.get("name")):
                raise InputException(f"Invalid {cls} missing spec.chartRef.name: {doc}")
            return cls(
                name=name,
                version=None,
                repo_name=name,
                repo_namespace=chart_ref.get("namespace", default_namespace),
                repo_kind=kind,
            )
        if not (chart_spec := chart.get("spec")):
            raise InputException(f"Invalid {cls} missing spec.chart.spec: {doc}")
        if not (chart_name := chart_spec.get("chart")):
            raise InputException(f"Invalid {cls} missing spec.chart.spec.chart: {doc}")
        if not (source_ref := chart_spec.get("sourceRef")):
            raise InputException(
                f"Invalid {cls} missing spec.chart.spec.sourceRef: {doc}"
            )
        if "name" not in source_ref:
            raise InputException(f"Invalid {cls} missing sourceRef fields: {doc}")
        return cls(
            name=chart_name,
            version=chart_spec.get("version"),
            repo_name=source_ref["name"],
            repo_namespace=source_ref.get("namespace", default_namespace),
            repo_kind=source_ref.get("kind", HELM_REPO_KIND),
        )

    @property
    def repo_full_name(self) -> str:
        """Identifier for the chart source."""
        return f"{self.repo_namespace}-{self.repo_name}"

    @property
    def chart_name(self) -> str:
        """Identifier for the HelmChart."""
        return f"{self.repo_full_name}/{self.name}"


@dataclass
class ValuesReference(BaseManifest):
    """A reference to a resource containing values for a HelmRelease."""

    kind: str
    """The kind of resource."""

    name: str
    """The name of the resource."""

    values_key: str = field(
        metadata=field_options(alias="valuesKey"), default="values.yaml"
    )
    """The key in the resource that contains the values."""

    target_path: Optional[str] = field(
        metadata=field_options(alias="targetPath"), default=None
    )
    """The path in the HelmRelease values to store the values."""

    optional: bool = False
    """Whether the reference is optional."""


@dataclass
class DependencyReference(BaseManifest):
    """A reference to another HelmRelease that must be ready first."""

    name: str
    namespace: Optional[str] = None


class RemediationStrategy(StrEnum):
    """Corrective action taken once the retries of an action are exhausted."""

    ROLLBACK = "rollback"
    UNINSTALL = "uninstall"
    NONE = "none"


class RollbackTarget(StrEnum):
    """Which earlier successful deployment a rollback returns to."""

    LAST_SUCCESSFUL = "last-successful"
    """The most recent successful deployment of another revision."""

    OLDEST_SUCCESSFUL = "oldest-successful"
    """The oldest successful deployment still retained in the history."""


@dataclass
class Remediation(BaseManifest):
    """Failure budget and remediation strategy of an install or upgrade."""

    retries: int = 0
    """Failure count at which retrying stops and remediation starts.

    Zero remediates on the first failure, a negative value retries forever.
    """

    strategy: RemediationStrategy = RemediationStrategy.NONE

    def exhausted(self, failures: int) -> bool:
        """Return True when the failure count has used up the retries."""
        if self.retries < 0:
            return False
        return failures >= self.retries


@dataclass
class InstallPolicy(BaseManifest):
    """Configuration of the install action."""

    remediation: Remediation = field(
        default_factory=lambda: Remediation(strategy=RemediationStrategy.UNINSTALL)
    )
    create_namespace: bool = field(
        metadata=field_options(alias="createNamespace"), default=False
    )
    disable_wait: bool = field(
        metadata=field_options(alias="disableWait"), default=False
    )
    timeout: Optional[str] = None


@dataclass
class UpgradePolicy(BaseManifest):
    """Configuration of the upgrade action."""

    remediation: Remediation = field(
        default_factory=lambda: Remediation(strategy=RemediationStrategy.ROLLBACK)
    )
    disable_wait: bool = field(
        metadata=field_options(alias="disableWait"), default=False
    )
    timeout: Optional[str] = None


@dataclass
class TestPolicy(BaseManifest):
    """Configuration of the post install/upgrade test action."""

    __test__ = False

    enable: bool = False
    ignore_failures: bool = field(
        metadata=field_options(alias="ignoreFailures"), default=False
    )
    timeout: Optional[str] = None


@dataclass
class RollbackPolicy(BaseManifest):
    """Configuration of the rollback action."""

    target: Optional[RollbackTarget] = None
    """Rollback target selection, the controller default when unset."""

    disable_wait: bool = field(
        metadata=field_options(alias="disableWait"), default=False
    )
    timeout: Optional[str] = None


@dataclass
class UninstallPolicy(BaseManifest):
    """Configuration of the uninstall action."""

    keep_history: bool = field(
        metadata=field_options(alias="keepHistory"), default=False
    )
    disable_wait: bool = field(
        metadata=field_options(alias="disableWait"), default=False
    )
    timeout: Optional[str] = None


class ReleaseAction(StrEnum):
    """A lifecycle action performed through the deployment backend."""

    INSTALL = "install"
    UPGRADE = "upgrade"
    TEST = "test"
    ROLLBACK = "rollback"
    UNINSTALL = "uninstall"


class AttemptOutcome(StrEnum):
    """Outcome of an Attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Attempt(BaseManifest):
    """One recorded execution of a release action."""

    revision: str
    """Chart version the action was performed with."""

    config_digest: str = field(metadata=field_options(alias="configDigest"))
    """Digest of the values the action was performed with."""

    action: ReleaseAction

    outcome: AttemptOutcome

    started: datetime.datetime

    finished: datetime.datetime

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCEEDED

    def matches(self, revision: str | None, config_digest: str | None) -> bool:
        """Return True if this attempt was for the given revision and digest."""
        return self.revision == revision and self.config_digest == config_digest


@dataclass
class Snapshot(BaseManifest):
    """The currently live deployed revision of a release."""

    name: str
    """Release name as deployed."""

    namespace: str
    """Namespace the release is deployed to."""

    chart_name: str = field(metadata=field_options(alias="chartName"))

    chart_version: str = field(metadata=field_options(alias="chartVersion"))

    config_digest: str = field(metadata=field_options(alias="configDigest"))

    deployed: datetime.datetime


@dataclass
class Condition(BaseManifest):
    """A rendered status condition of the resource."""

    type: str
    status: bool
    reason: str
    message: str = ""


@dataclass
class ReleaseStatus(BaseManifest):
    """Persisted status of a HelmRelease."""

    current_deployment: Optional[Snapshot] = field(
        metadata=field_options(alias="currentDeployment"), default=None
    )
    history: list[Attempt] = field(default_factory=list)
    """Attempts, oldest first."""

    install_failures: int = field(
        metadata=field_options(alias="installFailures"), default=0
    )
    upgrade_failures: int = field(
        metadata=field_options(alias="upgradeFailures"), default=0
    )
    failures: int = 0

    last_attempted_revision: Optional[str] = field(
        metadata=field_options(alias="lastAttemptedRevision"), default=None
    )
    last_attempted_config_digest: Optional[str] = field(
        metadata=field_options(alias="lastAttemptedConfigDigest"), default=None
    )
    storage_namespace: Optional[str] = field(
        metadata=field_options(alias="storageNamespace"), default=None
    )
    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=0
    )
    conditions: list[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the given type, if present."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def is_ready(self) -> bool:
        """Return True if the Ready condition is true."""
        return bool(
            (condition := self.get_condition(READY_CONDITION)) and condition.status
        )


@dataclass
class HelmRelease(BaseManifest):
    """A representation of a Flux HelmRelease."""

    kind: ClassVar[str] = HELM_RELEASE
    """The kind of the object."""

    name: str
    """The name of the HelmRelease."""

    namespace: str
    """The namespace that owns the HelmRelease."""

    chart: HelmChart
    """A mapping to a specific helm chart for this HelmRelease."""

    generation: int = 1
    """Generation of the spec, incremented on every spec change."""

    interval: str = DEFAULT_INTERVAL
    """Interval at which the release is reconciled when nothing changes."""

    timeout: str = DEFAULT_TIMEOUT
    """Default timeout of each backend action."""

    spec_release_name: Optional[str] = None
    """Explicit name of the release in the backend."""

    target_namespace: Optional[str] = None
    """The namespace to target when performing the operation."""

    spec_storage_namespace: Optional[str] = None
    """Explicit namespace the backend keeps its release records in."""

    values: Optional[dict[str, Any]] = None
    """The values to install in the chart."""

    values_from: Optional[list[ValuesReference]] = None
    """A list of values to reference from an ConfigMap or Secret."""

    depends_on: list[DependencyReference] = field(default_factory=list)
    """HelmReleases that must be ready before this one is reconciled."""

    suspend: bool = False

    deleted: bool = False
    """True once the resource carries a deletion timestamp."""

    install: InstallPolicy = field(default_factory=InstallPolicy)
    upgrade: UpgradePolicy = field(default_factory=UpgradePolicy)
    test: TestPolicy = field(default_factory=TestPolicy)
    rollback: RollbackPolicy = field(default_factory=RollbackPolicy)
    uninstall: UninstallPolicy = field(default_factory=UninstallPolicy)

    labels: Optional[dict[str, str]] = None
    """A list of labels on the HelmRelease."""

    status: ReleaseStatus = field(default_factory=ReleaseStatus)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmRelease":
        """Parse a HelmRelease from a kubernetes resource object."""
        _check_version(doc, HELM_RELEASE_DOMAIN)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
        chart = HelmChart.parse_doc(doc, namespace)
        spec = doc["spec"]
        try:
            values_from: list[ValuesReference] | None = None
            if values_from_dict := spec.get("valuesFrom"):
                values_from = [
                    ValuesReference.from_dict(subdoc) for subdoc in values_from_dict
                ]
            release = HelmRelease(
                name=name,
                namespace=namespace,
                chart=chart,
                generation=metadata.get("generation", 1),
                interval=spec.get("interval", DEFAULT_INTERVAL),
                timeout=spec.get("timeout", DEFAULT_TIMEOUT),
                spec_release_name=spec.get("releaseName"),
                target_namespace=spec.get("targetNamespace"),
                spec_storage_namespace=spec.get("storageNamespace"),
                values=spec.get("values"),
                values_from=values_from,
                depends_on=[
                    DependencyReference.from_dict(dep)
                    for dep in spec.get("dependsOn") or ()
                ],
                suspend=spec.get("suspend", False),
                deleted=metadata.get("deletionTimestamp") is not None,
                install=InstallPolicy.from_dict(spec.get("install") or {}),
                upgrade=UpgradePolicy.from_dict(spec.get("upgrade") or {}),
                test=TestPolicy.from_dict(spec.get("test") or {}),
                rollback=RollbackPolicy.from_dict(spec.get("rollback") or {}),
                uninstall=UninstallPolicy.from_dict(spec.get("uninstall") or {}),
                labels=metadata.get("labels"),
                status=ReleaseStatus.from_dict(doc.get("status") or {}),
            )
        except (ValueError, MissingField) as err:
            raise InputException(f"Invalid {cls} {namespace}/{name}: {err}") from err
        # Fail early on durations that would otherwise only break mid-action
        for duration in (release.interval, release.timeout):
            parse_duration(duration)
        return release

    @property
    def release_name(self) -> str:
        """Name of the release in the deployment backend."""
        if self.spec_release_name:
            return self.spec_release_name
        if self.target_namespace:
            return f"{self.target_namespace}-{self.name}"
        return self.name

    @property
    def release_namespace(self) -> str:
        """Actual namespace where the HelmRelease will be installed to."""
        if self.target_namespace:
            return self.target_namespace
        return self.namespace

    @property
    def storage_namespace(self) -> str:
        """Namespace the backend persists its release records in."""
        if self.spec_storage_namespace:
            return self.spec_storage_namespace
        return self.namespace

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"

    @property
    def resource_id(self) -> NamedResource:
        """Identifier of this HelmRelease in the store."""
        return NamedResource(
            kind=HELM_RELEASE, namespace=self.namespace, name=self.name
        )

    @property
    def requeue_interval(self) -> datetime.timedelta:
        return parse_duration(self.interval)

    def action_timeout(self, action: ReleaseAction) -> datetime.timedelta:
        """Return the timeout for a backend action."""
        timeouts = {
            ReleaseAction.INSTALL: self.install.timeout,
            ReleaseAction.UPGRADE: self.upgrade.timeout,
            ReleaseAction.TEST: self.test.timeout,
            ReleaseAction.ROLLBACK: self.rollback.timeout,
            ReleaseAction.UNINSTALL: self.uninstall.timeout,
        }
        return parse_duration(timeouts[action] or self.timeout)

    def remediation_for(self, action: ReleaseAction) -> Remediation:
        """Return the remediation configuration for an install or upgrade."""
        if action == ReleaseAction.INSTALL:
            return self.install.remediation
        return self.upgrade.remediation


@dataclass
class ConfigMap(BaseManifest):
    """A ConfigMap is an API object used to store data in key-value pairs."""

    kind: ClassVar[str] = CONFIG_MAP_KIND
    """The kind of the ConfigMap."""

    name: str
    """The name of the ConfigMap."""

    namespace: str | None = None
    """The namespace of the ConfigMap."""

    data: dict[str, Any] | None = field(metadata={"serialize": "omit"}, default=None)
    """The data in the ConfigMap."""

    binary_data: dict[str, Any] | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    """The binary data in the ConfigMap."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ConfigMap":
        """Parse a config map object from a kubernetes resource."""
        _check_version(doc, "v1")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        return ConfigMap(
            name=name,
            namespace=metadata.get("namespace"),
            data=doc.get("data"),
            binary_data=doc.get("binaryData"),
        )


@dataclass
class Secret(BaseManifest):
    """A Secret contains a small amount of sensitive data."""

    kind: ClassVar[str] = SECRET_KIND
    """The kind of the Secret."""

    name: str
    """The name of the Secret."""

    namespace: str | None = None
    """The namespace of the Secret."""

    data: dict[str, Any] | None = field(metadata={"serialize": "omit"}, default=None)
    """The base64 encoded data in the Secret."""

    string_data: dict[str, Any] | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    """The string data in the Secret."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Secret":
        """Parse a secret object from a kubernetes resource."""
        _check_version(doc, "v1")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        return Secret(
            name=name,
            namespace=metadata.get("namespace"),
            data=doc.get("data"),
            string_data=doc.get("stringData"),
        )


def parse_raw_obj(obj: dict[str, Any]) -> BaseManifest:
    """Parse a raw kubernetes object into one of the supported manifests."""
    kind = obj.get("kind")
    if kind == HELM_RELEASE:
        return HelmRelease.parse_doc(obj)
    if kind == CONFIG_MAP_KIND:
        return ConfigMap.parse_doc(obj)
    if kind == SECRET_KIND:
        return Secret.parse_doc(obj)
    raise InputException(f"Unsupported object kind {kind}: {obj}")


async def read_status(status_path: Path) -> ReleaseStatus:
    """Return the ReleaseStatus persisted in a yaml file."""
    try:
        async with aiofiles.open(str(status_path)) as status_file:
            content = await status_file.read()
    except OSError as err:
        raise InputException(
            f"Unable to read status file {status_path}: {err}"
        ) from err
    if not content.strip():
        return ReleaseStatus()
    try:
        return yaml_decode(content, ReleaseStatus)
    except (ValueError, MissingField) as err:
        raise InputException(f"Invalid status file {status_path}: {err}") from err


async def write_status(status_path: Path, status: ReleaseStatus) -> None:
    """Write the ReleaseStatus to a yaml file."""
    content = status.yaml()
    async with aiofiles.open(str(status_path), mode="w") as status_file:
        await status_file.write(content)
