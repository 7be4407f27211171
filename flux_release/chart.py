"""Resolution of the chart a HelmRelease deploys.

Charts are resolved by a `ChartResolver`. The resolver shipped here reads
charts from a local directory, either as an unpacked chart directory or as a
packaged `<name>-<version>.tgz` archive. A packaged archive may be accompanied
by a `<archive>.sha256` file, in which case the archive content must match
that digest before the chart is used.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import io
import logging
from pathlib import Path
import tarfile
from typing import Any

import aiofiles
from aiofiles.ospath import exists, isdir
import yaml

from .digest import ALGORITHM, digest_bytes
from .exceptions import ChartException, ChartVerificationError
from .manifest import HelmRelease

__all__ = [
    "Chart",
    "ChartResolver",
    "LocalChartResolver",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
ARCHIVE_SUFFIX = ".tgz"
DIGEST_SUFFIX = f".{ALGORITHM}"


@dataclass(frozen=True, kw_only=True)
class Chart:
    """A loaded and verified chart."""

    name: str
    """Name from the chart metadata."""

    version: str
    """Version from the chart metadata."""

    path: Path
    """Location of the chart directory or archive passed to the backend."""

    app_version: str | None = None

    digest: str | None = None
    """Digest of the archive the chart was loaded from."""


class ChartResolver(ABC):
    """Resolves the chart referenced by a HelmRelease."""

    @abstractmethod
    async def resolve(self, release: HelmRelease) -> Chart:
        """Return the verified chart for the release.

        Errors are raised as `ChartException` and are not retried here.
        """


def _parse_metadata(content: str | bytes, source: str) -> dict[str, Any]:
    try:
        metadata = yaml.load(content, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise ChartException(f"Unable to parse {source}: {err}") from err
    if not isinstance(metadata, dict):
        raise ChartException(f"Invalid chart metadata in {source}")
    if not metadata.get("name") or not metadata.get("version"):
        raise ChartException(f"Chart metadata {source} missing name or version")
    return metadata


def _read_archive_metadata(content: bytes, source: str) -> dict[str, Any]:
    """Read Chart.yaml from the top level directory of a chart archive."""
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as archive:
            for member in archive.getmembers():
                parts = Path(member.name).parts
                if len(parts) == 2 and parts[1] == CHART_FILE and member.isfile():
                    if (chart_file := archive.extractfile(member)) is None:
                        break
                    return _parse_metadata(chart_file.read(), f"{source}:{member.name}")
    except tarfile.TarError as err:
        raise ChartException(f"Unable to read chart archive {source}: {err}") from err
    raise ChartException(f"Chart archive {source} has no {CHART_FILE}")


class LocalChartResolver(ChartResolver):
    """Resolves charts from a directory of chart sources."""

    def __init__(self, charts_dir: Path) -> None:
        """Initialize LocalChartResolver."""
        self._charts_dir = charts_dir

    async def resolve(self, release: HelmRelease) -> Chart:
        """Return the verified chart for the release."""
        name = release.chart.name
        version = release.chart.version
        if version:
            archive = self._charts_dir / f"{name}-{version}{ARCHIVE_SUFFIX}"
            if await exists(archive):
                return await self._load_archive(archive)
        chart_dir = self._charts_dir / name
        if await isdir(chart_dir):
            chart = await self._load_dir(chart_dir)
            if version and chart.version != version:
                raise ChartException(
                    f"Chart {chart_dir} has version {chart.version}, "
                    f"HelmRelease {release.namespaced_name} requires {version}"
                )
            return chart
        raise ChartException(
            f"Unable to find chart {release.chart.chart_name} for HelmRelease "
            f"{release.namespaced_name} in {self._charts_dir}"
        )

    async def _load_dir(self, chart_dir: Path) -> Chart:
        chart_file = chart_dir / CHART_FILE
        if not await exists(chart_file):
            raise ChartException(f"Chart directory {chart_dir} has no {CHART_FILE}")
        async with aiofiles.open(chart_file) as f:
            metadata = _parse_metadata(await f.read(), str(chart_file))
        _LOGGER.debug("Loaded chart %s from %s", metadata["name"], chart_dir)
        return Chart(
            name=metadata["name"],
            version=str(metadata["version"]),
            app_version=metadata.get("appVersion"),
            path=chart_dir,
        )

    async def _load_archive(self, archive: Path) -> Chart:
        async with aiofiles.open(archive, mode="rb") as f:
            content = await f.read()
        digest = digest_bytes(content)
        digest_file = archive.with_name(archive.name + DIGEST_SUFFIX)
        if await exists(digest_file):
            async with aiofiles.open(digest_file) as f:
                tokens = (await f.read()).split()
            if not tokens:
                raise ChartVerificationError(f"Digest file {digest_file} is empty")
            expected = tokens[0]
            if ":" not in expected:
                expected = f"{ALGORITHM}:{expected}"
            if expected != digest:
                raise ChartVerificationError(
                    f"Chart archive {archive} digest {digest} does not match "
                    f"expected {expected}"
                )
        metadata = _read_archive_metadata(content, str(archive))
        _LOGGER.debug("Loaded chart %s from %s (%s)", metadata["name"], archive, digest)
        return Chart(
            name=metadata["name"],
            version=str(metadata["version"]),
            app_version=metadata.get("appVersion"),
            path=archive,
            digest=digest,
        )
