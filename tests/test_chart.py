"""Tests for resolving charts from a local directory."""

import hashlib
import io
from pathlib import Path
import tarfile
from typing import Any

import pytest

from flux_release.chart import LocalChartResolver
from flux_release.exceptions import ChartException, ChartVerificationError
from flux_release.manifest import HelmChart, HelmRelease

CHART_YAML = "apiVersion: v2\nname: podinfo\nversion: {version}\nappVersion: 6.5.4\n"


def helm_release(version: str | None) -> HelmRelease:
    return HelmRelease(
        name="podinfo",
        namespace="podinfo",
        chart=HelmChart(
            name="podinfo",
            version=version,
            repo_name="podinfo",
            repo_namespace="flux-system",
        ),
    )


def write_archive(path: Path, files: dict[str, str]) -> bytes:
    """Write a gzipped chart archive and return its content."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    path.write_bytes(buf.getvalue())
    return buf.getvalue()


@pytest.fixture(name="charts_dir")
def charts_dir_fixture(tmp_path: Path) -> Path:
    """Create a directory with an unpacked chart."""
    chart_dir = tmp_path / "podinfo"
    chart_dir.mkdir()
    (chart_dir / "Chart.yaml").write_text(CHART_YAML.format(version="6.5.4"))
    return tmp_path


async def test_chart_directory(charts_dir: Path) -> None:
    """Test resolving an unpacked chart directory."""
    resolver = LocalChartResolver(charts_dir)
    for version in ("6.5.4", None):
        chart = await resolver.resolve(helm_release(version))
        assert chart.name == "podinfo"
        assert chart.version == "6.5.4"
        assert chart.app_version == "6.5.4"
        assert chart.path == charts_dir / "podinfo"
        assert chart.digest is None


async def test_chart_directory_version_mismatch(charts_dir: Path) -> None:
    """Test a chart directory with another version than requested."""
    resolver = LocalChartResolver(charts_dir)
    with pytest.raises(ChartException, match="has version 6.5.4"):
        await resolver.resolve(helm_release("6.5.3"))


async def test_chart_archive(charts_dir: Path) -> None:
    """Test a packaged archive is preferred over the chart directory."""
    archive = charts_dir / "podinfo-6.5.3.tgz"
    content = write_archive(
        archive,
        {
            "podinfo/Chart.yaml": CHART_YAML.format(version="6.5.3"),
            "podinfo/templates/deployment.yaml": "kind: Deployment\n",
        },
    )

    chart = await LocalChartResolver(charts_dir).resolve(helm_release("6.5.3"))
    assert chart.version == "6.5.3"
    assert chart.path == archive
    assert chart.digest == f"sha256:{hashlib.sha256(content).hexdigest()}"


@pytest.mark.parametrize("prefix", ["", "sha256:"])
async def test_chart_archive_verified(charts_dir: Path, prefix: str) -> None:
    """Test an archive matching its digest file."""
    archive = charts_dir / "podinfo-6.5.3.tgz"
    content = write_archive(
        archive, {"podinfo/Chart.yaml": CHART_YAML.format(version="6.5.3")}
    )
    digest = hashlib.sha256(content).hexdigest()
    (charts_dir / "podinfo-6.5.3.tgz.sha256").write_text(
        f"{prefix}{digest}  podinfo-6.5.3.tgz\n"
    )

    chart = await LocalChartResolver(charts_dir).resolve(helm_release("6.5.3"))
    assert chart.digest == f"sha256:{digest}"


@pytest.mark.parametrize(
    ("digest_content", "match"),
    [
        ("0" * 64, "does not match"),
        ("", "is empty"),
    ],
)
async def test_chart_archive_verification_failed(
    charts_dir: Path, digest_content: str, match: str
) -> None:
    """Test an archive that does not match its digest file."""
    write_archive(
        charts_dir / "podinfo-6.5.3.tgz",
        {"podinfo/Chart.yaml": CHART_YAML.format(version="6.5.3")},
    )
    (charts_dir / "podinfo-6.5.3.tgz.sha256").write_text(digest_content)

    with pytest.raises(ChartVerificationError, match=match):
        await LocalChartResolver(charts_dir).resolve(helm_release("6.5.3"))


@pytest.mark.parametrize(
    ("files", "match"),
    [
        ({"podinfo/values.yaml": "{}"}, "has no Chart.yaml"),
        ({"podinfo/Chart.yaml": "name: podinfo\n"}, "missing name or version"),
        ({"podinfo/Chart.yaml": "- podinfo\n"}, "Invalid chart metadata"),
        ({"Chart.yaml": CHART_YAML.format(version="6.5.3")}, "has no Chart.yaml"),
    ],
)
async def test_invalid_archive(
    charts_dir: Path, files: dict[str, Any], match: str
) -> None:
    """Test archives without usable chart metadata."""
    write_archive(charts_dir / "podinfo-6.5.3.tgz", files)
    with pytest.raises(ChartException, match=match):
        await LocalChartResolver(charts_dir).resolve(helm_release("6.5.3"))


async def test_corrupt_archive(charts_dir: Path) -> None:
    """Test an archive that is not a gzipped tarball."""
    (charts_dir / "podinfo-6.5.3.tgz").write_bytes(b"not an archive")
    with pytest.raises(ChartException, match="Unable to read chart archive"):
        await LocalChartResolver(charts_dir).resolve(helm_release("6.5.3"))


async def test_chart_not_found(tmp_path: Path) -> None:
    """Test a chart missing from the directory."""
    with pytest.raises(ChartException, match="Unable to find chart"):
        await LocalChartResolver(tmp_path).resolve(helm_release("6.5.4"))


async def test_chart_directory_without_metadata(tmp_path: Path) -> None:
    """Test a chart directory without Chart.yaml."""
    (tmp_path / "podinfo").mkdir()
    with pytest.raises(ChartException, match="has no Chart.yaml"):
        await LocalChartResolver(tmp_path).resolve(helm_release(None))
