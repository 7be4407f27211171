"""Test helpers for the helm controller."""

import datetime
from pathlib import Path
from typing import Any

from flux_release.backend import ReleaseIdentity
from flux_release.chart import Chart, ChartResolver
from flux_release.manifest import HelmChart, HelmRelease

START = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)

CHART_NAME = "podinfo"


class FakeClock:
    """Clock that advances one second every time it is read."""

    def __init__(self, start: datetime.datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=1)
        return self.now


def make_chart(version: str = "1.0.0", name: str = CHART_NAME) -> Chart:
    return Chart(name=name, version=version, path=Path(f"/charts/{name}-{version}.tgz"))


class FakeChartResolver(ChartResolver):
    """Resolves every release to the chart version it asks for."""

    def __init__(self, name: str = CHART_NAME) -> None:
        self.name = name
        self.resolved = 0

    async def resolve(self, release: HelmRelease) -> Chart:
        self.resolved += 1
        return make_chart(release.chart.version or "1.0.0", self.name)


def make_release(version: str = "1.0.0", **kwargs: Any) -> HelmRelease:
    """Return a podinfo HelmRelease, with fields overridden by kwargs."""
    fields: dict[str, Any] = {
        "name": "podinfo",
        "namespace": "podinfo",
        "chart": HelmChart(
            name=CHART_NAME,
            version=version,
            repo_name="podinfo",
            repo_namespace="podinfo",
        ),
    }
    fields.update(kwargs)
    return HelmRelease(**fields)


def identity_of(release: HelmRelease) -> ReleaseIdentity:
    return ReleaseIdentity(
        name=release.release_name,
        namespace=release.release_namespace,
        storage_namespace=release.storage_namespace,
        owner=release.namespaced_name,
    )
