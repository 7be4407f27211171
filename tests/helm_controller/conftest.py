"""Test fixtures for the helm controller."""

import pytest

from flux_release.backend import InMemoryBackend
from flux_release.helm_controller import AtomicReleaseEngine

from . import FakeClock


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    """Create a clock that advances on every reading."""
    return FakeClock()


@pytest.fixture(name="backend")
def backend_fixture(clock: FakeClock) -> InMemoryBackend:
    """Create an in-memory deployment backend."""
    return InMemoryBackend(now=clock)


@pytest.fixture(name="engine")
def engine_fixture(backend: InMemoryBackend, clock: FakeClock) -> AtomicReleaseEngine:
    """Create an engine performing actions against the in-memory backend."""
    return AtomicReleaseEngine(backend, now=clock)
