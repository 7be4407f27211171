"""Deployment backends perform the release actions decided by the engine.

- `HelmCliBackend` runs the helm binary against a cluster.
- `InMemoryBackend` keeps releases in memory for dry runs and tests.
"""

from .backend import ActionRequest, DeployedRelease, DeploymentBackend, ReleaseIdentity
from .helm import HelmCliBackend
from .in_memory import InMemoryBackend
from .log_buffer import LogBuffer

__all__ = [
    "ActionRequest",
    "DeployedRelease",
    "DeploymentBackend",
    "ReleaseIdentity",
    "HelmCliBackend",
    "InMemoryBackend",
    "LogBuffer",
]
