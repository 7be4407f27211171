"""The helm controller reconciles HelmRelease resources.

The AtomicReleaseEngine decides and performs the next lifecycle action of a
release. The HelmReleaseReconciler wraps it with everything around a single
reconciliation: dependencies, chart and values, and writing the status back.
"""

from .controller import HelmReleaseReconciler, ReconcileOutcome
from .engine import AtomicReleaseEngine, ReconcileResult, RequeueHint
from .history import ReleaseHistory
from .state import ReleaseState

__all__ = [
    "AtomicReleaseEngine",
    "HelmReleaseReconciler",
    "ReconcileOutcome",
    "ReconcileResult",
    "ReleaseHistory",
    "ReleaseState",
    "RequeueHint",
]
