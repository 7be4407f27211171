"""Failure counter and remediation policies.

Failure budgets are kept per desired state: the counters restart from zero
whenever a different chart version or values digest is attempted, and keep
accumulating while the same desired state keeps failing. Once the budget of
an install or upgrade is used up, the configured remediation strategy decides
what happens next.
"""

from dataclasses import dataclass
from enum import StrEnum

from flux_release.manifest import (
    Attempt,
    AttemptOutcome,
    ReleaseAction,
    ReleaseStatus,
    Remediation,
    RemediationStrategy,
    RollbackTarget,
    Snapshot,
)

from .history import ReleaseHistory

__all__ = [
    "must_reset_failures",
    "reset_failures",
    "record_failure",
    "select_rollback_target",
    "RemediationKind",
    "RemediationDecision",
    "RemediationPolicy",
]


def must_reset_failures(
    status: ReleaseStatus, revision: str, config_digest: str
) -> bool:
    """Return True when the desired state differs from the last attempted one."""
    return (
        status.last_attempted_revision != revision
        or status.last_attempted_config_digest != config_digest
    )


def reset_failures(status: ReleaseStatus) -> None:
    """Zero all failure counters."""
    status.install_failures = 0
    status.upgrade_failures = 0
    status.failures = 0


def record_failure(status: ReleaseStatus, action: ReleaseAction) -> None:
    """Count a failed action.

    Every failure counts towards the total, only install and upgrade failures
    count towards the budget of the action.
    """
    status.failures += 1
    if action == ReleaseAction.INSTALL:
        status.install_failures += 1
    elif action == ReleaseAction.UPGRADE:
        status.upgrade_failures += 1


def failure_count(status: ReleaseStatus, action: ReleaseAction) -> int:
    """Return the budget counter of an install or upgrade."""
    if action == ReleaseAction.INSTALL:
        return status.install_failures
    return status.upgrade_failures


def _deployed_attempt(
    current: Snapshot | None, revision: str, config_digest: str
) -> Attempt | None:
    """Return the live deployment as an attempt, unless it is the desired state."""
    if current is None or (
        current.chart_version == revision and current.config_digest == config_digest
    ):
        return None
    return Attempt(
        revision=current.chart_version,
        config_digest=current.config_digest,
        action=ReleaseAction.UPGRADE,
        outcome=AttemptOutcome.SUCCEEDED,
        started=current.deployed,
        finished=current.deployed,
    )


def select_rollback_target(
    history: ReleaseHistory,
    revision: str,
    config_digest: str,
    target: RollbackTarget = RollbackTarget.LAST_SUCCESSFUL,
    current: Snapshot | None = None,
) -> Attempt | None:
    """Return the successful attempt a rollback should return to.

    Candidates are the successful deployments in the history of a state
    other than the desired one, which is the state being remediated. When
    the history no longer holds one, the live deployment is used instead.
    """
    candidates = [
        attempt
        for attempt in history.successful_deploys()
        if not attempt.matches(revision, config_digest)
    ]
    if not candidates:
        return _deployed_attempt(current, revision, config_digest)
    if target == RollbackTarget.OLDEST_SUCCESSFUL:
        return candidates[0]
    return candidates[-1]


class RemediationKind(StrEnum):
    """Next step after a failed install, upgrade or test."""

    RETRY = "retry"
    ROLLBACK = "rollback"
    UNINSTALL = "uninstall"
    STALL = "stall"


@dataclass(frozen=True)
class RemediationDecision:
    """Outcome of the remediation policy."""

    kind: RemediationKind
    reason: str
    rollback_to: Attempt | None = None


class RemediationPolicy:
    """Decides how to continue after an install, upgrade or test failed."""

    def __init__(
        self,
        remediation: Remediation,
        rollback_target: RollbackTarget = RollbackTarget.LAST_SUCCESSFUL,
    ) -> None:
        """Initialize RemediationPolicy."""
        self._remediation = remediation
        self._rollback_target = rollback_target

    def decide(
        self,
        action: ReleaseAction,
        failures: int,
        installed: bool,
        history: ReleaseHistory,
        revision: str,
        config_digest: str,
        current: Snapshot | None = None,
    ) -> RemediationDecision:
        """Return the next step given the failure count of the action."""
        if not self._remediation.exhausted(failures):
            return RemediationDecision(
                RemediationKind.RETRY,
                f"{action} failed {failures} time(s), retrying",
            )
        exhausted = f"{action} retries exhausted after {failures} failure(s)"
        strategy = self._remediation.strategy
        if strategy == RemediationStrategy.ROLLBACK:
            if not installed:
                return RemediationDecision(
                    RemediationKind.STALL, f"{exhausted}, nothing to roll back"
                )
            if (
                attempt := select_rollback_target(
                    history,
                    revision,
                    config_digest,
                    self._rollback_target,
                    current,
                )
            ) is None:
                return RemediationDecision(
                    RemediationKind.STALL, f"{exhausted}, no rollback target"
                )
            return RemediationDecision(
                RemediationKind.ROLLBACK,
                f"{exhausted}, rolling back to {attempt.revision}",
                rollback_to=attempt,
            )
        if strategy == RemediationStrategy.UNINSTALL:
            if not installed:
                return RemediationDecision(
                    RemediationKind.STALL, f"{exhausted}, nothing to uninstall"
                )
            return RemediationDecision(
                RemediationKind.UNINSTALL, f"{exhausted}, uninstalling"
            )
        return RemediationDecision(RemediationKind.STALL, exhausted)
