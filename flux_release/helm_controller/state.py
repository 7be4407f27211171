"""States of a release and how the next one is derived.

The state is never stored. It is computed at the start of every
reconciliation from the persisted status, the history and what the backend
reports as deployed, so it cannot diverge from the data it describes.
"""

from dataclasses import dataclass
from enum import StrEnum

from flux_release.backend import DeployedRelease
from flux_release.manifest import (
    Attempt,
    HelmRelease,
    ReleaseAction,
    ReleaseStatus,
    RollbackTarget,
    Snapshot,
)

from .history import DEPLOY_ACTIONS, ReleaseHistory
from .policy import (
    RemediationKind,
    RemediationPolicy,
    failure_count,
    select_rollback_target,
)

__all__ = [
    "ReleaseState",
    "NextStep",
    "derive_state",
    "counted_action",
]

BACKEND_DEPLOYED = "deployed"

REMEDIATION_ACTIONS = (ReleaseAction.ROLLBACK, ReleaseAction.UNINSTALL)


class ReleaseState(StrEnum):
    """State of the release lifecycle."""

    IDLE = "Idle"
    AWAITING_DEPENDENCIES = "AwaitingDependencies"
    INSTALLING = "Installing"
    UPGRADING = "Upgrading"
    TESTING = "Testing"
    ROLLING_BACK = "RollingBack"
    UNINSTALLING = "Uninstalling"
    READY = "Ready"
    STALLED = "Stalled"


_STATE_ACTIONS = {
    ReleaseState.INSTALLING: ReleaseAction.INSTALL,
    ReleaseState.UPGRADING: ReleaseAction.UPGRADE,
    ReleaseState.TESTING: ReleaseAction.TEST,
    ReleaseState.ROLLING_BACK: ReleaseAction.ROLLBACK,
    ReleaseState.UNINSTALLING: ReleaseAction.UNINSTALL,
}

_REMEDIATION_STATES = {
    RemediationKind.ROLLBACK: ReleaseState.ROLLING_BACK,
    RemediationKind.UNINSTALL: ReleaseState.UNINSTALLING,
    RemediationKind.STALL: ReleaseState.STALLED,
}


@dataclass(frozen=True)
class NextStep:
    """The state a release is in and why."""

    state: ReleaseState
    reason: str
    rollback_to: Attempt | None = None
    """Attempt to return to when rolling back."""

    @property
    def action(self) -> ReleaseAction | None:
        """Backend action performed in this state, if any."""
        return _STATE_ACTIONS.get(self.state)


def counted_action(history: ReleaseHistory) -> ReleaseAction:
    """Return the install or upgrade the latest failure counts against.

    A failed test counts against the deployment it was testing.
    """
    if (deploy := history.latest_deploy()) is not None:
        return deploy.action
    return ReleaseAction.UPGRADE


def _after_remediation(
    last: Attempt,
    history: ReleaseHistory,
    revision: str,
    config_digest: str,
    installed: bool,
    rollback_target: RollbackTarget,
    current: Snapshot | None,
) -> NextStep:
    """Continue a remediation, or stay put once it completed."""
    if last.action == ReleaseAction.ROLLBACK:
        if last.succeeded:
            if not installed:
                return NextStep(ReleaseState.IDLE, "release removed after rollback")
            return NextStep(
                ReleaseState.READY,
                f"remediated by rolling back to {last.revision}",
            )
        if not installed:
            return NextStep(
                ReleaseState.STALLED, "rollback failed, nothing installed"
            )
        if (
            attempt := select_rollback_target(
                history, revision, config_digest, rollback_target, current
            )
        ) is None:
            return NextStep(
                ReleaseState.STALLED, "rollback failed, no rollback target"
            )
        return NextStep(
            ReleaseState.ROLLING_BACK,
            f"retrying rollback to {attempt.revision}",
            rollback_to=attempt,
        )
    if last.succeeded or not installed:
        return NextStep(ReleaseState.IDLE, "remediated by uninstalling")
    return NextStep(ReleaseState.UNINSTALLING, "retrying uninstall")


def derive_state(
    release: HelmRelease,
    status: ReleaseStatus,
    history: ReleaseHistory,
    revision: str,
    config_digest: str,
    deployed: DeployedRelease | None,
    reset: bool,
    rollback_target: RollbackTarget = RollbackTarget.LAST_SUCCESSFUL,
) -> NextStep:
    """Return the state of the release for the desired revision and digest.

    `deployed` is what the backend reports for the release and `reset` tells
    whether the desired state differs from the last attempted one, in which
    case earlier attempts no longer count.
    """
    installed = deployed is not None
    last = None if reset else history.latest()
    if last is not None and last.action in REMEDIATION_ACTIONS:
        return _after_remediation(
            last,
            history,
            revision,
            config_digest,
            installed,
            rollback_target,
            status.current_deployment,
        )
    if (
        last is not None
        and not last.succeeded
        and last.matches(revision, config_digest)
        and not (last.action == ReleaseAction.TEST and release.test.ignore_failures)
    ):
        action = counted_action(history)
        policy = RemediationPolicy(release.remediation_for(action), rollback_target)
        decision = policy.decide(
            action,
            failure_count(status, action),
            installed,
            history,
            revision,
            config_digest,
            status.current_deployment,
        )
        if decision.kind != RemediationKind.RETRY:
            return NextStep(
                _REMEDIATION_STATES[decision.kind],
                decision.reason,
                rollback_to=decision.rollback_to,
            )
        if installed:
            return NextStep(ReleaseState.UPGRADING, decision.reason)
        return NextStep(ReleaseState.INSTALLING, decision.reason)

    if deployed is None:
        return NextStep(ReleaseState.INSTALLING, "no release installed")
    current = status.current_deployment
    if (
        current is None
        or current.chart_version != revision
        or current.config_digest != config_digest
    ):
        return NextStep(ReleaseState.UPGRADING, f"upgrading to {revision}")
    if deployed.status != BACKEND_DEPLOYED:
        return NextStep(
            ReleaseState.UPGRADING, f"release is {deployed.status}, upgrading"
        )
    if (
        release.test.enable
        and last is not None
        and last.succeeded
        and last.action in DEPLOY_ACTIONS
        and last.matches(revision, config_digest)
    ):
        return NextStep(ReleaseState.TESTING, f"testing {revision}")
    return NextStep(ReleaseState.READY, f"release {revision} is deployed")
