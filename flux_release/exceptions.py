"""Exceptions related to flux-release."""

__all__ = [
    "FluxReleaseException",
    "InputException",
    "CommandException",
    "HelmException",
    "DependencyNotReadyError",
    "AccessDeniedError",
    "ChartException",
    "ChartVerificationError",
    "InvalidValuesReference",
    "ActionFailedError",
    "AmbiguousBackendError",
    "ReleaseExistsError",
    "ReleaseNotFoundError",
    "ConflictError",
    "ObjectNotFoundError",
    "AggregateError",
]


class FluxReleaseException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxReleaseException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(FluxReleaseException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class DependencyNotReadyError(FluxReleaseException):
    """Raised when a HelmRelease dependency is missing or not ready."""

    def __init__(self, release_id: str, dependency_id: str, reason: str) -> None:
        super().__init__(f"dependency '{dependency_id}' of {release_id} {reason}")
        self.release_id = release_id
        self.dependency_id = dependency_id
        self.reason = reason


class AccessDeniedError(FluxReleaseException):
    """Raised when a cross-namespace reference is refused.

    This is a terminal error: it can only be resolved by a change of the
    resource spec or the controller configuration.
    """


class ChartException(FluxReleaseException):
    """Raised when a chart could not be resolved or loaded."""


class ChartVerificationError(ChartException):
    """Raised when a chart artifact does not match the expected digest."""


class InvalidValuesReference(FluxReleaseException):
    """Exception raised for an unsupported or unresolvable ValuesReference."""


class ActionFailedError(FluxReleaseException):
    """Raised when a deployment backend action did not succeed."""

    def __init__(
        self, release_id: str, action: str, message: str, log: str | None = None
    ) -> None:
        detail = f"{action} of {release_id} failed: {message}"
        if log:
            detail = f"{detail}\n\nLast action log lines:\n{log}"
        super().__init__(detail)
        self.release_id = release_id
        self.action = action
        self.message = message
        self.log = log


class AmbiguousBackendError(FluxReleaseException):
    """Raised when the backend state contradicts the requested action.

    These are never interpreted by the engine. The next reconciliation
    observes the backend again before acting.
    """


class ReleaseExistsError(AmbiguousBackendError):
    """Raised when installing a release name that is already in use."""


class ReleaseNotFoundError(AmbiguousBackendError):
    """Raised when acting on a release the backend does not know about."""


class ConflictError(FluxReleaseException):
    """Raised when writing an object with a stale resource version."""


class ObjectNotFoundError(FluxReleaseException):
    """Raised when an object is not found in the store."""


class AggregateError(FluxReleaseException):
    """Raised when several errors happened during the same reconciliation."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__("; ".join(str(err) for err in errors))
        self.errors = errors


def aggregate(errors: list[Exception | None]) -> Exception | None:
    """Combine errors, returning None, the single error, or an AggregateError."""
    found = [err for err in errors if err is not None]
    if not found:
        return None
    if len(found) == 1:
        return found[0]
    return AggregateError(found)
