"""Bounded ledger of release attempts.

The history is append-only: attempts are finalized before they are added and
are never changed afterwards. Once the capacity is exceeded the oldest attempt
is evicted first.
"""

from collections import deque
from collections.abc import Iterable, Iterator

from flux_release.manifest import Attempt, ReleaseAction

__all__ = [
    "ReleaseHistory",
]

DEFAULT_LIMIT = 5

DEPLOY_ACTIONS = (ReleaseAction.INSTALL, ReleaseAction.UPGRADE)
_DEPLOYED_ACTIONS = (*DEPLOY_ACTIONS, ReleaseAction.ROLLBACK)


class ReleaseHistory:
    """Attempts of a release, oldest first."""

    def __init__(
        self, attempts: Iterable[Attempt] = (), limit: int = DEFAULT_LIMIT
    ) -> None:
        """Initialize ReleaseHistory with previously recorded attempts."""
        if limit < 1:
            raise ValueError(f"History limit must be positive, got {limit}")
        self._attempts: deque[Attempt] = deque(attempts, maxlen=limit)

    @property
    def limit(self) -> int:
        """Maximum number of attempts retained."""
        return self._attempts.maxlen or DEFAULT_LIMIT

    def append(self, attempt: Attempt) -> None:
        """Add a finalized attempt, evicting the oldest when full."""
        self._attempts.append(attempt)

    def latest(self) -> Attempt | None:
        """Return the most recent attempt."""
        return self._attempts[-1] if self._attempts else None

    def latest_deploy(self) -> Attempt | None:
        """Return the most recent install or upgrade attempt."""
        for attempt in reversed(self._attempts):
            if attempt.action in DEPLOY_ACTIONS:
                return attempt
        return None

    def successful_deploys(self) -> list[Attempt]:
        """Return the attempts that left a release deployed, oldest first."""
        return [
            attempt
            for attempt in self._attempts
            if attempt.succeeded and attempt.action in _DEPLOYED_ACTIONS
        ]

    def to_list(self) -> list[Attempt]:
        """Return the attempts as a list, oldest first."""
        return list(self._attempts)

    def __iter__(self) -> Iterator[Attempt]:
        return iter(self._attempts)

    def __len__(self) -> int:
        return len(self._attempts)
