"""Flux-release history action."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import pathlib
from typing import Any, cast

from flux_release.manifest import ReleaseStatus, read_status

from .format import FORMATTERS


_LOGGER = logging.getLogger(__name__)


def history_rows(status: ReleaseStatus) -> list[dict[str, Any]]:
    """Return the attempts of a status, most recent first."""
    return [
        {
            "action": str(attempt.action),
            "outcome": str(attempt.outcome),
            "revision": attempt.revision,
            "digest": attempt.config_digest,
            "started": attempt.started.isoformat(),
            "finished": attempt.finished.isoformat(),
        }
        for attempt in reversed(status.history)
    ]


class HistoryAction:
    """Print the attempts recorded in a release status."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "history",
                help="Print the attempt history of a HelmRelease",
                description="Print the attempts recorded in a HelmRelease status file, most recent first.",
            ),
        )
        args.add_argument(
            "--status",
            type=pathlib.Path,
            required=True,
            help="Path of the yaml file holding the HelmRelease status",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=list(FORMATTERS),
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        status: pathlib.Path,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        release_status = await read_status(status)
        rows = history_rows(release_status)
        if not rows:
            _LOGGER.info("No attempts recorded in %s", status)
        formatter = FORMATTERS[output]()
        formatter.print(rows)
