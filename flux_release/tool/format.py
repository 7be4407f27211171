"""Library for formatting command output."""

from abc import ABC, abstractmethod
from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

__all__ = [
    "Formatter",
    "PrintFormatter",
    "YamlFormatter",
    "JsonFormatter",
    "FORMATTERS",
]

PADDING = 4


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the header and rows padded to the widest value of each column."""
    if not headers:
        return
    data = [headers, *rows]
    widths = [max(len(row[i]) for row in data) for i in range(len(headers))]
    for row in data:
        yield "".join(
            value.ljust(width + PADDING) for value, width in zip(row, widths)
        ).rstrip()


class Formatter(ABC):
    """Renders a list of records."""

    @abstractmethod
    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Yield the output lines."""

    def print(
        self, data: list[dict[str, Any]], file: TextIO | None = None
    ) -> None:
        """Output the records, to stdout unless another file is given."""
        out = file or sys.stdout
        for line in self.format(data):
            print(line, file=out)


class PrintFormatter(Formatter):
    """Human readable columns, one record per line."""

    def __init__(self, keys: list[str] | None = None) -> None:
        """Initialize PrintFormatter with the keys to print, all by default."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Yield the output lines."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [
            ["" if row.get(key) is None else str(row[key]) for key in keys]
            for row in data
        ]
        yield from format_columns([key.upper() for key in keys], rows)


class YamlFormatter(Formatter):
    """Records as a yaml list."""

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Yield the output lines."""
        yield from yaml.dump(data, sort_keys=False, explicit_start=True).splitlines()


class JsonFormatter(Formatter):
    """Records as a json array."""

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Yield the output lines."""
        yield from json.dumps(data, indent=4, default=str).splitlines()


FORMATTERS: dict[str, type[Formatter]] = {
    "table": PrintFormatter,
    "yaml": YamlFormatter,
    "json": JsonFormatter,
}
