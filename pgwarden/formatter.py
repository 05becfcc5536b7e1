# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - output formatters

A formatter is picked once per ``pgwarden-ctl`` invocation. The ``--key=value``
format is also the reply format of the remote command channel, so its output
must stay stable: one status token per check followed by detail tokens.
"""
from __future__ import annotations

from pgwarden.common_types import CheckResult, CheckStatus
from prettytable import PrettyTable
from typing import Any, Sequence, TextIO

import csv
import sys


class Formatter:
    name = ""

    def __init__(self, out: TextIO | None = None) -> None:
        self.out = out or sys.stdout

    def write(self, line: str) -> None:
        print(line, file=self.out)

    def emit_check(
        self,
        name: str,
        status: CheckStatus | str,
        details: dict[str, Any] | None = None,
        *,
        message: str = "",
        status_key: str = "status",
    ) -> None:
        raise NotImplementedError

    def emit_result(self, result: CheckResult) -> None:
        self.emit_check(result.name, result.status, result.details, message=result.message)

    def emit_table(self, headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> None:
        raise NotImplementedError

    def emit_options(self, options: dict[str, Any]) -> None:
        for key, value in options.items():
            self.write(f"{key}: {value}")


def _status_text(status: CheckStatus | str) -> str:
    return status.value if isinstance(status, CheckStatus) else str(status)


class TextFormatter(Formatter):
    name = "text"

    def emit_check(self, name, status, details=None, *, message="", status_key="status"):
        line = f"{name}: {_status_text(status)}"
        if message:
            line += f" ({message})"
        self.write(line)
        for key, value in (details or {}).items():
            self.write(f"  {key}: {value}")

    def emit_table(self, headers, rows):
        table = PrettyTable(list(headers))
        table.align = "l"
        for row in rows:
            table.add_row(["" if value is None else value for value in row])
        self.write(table.get_string())


class CsvFormatter(Formatter):
    name = "csv"

    def __init__(self, out: TextIO | None = None) -> None:
        super().__init__(out)
        self.writer = csv.writer(self.out, lineterminator="\n")

    def emit_check(self, name, status, details=None, *, message="", status_key="status"):
        row = [name, _status_text(status)]
        row.extend(f"{key}={value}" for key, value in (details or {}).items())
        self.writer.writerow(row)

    def emit_table(self, headers, rows):
        self.writer.writerow(headers)
        for row in rows:
            self.writer.writerow(["" if value is None else value for value in row])


class NagiosFormatter(TextFormatter):
    """Single line plugin output, ``PGWARDEN_NAME STATUS: message | perfdata``."""

    name = "nagios"

    def emit_check(self, name, status, details=None, *, message="", status_key="status"):
        label = "PGWARDEN_" + name.upper().replace("-", "_").replace(" ", "_")
        line = f"{label} {_status_text(status)}: {message or name}"
        if details:
            perfdata = " ".join(f"{key}={value}" for key, value in details.items())
            line += f" | {perfdata}"
        self.write(line)


class OptFormatter(Formatter):
    name = "optformat"

    @staticmethod
    def _token(key: str, value: Any) -> str:
        text = "" if value is None else str(value)
        # tokens are separated by whitespace
        return f"--{key}={text.replace(' ', '_')}"

    def emit_check(self, name, status, details=None, *, message="", status_key="status"):
        tokens = [self._token(status_key, _status_text(status))]
        tokens.extend(self._token(key, value) for key, value in (details or {}).items())
        self.write(" ".join(tokens))

    def emit_options(self, options: dict[str, Any]) -> None:
        self.write(" ".join(self._token(key, value) for key, value in options.items()))

    def emit_table(self, headers, rows):
        keys = [header.lower().replace(" ", "-") for header in headers]
        for row in rows:
            self.emit_options(dict(zip(keys, row)))


FORMATTERS: dict[str, type[Formatter]] = {
    "text": TextFormatter,
    "csv": CsvFormatter,
    "nagios": NagiosFormatter,
    "optformat": OptFormatter,
}


def get_formatter(name: str = "text", out: TextIO | None = None) -> Formatter:
    try:
        return FORMATTERS[name](out)
    except KeyError:
        raise ValueError(f"unknown output format {name!r}") from None
