"""
pgwarden tests

Copyright (c) 2016 Ohmu Ltd

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from io import StringIO
from pgwarden.common_types import CheckResult, CheckStatus
from pgwarden.formatter import CsvFormatter, get_formatter, NagiosFormatter, OptFormatter, TextFormatter

import pytest


def test_text_formatter() -> None:
    out = StringIO()
    formatter = TextFormatter(out)
    formatter.emit_check("replication-lag", CheckStatus.WARNING, {"lag": 61}, message="lag is 61 seconds")
    assert out.getvalue() == "replication-lag: WARNING (lag is 61 seconds)\n  lag: 61\n"


def test_text_formatter_table() -> None:
    out = StringIO()
    TextFormatter(out).emit_table(["ID", "Name", "Upstream"], [[1, "node1", None], [2, "node2", "node1"]])
    lines = out.getvalue().splitlines()
    assert lines[0].startswith("+")
    assert "Name" in lines[1]
    assert any("node2" in line and "node1" in line for line in lines)
    assert "None" not in out.getvalue()


def test_csv_formatter() -> None:
    out = StringIO()
    formatter = CsvFormatter(out)
    formatter.emit_result(CheckResult("archive-ready", CheckStatus.OK, {"files": "3"}))
    formatter.emit_table(["id", "name"], [[1, "node, one"]])
    assert out.getvalue() == 'archive-ready,OK,files=3\nid,name\n1,"node, one"\n'


def test_nagios_formatter() -> None:
    out = StringIO()
    formatter = NagiosFormatter(out)
    formatter.emit_check("replication-lag", CheckStatus.CRITICAL, {"lag": "600"}, message="lag is 600 seconds")
    formatter.emit_check("role", "OK")
    assert out.getvalue().splitlines() == [
        "PGWARDEN_REPLICATION_LAG CRITICAL: lag is 600 seconds | lag=600",
        "PGWARDEN_ROLE OK: role",
    ]


def test_opt_formatter() -> None:
    out = StringIO()
    formatter = OptFormatter(out)
    formatter.emit_check("shutdown", "SHUTDOWN", {"last-checkpoint-lsn": "0/500"}, status_key="state")
    formatter.emit_options({"configured-data-directory": "OK", "message": "two words", "empty": None})
    formatter.emit_table(["Node ID", "Role"], [[2, "standby"]])
    assert out.getvalue().splitlines() == [
        "--state=SHUTDOWN --last-checkpoint-lsn=0/500",
        "--configured-data-directory=OK --message=two_words --empty=",
        "--node-id=2 --role=standby",
    ]


def test_get_formatter() -> None:
    assert isinstance(get_formatter(), TextFormatter)
    assert isinstance(get_formatter("optformat"), OptFormatter)
    with pytest.raises(ValueError):
        get_formatter("xml")
