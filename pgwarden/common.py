"""
pgwarden - common utility functions

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from datetime import datetime
from typing import Final

import re

INVALID_LSN: Final[int] = 0

LSN_RE: Final[re.Pattern[str]] = re.compile(r"^(?P<log_id>[0-9A-Fa-f]{1,8})/(?P<offset>[0-9A-Fa-f]{1,8})$")


def parse_lsn(wal_location: str | None) -> int:
    """Convert a textual ``X/X`` WAL location into an integer offset.

    ``None`` and the empty string map to :data:`INVALID_LSN`.
    """
    if not wal_location:
        return INVALID_LSN
    match = LSN_RE.match(wal_location.strip())
    if not match:
        raise ValueError(f"Invalid WAL location {wal_location!r}")
    return int(match.group("log_id"), 16) << 32 | int(match.group("offset"), 16)


def format_lsn(lsn: int | None) -> str:
    if lsn is None:
        lsn = INVALID_LSN
    return f"{lsn >> 32:X}/{lsn & 0xFFFFFFFF:X}"


def is_valid_lsn(lsn: int | None) -> bool:
    return lsn is not None and lsn > INVALID_LSN


def get_iso_timestamp(fetch_time: datetime | None = None) -> str:
    if not fetch_time:
        fetch_time = datetime.utcnow()
    elif (offset := fetch_time.utcoffset()) is not None:
        fetch_time = fetch_time.replace(tzinfo=None) - offset
    return fetch_time.isoformat() + "Z"


def parse_option_output(output: str | None) -> dict[str, str]:
    """Tokenize a single ``--key=value --flag`` line as printed by ``pgwarden-ctl --optformat``.

    Keys are returned without the leading dashes. Flags without a value map to
    the empty string. Tokens that don't start with ``--`` are ignored.
    """
    result: dict[str, str] = {}
    if not output:
        return result
    for token in output.strip().split():
        if not token.startswith("--"):
            continue
        key, _, value = token[2:].partition("=")
        if key:
            result[key] = value
    return result
