# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - control data of a stopped instance, as reported by pg_controldata
"""
from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from pgwarden.common import INVALID_LSN, parse_lsn
from pgwarden.common_types import ShutdownState

import os
import subprocess

CLEAN_SHUTDOWN_STATES = frozenset(["shut down", "shut down in recovery"])


@dataclass(frozen=True)
class ControlData:
    cluster_state: str
    checkpoint_lsn: int
    timeline_id: int | None

    @property
    def shut_down_cleanly(self) -> bool:
        return self.cluster_state in CLEAN_SHUTDOWN_STATES

    @property
    def in_recovery(self) -> bool:
        return "recovery" in self.cluster_state

    def shutdown_state(self, is_running: bool) -> ShutdownState:
        if is_running:
            return ShutdownState.RUNNING
        if self.shut_down_cleanly:
            return ShutdownState.SHUTDOWN
        if self.cluster_state:
            return ShutdownState.UNCLEAN_SHUTDOWN
        return ShutdownState.UNKNOWN


def parse_control_data(output: str) -> ControlData:
    fields = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()
    try:
        checkpoint_lsn = parse_lsn(fields.get("Latest checkpoint location"))
    except ValueError:
        checkpoint_lsn = INVALID_LSN
    timeline = fields.get("Latest checkpoint's TimeLineID")
    return ControlData(
        cluster_state=fields.get("Database cluster state", ""),
        checkpoint_lsn=checkpoint_lsn,
        timeline_id=int(timeline) if timeline and timeline.isdigit() else None,
    )


def read_control_data(data_directory: str, pg_bindir: str = "") -> ControlData | None:
    """Run ``pg_controldata`` against ``data_directory``, ``None`` when it can't be read."""
    log = getLogger("ControlData")
    executable = str(Path(pg_bindir) / "pg_controldata") if pg_bindir else "pg_controldata"
    try:
        output = subprocess.check_output(
            [executable, "-D", data_directory],
            env={**os.environ, "LC_ALL": "C"},
            stderr=subprocess.STDOUT,
        )
    except (OSError, subprocess.CalledProcessError) as ex:
        log.error("Unable to read control data of %r: %s", data_directory, ex)
        return None
    return parse_control_data(output.decode("utf-8", errors="replace"))
