"""
pgwarden - local PostgreSQL server control

Copyright (c) 2015 Ohmu Ltd
Copyright (c) 2014 F-Secure

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from logging import getLogger, Logger
from packaging.version import parse as parse_version
from pathlib import Path
from pgwarden.common import get_iso_timestamp
from pgwarden.config import Config
from pgwarden.pgutil import build_primary_conninfo, get_connection_info, get_connection_info_from_config_line
from pgwarden.statsd import StatsClient
from psycopg2.extensions import adapt, QuotedString
from subprocess import CalledProcessError, check_call, DEVNULL
from typing import Final, Literal

import shlex
import time

ServiceAction = Literal["start", "stop", "restart", "promote"]

# Settings we own in the replication configuration; any previous value is dropped
REPLICATION_SETTINGS: Final[tuple[str, ...]] = (
    "primary_conninfo",
    "primary_slot_name",
    "recovery_target_timeline",
    "standby_mode",
)


class ServerControl:
    def __init__(self, config: Config, stats: StatsClient | None = None) -> None:
        self.config: Config = config
        self.stats: StatsClient = stats or StatsClient(host=None)
        self.log: Logger = getLogger("ServerControl")

    @property
    def data_directory(self) -> Path:
        return Path(self.config["data_directory"])

    def _pg_binary(self, name: str) -> str:
        bindir = self.config.get("pg_bindir", "")
        return str(Path(bindir) / name) if bindir else name

    def service_command(self, action: ServiceAction) -> list[str]:
        configured = self.config.get(f"service_{action}_command")  # type: ignore[misc]
        if configured:
            return shlex.split(configured)
        command = [self._pg_binary("pg_ctl"), *shlex.split(self.config.get("pg_ctl_options", ""))]
        command.extend(["-D", str(self.data_directory)])
        if action == "start":
            command.extend(["-w", "-l", "/dev/null", "start"])
        elif action == "stop":
            command.extend(["-m", "fast", "-W", "stop"])
        elif action == "restart":
            command.extend(["-w", "-m", "fast", "restart"])
        else:
            command.extend(["-W", "promote"])
        return command

    def execute_external_command(self, command: list[str] | str) -> int:
        self.log.warning("Executing external command: %r", command)
        return_code = 0
        try:
            check_call(command, shell=isinstance(command, str))
        except CalledProcessError as err:
            self.log.exception("Problem with executing: %r, return_code: %r", command, err.returncode)
            self.stats.unexpected_exception(err, where="execute_external_command")
            return_code = err.returncode  # pylint: disable=no-member
        except OSError as err:
            self.log.exception("Unable to execute: %r", command)
            self.stats.unexpected_exception(err, where="execute_external_command")
            return_code = 127
        self.log.warning("Executed external command: %r, return_code: %r", command, return_code)
        return return_code

    def run_service_action(self, action: ServiceAction) -> bool:
        start_time = time.monotonic()
        return_code = self.execute_external_command(self.service_command(action))
        self.log.info("Service action %r finished with %r, took: %.2fs", action, return_code, time.monotonic() - start_time)
        return return_code == 0

    def start(self) -> bool:
        return self.run_service_action("start")

    def stop(self) -> bool:
        return self.run_service_action("stop")

    def restart(self) -> bool:
        return self.run_service_action("restart")

    def promote(self) -> bool:
        return self.run_service_action("promote")

    def is_running(self) -> bool:
        # pg_ctl status exits with 0 when the server is running, 3 when it isn't
        command = [self._pg_binary("pg_ctl"), "-D", str(self.data_directory), "status"]
        try:
            return check_call(command, stdout=DEVNULL, stderr=DEVNULL) == 0
        except CalledProcessError:
            return False

    def server_version(self) -> str:
        return (self.data_directory / "PG_VERSION").read_text().strip()

    def write_replication_config(
        self,
        *,
        upstream_conninfo: str,
        upstream_name: str,
        slot_name: str = "",
    ) -> bool:
        """Point this instance at ``upstream_conninfo``, returns ``False`` when nothing needed changing."""
        if parse_version(self.server_version()) >= parse_version("12"):
            config_filename = "postgresql.auto.conf"
            signal_file: Path | None = self.data_directory / "standby.signal"
        else:
            config_filename = "recovery.conf"
            signal_file = None

        new_conninfo = build_primary_conninfo(
            upstream_conninfo,
            application_name=self.config["node_name"],
            replication_user=self.config.get("replication_user"),
        )

        path_to_config = self.data_directory / config_filename
        old_conf = path_to_config.read_text().splitlines() if path_to_config.exists() else []
        new_conf = []
        old_conninfo = None
        old_slot_line = None
        for line in old_conf:
            stripped = line.strip()
            if stripped.startswith("primary_conninfo"):
                try:
                    old_conninfo = get_connection_info_from_config_line(stripped)
                except ValueError:
                    self.log.exception("failed to parse previous %r, ignoring", line)
                continue
            if stripped.startswith("primary_slot_name"):
                old_slot_line = stripped
                continue
            if any(stripped.startswith(setting) for setting in REPLICATION_SETTINGS):
                continue
            if stripped.startswith("# pgwarden updated"):
                continue
            new_conf.append(line)

        # Mypy: ignore the typing of `adapt`, the provided stubs are incomplete.
        quoted_conninfo: QuotedString = adapt(new_conninfo)  # type: ignore[no-untyped-call]
        slot_line = f"primary_slot_name = {adapt(slot_name)}" if slot_name else None  # type: ignore[no-untyped-call]
        signal_present = signal_file is None or signal_file.exists()
        if old_conninfo == get_connection_info(new_conninfo) and old_slot_line == slot_line and signal_present:
            self.log.debug("%s already points at %r, not updating", config_filename, upstream_name)
            return False

        new_conf.insert(0, f"# pgwarden updated primary_conninfo for node {upstream_name} at {get_iso_timestamp()}")
        if signal_file is None:
            new_conf.append("standby_mode = 'on'")
        new_conf.append(f"primary_conninfo = {quoted_conninfo}")
        if slot_line:
            new_conf.append(slot_line)
        new_conf.append("recovery_target_timeline = 'latest'")

        path_to_config_new = path_to_config.with_name(f"{path_to_config.name}._temp")
        path_to_config_new.write_text("\n".join(new_conf) + "\n")
        path_to_config_new.rename(path_to_config)
        if signal_file is not None:
            signal_file.touch()
        self.log.info("Wrote replication configuration pointing at %r to %s", upstream_name, path_to_config)
        return True

    def run_pg_rewind(self, source_conninfo: str) -> bool:
        command = [
            self._pg_binary("pg_rewind"),
            "-D",
            str(self.data_directory),
            f"--source-server={source_conninfo}",
        ]
        return self.execute_external_command(command) == 0
