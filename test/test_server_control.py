"""
pgwarden tests

Copyright (c) 2016 Ohmu Ltd

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from pathlib import Path
from pgwarden.config import Config
from pgwarden.server_control import ServerControl
from subprocess import CalledProcessError
from unittest.mock import patch

import pytest


@pytest.fixture(name="data_directory")
def fixture_data_directory(tmp_path: Path) -> Path:
    (tmp_path / "PG_VERSION").write_text("15\n")
    return tmp_path


def make_server_control(data_directory: Path, **config: object) -> ServerControl:
    values: Config = {"node_name": "node2", "data_directory": str(data_directory)}
    values.update(config)  # type: ignore[typeddict-item]
    return ServerControl(values)


def test_write_replication_config(data_directory: Path) -> None:
    auto_conf = data_directory / "postgresql.auto.conf"
    auto_conf.write_text("shared_buffers = '128MB'\nprimary_conninfo = 'host=old-leader'\nprimary_slot_name = 'old_slot'\n")
    server_control = make_server_control(data_directory, replication_user="replicator")

    changed = server_control.write_replication_config(
        upstream_conninfo="host=node1 dbname=postgres", upstream_name="node1", slot_name="pgwarden_slot_2"
    )

    assert changed
    lines = auto_conf.read_text().splitlines()
    assert lines[0].startswith("# pgwarden updated primary_conninfo for node node1")
    assert "shared_buffers = '128MB'" in lines
    assert "primary_slot_name = 'pgwarden_slot_2'" in lines
    assert "recovery_target_timeline = 'latest'" in lines
    (conninfo_line,) = [line for line in lines if line.startswith("primary_conninfo")]
    assert "host=node1" in conninfo_line
    assert "user=replicator" in conninfo_line
    assert "application_name=node2" in conninfo_line
    assert not any("old" in line for line in lines)
    assert (data_directory / "standby.signal").exists()
    assert not (data_directory / "postgresql.auto.conf._temp").exists()

    # already pointing at the same upstream
    assert not server_control.write_replication_config(
        upstream_conninfo="host=node1 dbname=postgres", upstream_name="node1", slot_name="pgwarden_slot_2"
    )
    # a different slot is a change
    assert server_control.write_replication_config(upstream_conninfo="host=node1 dbname=postgres", upstream_name="node1")
    assert not any(line.startswith("primary_slot_name") for line in auto_conf.read_text().splitlines())


def test_write_replication_config_recreates_signal_file(data_directory: Path) -> None:
    server_control = make_server_control(data_directory)
    assert server_control.write_replication_config(upstream_conninfo="host=node1", upstream_name="node1")
    (data_directory / "standby.signal").unlink()
    assert server_control.write_replication_config(upstream_conninfo="host=node1", upstream_name="node1")
    assert (data_directory / "standby.signal").exists()


def test_write_replication_config_recovery_conf(data_directory: Path) -> None:
    (data_directory / "PG_VERSION").write_text("11\n")
    server_control = make_server_control(data_directory)
    assert server_control.write_replication_config(upstream_conninfo="host=node1", upstream_name="node1")
    lines = (data_directory / "recovery.conf").read_text().splitlines()
    assert "standby_mode = 'on'" in lines
    assert not (data_directory / "standby.signal").exists()


def test_service_command(data_directory: Path) -> None:
    server_control = make_server_control(data_directory, pg_bindir="/usr/pgsql-15/bin", pg_ctl_options="-t 120")
    assert server_control.service_command("start") == [
        "/usr/pgsql-15/bin/pg_ctl",
        "-t",
        "120",
        "-D",
        str(data_directory),
        "-w",
        "-l",
        "/dev/null",
        "start",
    ]
    assert server_control.service_command("stop")[-4:] == ["-m", "fast", "-W", "stop"]
    assert server_control.service_command("promote")[-2:] == ["-W", "promote"]

    server_control = make_server_control(data_directory, service_restart_command="sudo systemctl restart postgresql")
    assert server_control.service_command("restart") == ["sudo", "systemctl", "restart", "postgresql"]


def test_service_actions(data_directory: Path) -> None:
    server_control = make_server_control(data_directory)
    with patch("pgwarden.server_control.check_call") as check_call:
        check_call.return_value = 0
        assert server_control.start()
        assert check_call.call_args[0][0][-1] == "start"
        assert server_control.is_running()

        check_call.side_effect = CalledProcessError(3, ["pg_ctl"])
        assert not server_control.restart()
        assert not server_control.is_running()

        check_call.side_effect = FileNotFoundError("pg_ctl")
        assert server_control.execute_external_command(["pg_ctl"]) == 127


def test_run_pg_rewind(data_directory: Path) -> None:
    server_control = make_server_control(data_directory)
    with patch("pgwarden.server_control.check_call") as check_call:
        check_call.return_value = 0
        assert server_control.run_pg_rewind("host=node1 dbname=postgres")
        assert check_call.call_args[0][0] == [
            "pg_rewind",
            "-D",
            str(data_directory),
            "--source-server=host=node1 dbname=postgres",
        ]
