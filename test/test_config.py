"""
pgwarden tests

Copyright (c) 2016 Ohmu Ltd

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from pathlib import Path
from pgwarden.config import load_config_file
from pgwarden.errors import ConfigurationError

import json
import pytest


def write_config(tmp_path: Path, **values: object) -> Path:
    config = {
        "node_id": 1,
        "node_name": "node1",
        "conninfo": "host=node1 dbname=postgres",
        "data_directory": "/var/lib/pgsql/data",
    }
    config.update(values)
    path = tmp_path / "pgwarden.json"
    path.write_text(json.dumps({key: value for key, value in config.items() if value is not None}))
    return path


def test_load_config_file(tmp_path: Path) -> None:
    config = load_config_file(write_config(tmp_path, priority=50, failover="manual"))
    assert config["node_id"] == 1
    assert config["priority"] == 50
    assert config["failover"] == "manual"


def test_load_config_file_missing_keys(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        load_config_file(write_config(tmp_path, conninfo=None, data_directory=None))
    assert "conninfo, data_directory" in str(excinfo.value)
    assert excinfo.value.exit_code == 1


@pytest.mark.parametrize(
    "values",
    [
        {"node_id": 0},
        {"node_id": "1"},
        {"failover": "sometimes"},
        {"replication_lag_warning": 600, "replication_lag_critical": 300},
    ],
)
def test_load_config_file_invalid_values(tmp_path: Path, values: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError):
        load_config_file(write_config(tmp_path, **values))


def test_load_config_file_unreadable(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config_file(tmp_path / "missing.json")
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config_file(path)
    path.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        load_config_file(path)
