# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from __future__ import annotations

from pathlib import Path
from pgwarden.errors import ConfigurationError
from typing import Literal, TypedDict

import json


class Statsd(TypedDict, total=False):
    host: str
    port: int
    tags: dict[str, str]


class Config(TypedDict, total=False):
    archive_ready_critical: int
    archive_ready_warning: int
    check_interval: float
    conninfo: str
    connect_timeout: float
    control_state_file_path: str
    control_url: str
    data_directory: str
    db_poll_interval: float
    degraded_monitoring_timeout: float
    election_ready_timeout: float
    failover: Literal["automatic", "manual"]
    follow_command: str
    http_address: str
    http_port: int
    json_state_file_path: str
    location: str
    log_level: Literal["NOTSET", "DEBUG", "INFO", "WARNING", "WARN", "ERROR", "FATAL", "CRITICAL"]
    log_status_interval: float
    monitoring_history: bool
    node_id: int
    node_name: str
    node_rejoin_timeout: float
    pg_bindir: str
    pg_ctl_options: str
    pgwarden_bindir: str
    primary_notification_timeout: float
    priority: int
    promote_check_interval: float
    promote_check_timeout: float
    promote_command: str
    remote_command_timeout: float
    reconnect_attempts: int
    reconnect_interval: float
    replication_lag_critical: float
    replication_lag_warning: float
    replication_user: str
    service_promote_command: str
    service_restart_command: str
    service_start_command: str
    service_stop_command: str
    shutdown_check_timeout: float
    ssh_host: str
    ssh_options: str
    standby_reconnect_timeout: float
    standby_startup_timeout: float
    statsd: Statsd
    syslog: bool
    syslog_address: str
    # fmt: off
    syslog_facility: Literal[
        "auth", "authpriv", "console", "cron", "daemon", "ftp", "kern", "lpr",
        "mail", "news", "ntp", "security", "solaris-cron", "syslog", "user", "uucp",
        "local0", "local1", "local2", "local3", "local4", "local5", "local6", "local7",
    ]
    # fmt: on
    upstream_node_id: int
    use_replication_slots: bool
    wal_receive_check_timeout: float


REQUIRED_KEYS: tuple[str, ...] = ("node_id", "node_name", "conninfo", "data_directory")


def load_config_file(config_path: Path | str) -> Config:
    """Read and validate a JSON configuration file."""
    config_path = Path(config_path)
    try:
        with config_path.open() as fp:
            config: Config = json.load(fp)
    except (OSError, ValueError) as ex:
        raise ConfigurationError(f"unable to read configuration file {str(config_path)!r}: {ex}") from ex

    if not isinstance(config, dict):
        raise ConfigurationError(f"configuration file {str(config_path)!r} must contain a JSON object")

    missing = [key for key in REQUIRED_KEYS if key not in config]
    if missing:
        raise ConfigurationError(
            f"missing mandatory configuration parameter(s): {', '.join(missing)}",
            hint=f"add the missing parameter(s) to {str(config_path)!r}",
        )
    if not isinstance(config["node_id"], int) or config["node_id"] <= 0:
        raise ConfigurationError(f"`node_id` must be a positive integer, got {config['node_id']!r}")
    if config.get("failover", "automatic") not in ("automatic", "manual"):
        raise ConfigurationError(f"`failover` must be 'automatic' or 'manual', got {config.get('failover')!r}")
    warning = config.get("replication_lag_warning")
    critical = config.get("replication_lag_critical")
    if warning is not None and critical is not None and warning > critical:
        raise ConfigurationError(
            f"`replication_lag_warning` ({warning}) must not be greater than `replication_lag_critical` ({critical})"
        )
    return config
