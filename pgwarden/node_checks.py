# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - node status checks

The checks behind ``pgwarden-ctl status`` and ``pgwarden-ctl check``. Each one
inspects a single node and returns a :class:`CheckResult`; rendering is left
to the formatter the command line picked.
"""
from __future__ import annotations

from pathlib import Path
from pgwarden.common import format_lsn
from pgwarden.common_types import CheckResult, CheckStatus, NodeRecord, NodeRole, RecoveryType, ShutdownState
from pgwarden.config import Config
from pgwarden.controldata import ControlData
from pgwarden.dbutils import Connector, NodeConnection
from pgwarden.default import (
    ARCHIVE_READY_CRITICAL,
    ARCHIVE_READY_WARNING,
    REPLICATION_LAG_CRITICAL,
    REPLICATION_LAG_WARNING,
)
from pgwarden.errors import QueryError
from pgwarden.registry import NodeRegistry
from typing import Callable

import logging
import os

log = logging.getLogger("NodeChecks")

CLUSTER_STATUS_HEADERS = ("ID", "Name", "Role", "Status", "Upstream", "Priority", "Connection string")


def threshold_status(value: float, warning: float, critical: float) -> CheckStatus:
    if value >= critical:
        return CheckStatus.CRITICAL
    if value >= warning:
        return CheckStatus.WARNING
    return CheckStatus.OK


def check_replication_lag(conn: NodeConnection, config: Config) -> CheckResult:
    warning = config.get("replication_lag_warning", REPLICATION_LAG_WARNING)
    critical = config.get("replication_lag_critical", REPLICATION_LAG_CRITICAL)
    try:
        info = conn.replication_info()
    except QueryError as ex:
        return CheckResult("replication-lag", CheckStatus.UNKNOWN, message=str(ex))
    if not info.in_recovery:
        return CheckResult("replication-lag", CheckStatus.OK, message="node is leader")
    lag = info.replication_lag_seconds
    if lag is None:
        return CheckResult("replication-lag", CheckStatus.UNKNOWN, message="no transactions replayed yet")
    status = threshold_status(lag, warning, critical)
    return CheckResult(
        "replication-lag",
        status,
        {"lag": f"{lag:.0f}", "warning": f"{warning:.0f}", "critical": f"{critical:.0f}"},
        message=f"{lag:.0f} seconds",
    )


def count_archive_ready(data_directory: str) -> int | None:
    """Number of WAL files waiting for archive_command, ``None`` when the status directory can't be read."""
    status_dir = Path(data_directory) / "pg_wal" / "archive_status"
    try:
        return sum(1 for entry in os.scandir(status_dir) if entry.name.endswith(".ready"))
    except OSError as ex:
        log.warning("Unable to read archive status directory %r: %s", str(status_dir), ex)
        return None


def check_archive_ready(config: Config, conn: NodeConnection | None = None) -> CheckResult:
    warning = config.get("archive_ready_warning", ARCHIVE_READY_WARNING)
    critical = config.get("archive_ready_critical", ARCHIVE_READY_CRITICAL)
    ready = count_archive_ready(config["data_directory"])
    if ready is None and conn is not None:
        ready = conn.archive_ready_count()
    if ready is None:
        return CheckResult("archive-ready", CheckStatus.UNKNOWN, message="unable to count pending WAL files")
    status = threshold_status(ready, warning, critical)
    return CheckResult(
        "archive-ready",
        status,
        {"files": str(ready), "threshold": str(critical if status == CheckStatus.CRITICAL else warning)},
        message=f"{ready} pending archive ready files",
    )


def check_downstream(conn: NodeConnection, registry: NodeRegistry, node: NodeRecord) -> CheckResult:
    expected = [other.node_name for other in registry.get_downstream_nodes(node.node_id) if not other.is_witness]
    try:
        attached = set(conn.attached_application_names())
    except QueryError as ex:
        return CheckResult("downstream", CheckStatus.UNKNOWN, message=str(ex))
    missing = [name for name in expected if name not in attached]
    details = {"expected": str(len(expected)), "attached": str(len(expected) - len(missing))}
    if missing:
        details["missing"] = ",".join(missing)
        return CheckResult(
            "downstream", CheckStatus.CRITICAL, details, message=f"{len(missing)} of {len(expected)} downstream nodes not attached"
        )
    return CheckResult("downstream", CheckStatus.OK, details, message=f"{len(expected)} of {len(expected)} downstream nodes attached")


def check_slots(conn: NodeConnection) -> CheckResult:
    try:
        inactive = conn.inactive_physical_slots()
    except QueryError as ex:
        return CheckResult("slots", CheckStatus.UNKNOWN, message=str(ex))
    if inactive:
        return CheckResult(
            "slots",
            CheckStatus.CRITICAL,
            {"inactive": str(len(inactive)), "names": ",".join(inactive)},
            message=f"{len(inactive)} inactive physical replication slots",
        )
    return CheckResult("slots", CheckStatus.OK, {"inactive": "0"}, message="no inactive physical replication slots")


def check_role(conn: NodeConnection, node: NodeRecord) -> CheckResult:
    recovery_type = conn.recovery_type()
    if recovery_type == RecoveryType.UNKNOWN:
        return CheckResult("role", CheckStatus.UNKNOWN, message="unable to determine recovery state")
    details = {"registered": node.role.value, "running": recovery_type.value}
    if node.role == NodeRole.LEADER and recovery_type != RecoveryType.LEADER:
        return CheckResult("role", CheckStatus.CRITICAL, details, message="node is registered as leader but running as standby")
    if node.role == NodeRole.STANDBY and recovery_type != RecoveryType.STANDBY:
        return CheckResult("role", CheckStatus.CRITICAL, details, message="node is registered as standby but running as leader")
    return CheckResult("role", CheckStatus.OK, details, message=f"node is {node.role.value}")


def check_data_directory_config(conn: NodeConnection | None, config: Config) -> str:
    """Compare the configured data directory with the one the running instance reports, OK, MISMATCH or UNKNOWN."""
    if conn is None:
        return "UNKNOWN"
    running = conn.data_directory()
    if running is None:
        return "UNKNOWN"
    configured = config["data_directory"]
    if os.path.realpath(running) == os.path.realpath(configured):
        return "OK"
    log.error("Configured data directory %r doesn't match the running instance's %r", configured, running)
    return "MISMATCH"


def shutdown_status(is_running: bool, read_control_data: Callable[[], ControlData | None]) -> tuple[ShutdownState, int]:
    if is_running:
        return ShutdownState.RUNNING, 0
    control = read_control_data()
    if control is None:
        return ShutdownState.UNKNOWN, 0
    return control.shutdown_state(is_running=False), control.checkpoint_lsn


def node_status_text(node: NodeRecord, recovery_type: RecoveryType | None) -> str:
    if not node.active:
        return "- failed" if recovery_type is None else "! running (inactive)"
    if recovery_type is None:
        return "? unreachable"
    if node.is_witness:
        return "* running"
    if node.role.value != recovery_type.value:
        return f"! running as {recovery_type.value}"
    return "* running"


def cluster_status_rows(registry: NodeRegistry, connector: Connector) -> list[list[object]]:
    rows = []
    nodes = registry.get_all_nodes()
    names = {node.node_id: node.node_name for node in nodes}
    for node in nodes:
        conn = connector.connect(node.conninfo, name=f"{node.node_name!r} (ID: {node.node_id})")
        recovery_type = None
        if conn is not None:
            try:
                recovery_type = conn.recovery_type()
            finally:
                conn.close()
            if recovery_type == RecoveryType.UNKNOWN:
                recovery_type = None
        rows.append(
            [
                node.node_id,
                node.node_name,
                node.role.value,
                node_status_text(node, recovery_type),
                names.get(node.upstream_node_id, "") if node.upstream_node_id is not None else "",
                node.priority,
                node.conninfo,
            ]
        )
    return rows


def node_status_options(conn: NodeConnection, node: NodeRecord) -> dict[str, object]:
    """Key/value summary of the local node for ``pgwarden-ctl status --node``."""
    info = conn.replication_info()
    options: dict[str, object] = {
        "node-id": node.node_id,
        "node-name": node.node_name,
        "role": node.role.value,
        "in-recovery": info.in_recovery,
    }
    if info.in_recovery:
        options["last-received-lsn"] = format_lsn(info.last_wal_receive_lsn)
        options["last-replayed-lsn"] = format_lsn(info.last_wal_replay_lsn)
        options["replay-paused"] = info.wal_replay_paused
        options["replication-lag"] = info.replication_lag_seconds
    else:
        options["current-lsn"] = format_lsn(conn.current_wal_lsn())
    return options
