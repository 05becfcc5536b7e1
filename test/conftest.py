"""
pgwarden - test configuration

Copyright (c) 2016 Ohmu Ltd
See LICENSE for details
"""
# pylint: disable=protected-access
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from pgwarden import logutil
from pgwarden.clock import Clock
from pgwarden.common import parse_lsn
from pgwarden.common_types import NodeRecord, NodeRole, RecoveryType
from pgwarden.config import Config
from pgwarden.control_state import ControlState, MemoryControlStore
from pgwarden.dbutils import ReplicationInfo, SenderStats, SlotStats
from pgwarden.errors import QueryError
from pgwarden.registry import MemoryNodeRegistry
from pgwarden.remote import RemoteCommandChannel, RemoteResult
from pgwarden.server_control import ServerControl
from typing import Any, Callable
from unittest.mock import Mock

import pytest

logutil.configure_logging()


class FakeClock(Clock):
    """Time only moves when somebody sleeps."""

    def __init__(self, on_sleep: Callable[[float], None] | None = None) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []
        self.on_sleep = on_sleep

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(seconds)


@dataclass
class FakeServer:
    """A PostgreSQL instance as seen through its connections."""

    name: str
    registry: MemoryNodeRegistry
    recovery: RecoveryType = RecoveryType.STANDBY
    receive_lsn: int = 0
    replay_lsn: int | None = None
    # added to receive_lsn after every last_wal_receive_lsn() call
    receive_lsn_step: int = 0
    reachable: bool = True
    replay_paused: bool = False
    replication_lag: float | None = 1.0
    max_wal_senders: int = 10
    max_replication_slots: int = 10
    downstream: dict[str, str] = field(default_factory=dict)
    slots: dict[str, bool] = field(default_factory=dict)
    superuser: bool = True
    data_directory: str = "/var/lib/pgsql/data"
    timeline: int = 1
    timeline_history: list[tuple[int, int]] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)


class FakeConnection:
    def __init__(self, server: FakeServer, name: str) -> None:
        self.server = server
        self.name = name
        self.closed = False
        self.server_version = 150000

    def _check(self, what: str) -> None:
        self.server.queries.append(what)
        if not self.server.reachable:
            raise QueryError(f"OperationalError (server closed the connection unexpectedly) querying {self.name}")

    def close(self) -> None:
        self.closed = True

    def recovery_type(self) -> RecoveryType:
        if not self.server.reachable:
            return RecoveryType.UNKNOWN
        return self.server.recovery

    def replication_info(self) -> ReplicationInfo:
        self._check("replication_info")
        in_recovery = self.server.recovery == RecoveryType.STANDBY
        now = datetime(2023, 1, 1, 12, 0, 0)
        lag = self.server.replication_lag
        return ReplicationInfo(
            db_time=now,
            in_recovery=in_recovery,
            last_wal_receive_lsn=self.server.receive_lsn if in_recovery else 0,
            last_wal_replay_lsn=(self.server.replay_lsn if self.server.replay_lsn is not None else self.server.receive_lsn)
            if in_recovery
            else 0,
            last_xact_replay_timestamp=now - timedelta(seconds=lag) if in_recovery and lag is not None else None,
            wal_replay_paused=self.server.replay_paused,
            receiving_streamed_wal=in_recovery,
        )

    def current_wal_lsn(self) -> int:
        self._check("current_wal_lsn")
        return self.server.receive_lsn

    def last_wal_receive_lsn(self) -> int:
        self._check("last_wal_receive_lsn")
        lsn = self.server.receive_lsn
        self.server.receive_lsn += self.server.receive_lsn_step
        return lsn

    def sender_stats(self) -> SenderStats:
        self._check("sender_stats")
        return SenderStats(max_wal_senders=self.server.max_wal_senders, attached_wal_senders=len(self.server.downstream))

    def slot_stats(self) -> SlotStats:
        self._check("slot_stats")
        active = sum(1 for is_active in self.server.slots.values() if is_active)
        return SlotStats(
            max_replication_slots=self.server.max_replication_slots,
            active_slots=active,
            inactive_slots=len(self.server.slots) - active,
        )

    def is_superuser(self) -> bool:
        self._check("is_superuser")
        return self.server.superuser

    def in_exclusive_backup(self) -> bool:
        self._check("in_exclusive_backup")
        return False

    def data_directory(self) -> str | None:
        self._check("data_directory")
        return self.server.data_directory

    def timeline_id(self) -> int | None:
        self._check("timeline_id")
        return self.server.timeline

    def checkpoint(self) -> None:
        self._check("checkpoint")

    def promote(self) -> bool:
        self._check("promote")
        self.server.recovery = RecoveryType.LEADER
        return True

    def downstream_state(self, application_name: str) -> str | None:
        self._check("downstream_state")
        return self.server.downstream.get(application_name)

    def attached_application_names(self) -> list[str]:
        self._check("attached_application_names")
        return list(self.server.downstream)

    def replication_slot(self, slot_name: str) -> dict[str, Any] | None:
        self._check("replication_slot")
        if slot_name not in self.server.slots:
            return None
        return {"slot_name": slot_name, "slot_type": "physical", "active": self.server.slots[slot_name]}

    def inactive_physical_slots(self) -> list[str]:
        self._check("inactive_physical_slots")
        return [name for name, active in self.server.slots.items() if not active]

    def create_replication_slot(self, slot_name: str) -> None:
        self._check("create_replication_slot")
        self.server.slots.setdefault(slot_name, False)

    def drop_replication_slot(self, slot_name: str) -> bool:
        self._check("drop_replication_slot")
        return self.server.slots.pop(slot_name, None) is not None

    def archive_ready_count(self) -> int | None:
        return None


class FakeConnector:
    def __init__(self, servers: dict[str, FakeServer]) -> None:
        self.servers = servers
        self.connects: list[str] = []

    def connect(self, dsn: str, name: str | None = None) -> FakeConnection | None:
        self.connects.append(dsn)
        server = self.servers.get(dsn)
        if server is None or not server.reachable:
            return None
        return FakeConnection(server, name or dsn)

    def is_server_available(self, dsn: str) -> bool:
        return self.connect(dsn) is not None

    def timeline_history(self, dsn: str, timeline_id: int) -> list[tuple[int, int]]:  # pylint: disable=unused-argument
        self.connects.append(dsn)
        return self.servers[dsn].timeline_history


def registry_of(conn: FakeConnection) -> MemoryNodeRegistry:
    return conn.server.registry


class FakeRemoteChannel(RemoteCommandChannel):
    """Answers remote commands from a list of ``(host, action substring, handler)`` rules."""

    def __init__(self) -> None:
        super().__init__()
        self.rules: list[tuple[str, str, Callable[[], RemoteResult] | RemoteResult]] = []
        self.calls: list[tuple[str, str]] = []

    def on(self, host: str, action: str, result: Callable[[], RemoteResult] | RemoteResult | str) -> None:
        if isinstance(result, str):
            result = RemoteResult(output=result, returncode=0)
        self.rules.append((host, action, result))

    def run(self, host: str, user: str | None, command: str) -> RemoteResult:
        self.calls.append((host, command))
        for rule_host, action, result in self.rules:
            if rule_host == host and action in command:
                return result() if callable(result) else result
        return RemoteResult(output="", returncode=255, error="no route to host")


def make_node(node_id: int, role: NodeRole = NodeRole.STANDBY, upstream_node_id: int | None = 1, **kwargs: Any) -> NodeRecord:
    if role == NodeRole.LEADER:
        upstream_node_id = None
    values: dict[str, Any] = {
        "node_id": node_id,
        "node_name": f"node{node_id}",
        "role": role,
        "conninfo": f"host=node{node_id} dbname=postgres",
        "upstream_node_id": upstream_node_id,
        "ssh_host": f"postgres@node{node_id}",
        "config_file": "/etc/pgwarden/pgwarden.json",
        "control_url": f"http://node{node_id}:15000",
    }
    values.update(kwargs)
    return NodeRecord(**values)


class FakeCluster:
    """Servers sharing one registry, with a control store per node."""

    def __init__(self, nodes: list[NodeRecord]) -> None:
        self.registry = MemoryNodeRegistry(nodes)
        self.nodes = {node.node_id: node for node in nodes}
        self.servers: dict[int, FakeServer] = {}
        self.stores: dict[int, MemoryControlStore] = {}
        for node in nodes:
            recovery = RecoveryType.LEADER if node.role == NodeRole.LEADER else RecoveryType.STANDBY
            self.servers[node.node_id] = FakeServer(name=node.node_name, registry=self.registry, recovery=recovery)
            self.stores[node.node_id] = MemoryControlStore()
        self.connector = FakeConnector({node.conninfo: self.servers[node.node_id] for node in nodes})
        self.remote = FakeRemoteChannel()

    def server(self, node_id: int) -> FakeServer:
        return self.servers[node_id]

    def control_state(self, node_id: int) -> ControlState:
        return ControlState(self.stores[node_id])

    def store_for_url(self, url: str) -> MemoryControlStore:
        for node_id, node in self.nodes.items():
            if node.control_url == url:
                return self.stores[node_id]
        raise KeyError(url)

    def config(self, node_id: int, **overrides: Any) -> Config:
        node = self.nodes[node_id]
        config: Config = {
            "node_id": node_id,
            "node_name": node.node_name,
            "conninfo": node.conninfo,
            "data_directory": "/var/lib/pgsql/data",
            "check_interval": 1.0,
            "reconnect_attempts": 2,
            "reconnect_interval": 1.0,
            "election_ready_timeout": 5.0,
            "primary_notification_timeout": 10.0,
        }
        config.update(overrides)  # type: ignore[typeddict-item]
        return config


@pytest.fixture(name="clock")
def fixture_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="server_control")
def fixture_server_control() -> Mock:
    server_control = Mock(spec=ServerControl)
    server_control.is_running.return_value = False
    server_control.write_replication_config.return_value = True
    server_control.start.return_value = True
    server_control.restart.return_value = True
    server_control.promote.return_value = True
    server_control.run_pg_rewind.return_value = True
    server_control.execute_external_command.return_value = 0
    return server_control


@pytest.fixture(name="three_node_cluster")
def fixture_three_node_cluster() -> FakeCluster:
    cluster = FakeCluster(
        [
            make_node(1, NodeRole.LEADER),
            make_node(2, slot_name="pgwarden_slot_2"),
            make_node(3, slot_name="pgwarden_slot_3"),
        ]
    )
    cluster.server(1).receive_lsn = parse_lsn("0/400")
    cluster.server(1).downstream = {"node2": "streaming", "node3": "streaming"}
    cluster.server(1).slots = {"pgwarden_slot_2": True, "pgwarden_slot_3": True}
    cluster.server(2).receive_lsn = parse_lsn("0/300")
    cluster.server(3).receive_lsn = parse_lsn("0/200")
    return cluster


@pytest.fixture(name="config_file")
def fixture_config_file(tmp_path: Path) -> Path:
    path = tmp_path / "pgwarden.json"
    path.write_text(
        '{"node_id": 2, "node_name": "node2", "conninfo": "host=node2 dbname=postgres", '
        '"data_directory": "/var/lib/pgsql/data", '
        f'"control_state_file_path": "{tmp_path / "control.json"}", '
        f'"json_state_file_path": "{tmp_path / "state.json"}", '
        '"http_port": 0, "log_level": "INFO"}'
    )
    return path
