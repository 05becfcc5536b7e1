# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pgwarden.common import format_lsn, get_iso_timestamp, INVALID_LSN
from typing import Any


class NodeRole(str, Enum):
    LEADER = "leader"
    STANDBY = "standby"
    WITNESS = "witness"


class RecoveryType(str, Enum):
    LEADER = "leader"
    STANDBY = "standby"
    UNKNOWN = "unknown"


class VotingStatus(str, Enum):
    NO_VOTE = "no_vote"
    REQUEST_RECEIVED = "request_received"
    INITIATED = "initiated"
    WON = "won"
    LOST = "lost"


class CheckStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    UNKNOWN = "UNKNOWN"


class ShutdownState(str, Enum):
    RUNNING = "RUNNING"
    SHUTDOWN = "SHUTDOWN"
    UNCLEAN_SHUTDOWN = "UNCLEAN_SHUTDOWN"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class NodeRecord:
    """A cluster member as stored in the node registry."""

    node_id: int
    node_name: str
    role: NodeRole
    conninfo: str
    upstream_node_id: int | None = None
    ssh_host: str = ""
    slot_name: str = ""
    priority: int = 100
    active: bool = True
    config_file: str = ""
    control_url: str = ""
    location: str = "default"

    @property
    def is_witness(self) -> bool:
        return self.role == NodeRole.WITNESS

    def with_changes(self, **changes: Any) -> NodeRecord:
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "role": self.role.value,
            "upstream_node_id": self.upstream_node_id,
            "conninfo": self.conninfo,
            "ssh_host": self.ssh_host,
            "slot_name": self.slot_name,
            "priority": self.priority,
            "active": self.active,
            "config_file": self.config_file,
            "control_url": self.control_url,
            "location": self.location,
        }


@dataclass
class ReplicationStatus:
    """State of a single node as seen by one poll, never persisted."""

    is_reachable: bool = False
    recovery_type: RecoveryType = RecoveryType.UNKNOWN
    wal_receive_lsn: int = INVALID_LSN
    wal_replay_lsn: int = INVALID_LSN
    lag_seconds: float | None = None
    active_slot_count: int = 0
    free_slot_count: int = 0
    free_sender_count: int = 0
    error: str | None = None
    fetch_time: str = field(default_factory=get_iso_timestamp)

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_reachable": self.is_reachable,
            "recovery_type": self.recovery_type.value,
            "wal_receive_lsn": format_lsn(self.wal_receive_lsn),
            "wal_replay_lsn": format_lsn(self.wal_replay_lsn),
            "lag_seconds": self.lag_seconds,
            "active_slot_count": self.active_slot_count,
            "free_slot_count": self.free_slot_count,
            "free_sender_count": self.free_sender_count,
            "error": self.error,
            "fetch_time": self.fetch_time,
        }


@dataclass(frozen=True)
class EventRecord:
    node_id: int
    event: str
    successful: bool
    details: str = ""
    event_timestamp: str = field(default_factory=get_iso_timestamp)


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single node check, rendered by a formatter."""

    name: str
    status: CheckStatus
    details: dict[str, str] = field(default_factory=dict)
    message: str = ""
