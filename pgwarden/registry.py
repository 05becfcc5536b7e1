# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - node registry

The registry lives in the ``pgwarden`` schema of the cluster's own database, so
it is written on the leader and replicated to every standby. Every mutation of
the role or upstream of a node is a single conditional statement; when the
expected old value no longer holds the write affects nothing and
:class:`~pgwarden.errors.ConflictError` is raised instead of retrying.
"""
from __future__ import annotations

from pgwarden.common import format_lsn
from pgwarden.common_types import EventRecord, NodeRecord, NodeRole, ReplicationStatus
from pgwarden.dbutils import NodeConnection
from pgwarden.default import LOCATION
from pgwarden.errors import ConfigurationError, ConflictError, QueryError
from typing import Any

import logging
import psycopg2.errors
import threading

SCHEMA_DDL = """
CREATE SCHEMA IF NOT EXISTS pgwarden;
CREATE TABLE IF NOT EXISTS pgwarden.nodes (
    node_id          INTEGER PRIMARY KEY,
    upstream_node_id INTEGER NULL REFERENCES pgwarden.nodes (node_id) DEFERRABLE,
    active           BOOLEAN NOT NULL DEFAULT TRUE,
    node_name        TEXT NOT NULL UNIQUE,
    role             TEXT NOT NULL CHECK (role IN ('leader', 'standby', 'witness')),
    priority         INTEGER NOT NULL DEFAULT 100 CHECK (priority >= 0),
    conninfo         TEXT NOT NULL,
    ssh_host         TEXT NOT NULL DEFAULT '',
    slot_name        TEXT NOT NULL DEFAULT '',
    config_file      TEXT NOT NULL DEFAULT '',
    control_url      TEXT NOT NULL DEFAULT '',
    location         TEXT NOT NULL DEFAULT 'default'
);
CREATE TABLE IF NOT EXISTS pgwarden.events (
    node_id          INTEGER NOT NULL,
    event            TEXT NOT NULL,
    successful       BOOLEAN NOT NULL DEFAULT TRUE,
    event_timestamp  TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    details          TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS pgwarden.monitoring_history (
    primary_node_id           INTEGER NOT NULL,
    standby_node_id           INTEGER NOT NULL,
    last_monitor_time         TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    last_wal_primary_location PG_LSN NOT NULL,
    last_wal_standby_location PG_LSN,
    replication_lag           DOUBLE PRECISION,
    apply_lag                 BIGINT
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_nodes_single_leader
    ON pgwarden.nodes ((role)) WHERE role = 'leader' AND active;
CREATE INDEX IF NOT EXISTS idx_monitoring_history_time
    ON pgwarden.monitoring_history (last_monitor_time, standby_node_id);
"""

NODE_COLUMNS = (
    "node_id, upstream_node_id, active, node_name, role, priority, conninfo, ssh_host, slot_name, config_file, "
    "control_url, location"
)


def node_from_row(row: dict[str, Any]) -> NodeRecord:
    return NodeRecord(
        node_id=row["node_id"],
        node_name=row["node_name"],
        role=NodeRole(row["role"]),
        conninfo=row["conninfo"],
        upstream_node_id=row["upstream_node_id"],
        ssh_host=row["ssh_host"] or "",
        slot_name=row["slot_name"] or "",
        priority=row["priority"],
        active=row["active"],
        config_file=row["config_file"] or "",
        control_url=row["control_url"] or "",
        location=row.get("location") or LOCATION,
    )


class NodeRegistry:
    """Interface shared by the PostgreSQL backed registry and the in-memory one used in tests."""

    def get_node(self, node_id: int) -> NodeRecord | None:
        raise NotImplementedError

    def get_all_nodes(self) -> list[NodeRecord]:
        raise NotImplementedError

    def _insert_node(self, node: NodeRecord) -> None:
        raise NotImplementedError

    def _update_node(self, node: NodeRecord) -> None:
        raise NotImplementedError

    def _delete_node(self, node_id: int) -> None:
        raise NotImplementedError

    def promote_node(self, node_id: int, expected_leader_id: int | None, *, old_leader_active: bool = True) -> None:
        """Make ``node_id`` the leader provided ``expected_leader_id`` still is one.

        The old leader becomes a standby of the new one, or an inactive node when
        ``old_leader_active`` is false (failover). Raises :class:`ConflictError`
        when the precondition no longer holds.
        """
        raise NotImplementedError

    def set_upstream(self, node_id: int, upstream_node_id: int, expected_upstream_id: int | None) -> None:
        raise NotImplementedError

    def set_active(self, node_id: int, active: bool) -> None:
        raise NotImplementedError

    def update_slot_name(self, node_id: int, slot_name: str) -> None:
        raise NotImplementedError

    def create_event(self, node_id: int, event: str, successful: bool, details: str = "") -> EventRecord:
        raise NotImplementedError

    def get_events(self, node_id: int | None = None, limit: int = 20) -> list[EventRecord]:
        raise NotImplementedError

    def add_monitoring_record(
        self, primary_node_id: int, standby_node_id: int, primary_lsn: int, standby: ReplicationStatus
    ) -> None:
        raise NotImplementedError

    def get_node_by_name(self, node_name: str) -> NodeRecord | None:
        for node in self.get_all_nodes():
            if node.node_name == node_name:
                return node
        return None

    def get_active_nodes(self) -> list[NodeRecord]:
        return [node for node in self.get_all_nodes() if node.active]

    def get_primary_node(self) -> NodeRecord | None:
        for node in self.get_active_nodes():
            if node.role == NodeRole.LEADER:
                return node
        return None

    def get_downstream_nodes(self, upstream_node_id: int) -> list[NodeRecord]:
        return [node for node in self.get_active_nodes() if node.upstream_node_id == upstream_node_id]

    def get_sibling_nodes(self, node: NodeRecord) -> list[NodeRecord]:
        """Active nodes sharing ``node``'s upstream, witnesses included."""
        return [
            other
            for other in self.get_active_nodes()
            if other.node_id != node.node_id
            and other.upstream_node_id == node.upstream_node_id
            and other.role != NodeRole.LEADER
        ]

    def register_node(self, node: NodeRecord, *, force: bool = False) -> NodeRecord:
        existing = self.get_node(node.node_id)
        if existing is not None and not force:
            raise ConfigurationError(
                f"node {node.node_id} is already registered as {existing.node_name!r}",
                hint="use --force to overwrite an existing node record",
            )
        if node.role == NodeRole.LEADER:
            primary = self.get_primary_node()
            if primary is not None and primary.node_id != node.node_id:
                raise ConfigurationError(
                    f"an active leader node is already registered: {primary.node_name!r} (ID: {primary.node_id})"
                )
        elif node.upstream_node_id is None:
            raise ConfigurationError(f"{node.role.value} node {node.node_id} requires an upstream node")
        elif self.get_node(node.upstream_node_id) is None:
            raise ConfigurationError(f"upstream node {node.upstream_node_id} is not registered")
        if existing is None:
            self._insert_node(node)
        else:
            self._update_node(node)
        return node

    def unregister_node(self, node_id: int) -> NodeRecord:
        node = self.get_node(node_id)
        if node is None:
            raise ConfigurationError(f"node {node_id} is not registered")
        downstream = self.get_downstream_nodes(node_id)
        if downstream:
            names = ", ".join(repr(other.node_name) for other in downstream)
            raise ConfigurationError(f"node {node_id} still has attached downstream nodes: {names}")
        self._delete_node(node_id)
        return node

    def ensure_schema(self) -> None:
        pass

    def sync_from(self, nodes: list[NodeRecord]) -> int:
        """Make the node records here match ``nodes``, returns the number of records changed.

        Used on witnesses, which keep their own copy of the leader's records.
        Upstream nodes are always written before the nodes following them, and a
        leader that lost its role is deactivated before its successor is written.
        """
        source = {node.node_id: node for node in nodes}
        for node in self.get_active_nodes():
            replacement = source.get(node.node_id)
            if node.role == NodeRole.LEADER and (replacement is None or replacement.role != NodeRole.LEADER):
                self.set_active(node.node_id, False)
        pending = dict(source)
        changed = 0
        while pending:
            ready = [node for node in pending.values() if node.upstream_node_id not in pending]
            if not ready:
                raise ConfigurationError("node records contain an upstream cycle")
            for node in ready:
                existing = self.get_node(node.node_id)
                if existing is None:
                    self._insert_node(node)
                    changed += 1
                elif existing != node:
                    self._update_node(node)
                    changed += 1
                del pending[node.node_id]
        for node in self.get_all_nodes():
            if node.node_id not in source:
                self._delete_node(node.node_id)
                changed += 1
        return changed


class PostgresNodeRegistry(NodeRegistry):
    def __init__(self, conn: NodeConnection) -> None:
        self.conn = conn
        self.log = logging.getLogger("NodeRegistry")

    def ensure_schema(self) -> None:
        self.conn.execute(SCHEMA_DDL)

    def get_node(self, node_id: int) -> NodeRecord | None:
        row = self.conn.query_one(f"SELECT {NODE_COLUMNS} FROM pgwarden.nodes WHERE node_id = %s", (node_id,))
        return node_from_row(row) if row else None

    def get_all_nodes(self) -> list[NodeRecord]:
        rows = self.conn.query(f"SELECT {NODE_COLUMNS} FROM pgwarden.nodes ORDER BY node_id")
        return [node_from_row(row) for row in rows]

    def _node_params(self, node: NodeRecord) -> dict[str, Any]:
        params = node.as_dict()
        params["role"] = node.role.value
        return params

    def _insert_node(self, node: NodeRecord) -> None:
        self.conn.execute(
            f"INSERT INTO pgwarden.nodes ({NODE_COLUMNS}) VALUES ("
            "%(node_id)s, %(upstream_node_id)s, %(active)s, %(node_name)s, %(role)s, %(priority)s, "
            "%(conninfo)s, %(ssh_host)s, %(slot_name)s, %(config_file)s, %(control_url)s, %(location)s)",
            self._node_params(node),
        )

    def _update_node(self, node: NodeRecord) -> None:
        self.conn.execute(
            "UPDATE pgwarden.nodes SET upstream_node_id = %(upstream_node_id)s, active = %(active)s, "
            "node_name = %(node_name)s, role = %(role)s, priority = %(priority)s, conninfo = %(conninfo)s, "
            "ssh_host = %(ssh_host)s, slot_name = %(slot_name)s, config_file = %(config_file)s, "
            "control_url = %(control_url)s, location = %(location)s WHERE node_id = %(node_id)s",
            self._node_params(node),
        )

    def _delete_node(self, node_id: int) -> None:
        self.conn.execute("DELETE FROM pgwarden.nodes WHERE node_id = %s", (node_id,))

    def promote_node(self, node_id: int, expected_leader_id: int | None, *, old_leader_active: bool = True) -> None:
        params = {"node_id": node_id, "expected_leader_id": expected_leader_id, "old_leader_active": old_leader_active}
        if expected_leader_id is None:
            query = (
                "UPDATE pgwarden.nodes SET role = 'leader', upstream_node_id = NULL, active = TRUE "
                " WHERE node_id = %(node_id)s AND role = 'standby' "
                "   AND NOT EXISTS (SELECT 1 FROM pgwarden.nodes WHERE role = 'leader' AND active)"
            )
        else:
            # Both rows are locked and checked before either is written: the old
            # leader is only demoted when the candidate is still a standby, and the
            # candidate only promoted when the demotion happened
            query = (
                "WITH candidate AS ("
                "    SELECT node_id FROM pgwarden.nodes "
                "     WHERE node_id = %(node_id)s AND role = 'standby' FOR UPDATE), "
                "old_leader AS ("
                "    SELECT node_id FROM pgwarden.nodes "
                "     WHERE node_id = %(expected_leader_id)s AND role = 'leader' AND active FOR UPDATE), "
                "demoted AS ("
                "    UPDATE pgwarden.nodes SET role = 'standby', upstream_node_id = %(node_id)s, "
                "           active = %(old_leader_active)s "
                "     WHERE node_id IN (SELECT node_id FROM old_leader) AND EXISTS (SELECT 1 FROM candidate) "
                " RETURNING node_id) "
                "UPDATE pgwarden.nodes SET role = 'leader', upstream_node_id = NULL, active = TRUE "
                " WHERE node_id IN (SELECT node_id FROM candidate) AND EXISTS (SELECT 1 FROM demoted)"
            )
        try:
            rowcount = self.conn.execute(query, params)
        except QueryError as ex:
            # idx_nodes_single_leader: another node was recorded as leader concurrently
            if isinstance(ex.__cause__, psycopg2.errors.UniqueViolation):
                raise ConflictError(f"unable to record node {node_id} as the new leader, a leader exists") from ex
            raise
        if rowcount != 1:
            raise ConflictError(
                f"unable to record node {node_id} as the new leader, node {expected_leader_id} is no longer the leader"
            )

    def set_upstream(self, node_id: int, upstream_node_id: int, expected_upstream_id: int | None) -> None:
        rowcount = self.conn.execute(
            "UPDATE pgwarden.nodes SET upstream_node_id = %s, active = TRUE "
            " WHERE node_id = %s AND upstream_node_id IS NOT DISTINCT FROM %s AND role <> 'leader'",
            (upstream_node_id, node_id, expected_upstream_id),
        )
        if rowcount != 1:
            raise ConflictError(f"upstream of node {node_id} is no longer {expected_upstream_id}")

    def set_active(self, node_id: int, active: bool) -> None:
        self.conn.execute("UPDATE pgwarden.nodes SET active = %s WHERE node_id = %s", (active, node_id))

    def update_slot_name(self, node_id: int, slot_name: str) -> None:
        self.conn.execute("UPDATE pgwarden.nodes SET slot_name = %s WHERE node_id = %s", (slot_name, node_id))

    def create_event(self, node_id: int, event: str, successful: bool, details: str = "") -> EventRecord:
        record = EventRecord(node_id=node_id, event=event, successful=successful, details=details)
        try:
            self.conn.execute(
                "INSERT INTO pgwarden.events (node_id, event, successful, details) VALUES (%s, %s, %s, %s)",
                (node_id, event, successful, details),
            )
        except QueryError as ex:
            # events are written on the leader; during a failover there may be none
            self.log.warning("Unable to record event %r for node %d: %s", event, node_id, ex)
        return record

    def get_events(self, node_id: int | None = None, limit: int = 20) -> list[EventRecord]:
        rows = self.conn.query(
            "SELECT node_id, event, successful, details, "
            "       to_char(event_timestamp AT TIME ZONE 'UTC', 'YYYY-MM-DD\"T\"HH24:MI:SS.US\"Z\"') AS event_timestamp "
            "  FROM pgwarden.events WHERE %(node_id)s::int IS NULL OR node_id = %(node_id)s "
            " ORDER BY event_timestamp DESC LIMIT %(limit)s",
            {"node_id": node_id, "limit": limit},
        )
        return [EventRecord(**row) for row in rows]

    def add_monitoring_record(
        self, primary_node_id: int, standby_node_id: int, primary_lsn: int, standby: ReplicationStatus
    ) -> None:
        self.conn.execute(
            "INSERT INTO pgwarden.monitoring_history (primary_node_id, standby_node_id, last_wal_primary_location, "
            "last_wal_standby_location, replication_lag, apply_lag) VALUES (%s, %s, %s, %s, %s, %s)",
            (
                primary_node_id,
                standby_node_id,
                format_lsn(primary_lsn),
                format_lsn(standby.wal_receive_lsn),
                standby.lag_seconds,
                max(0, standby.wal_receive_lsn - standby.wal_replay_lsn),
            ),
        )


class MemoryNodeRegistry(NodeRegistry):
    def __init__(self, nodes: list[NodeRecord] | None = None) -> None:
        self.lock = threading.Lock()
        self.nodes: dict[int, NodeRecord] = {node.node_id: node for node in nodes or []}
        self.events: list[EventRecord] = []
        self.monitoring_history: list[dict[str, Any]] = []

    def get_node(self, node_id: int) -> NodeRecord | None:
        with self.lock:
            return self.nodes.get(node_id)

    def get_all_nodes(self) -> list[NodeRecord]:
        with self.lock:
            return [self.nodes[node_id] for node_id in sorted(self.nodes)]

    def _insert_node(self, node: NodeRecord) -> None:
        with self.lock:
            self.nodes[node.node_id] = node

    _update_node = _insert_node

    def _delete_node(self, node_id: int) -> None:
        with self.lock:
            del self.nodes[node_id]

    def _replace(self, node_id: int, **changes: Any) -> None:
        self.nodes[node_id] = self.nodes[node_id].with_changes(**changes)

    def promote_node(self, node_id: int, expected_leader_id: int | None, *, old_leader_active: bool = True) -> None:
        with self.lock:
            node = self.nodes.get(node_id)
            if node is None or node.role != NodeRole.STANDBY:
                raise ConflictError(f"node {node_id} is not a registered standby")
            if expected_leader_id is None:
                if any(other.role == NodeRole.LEADER and other.active for other in self.nodes.values()):
                    raise ConflictError(f"unable to record node {node_id} as the new leader, a leader exists")
            else:
                old = self.nodes.get(expected_leader_id)
                if old is None or old.role != NodeRole.LEADER or not old.active:
                    raise ConflictError(
                        f"unable to record node {node_id} as the new leader, "
                        f"node {expected_leader_id} is no longer the leader"
                    )
                self._replace(
                    expected_leader_id, role=NodeRole.STANDBY, upstream_node_id=node_id, active=old_leader_active
                )
            self._replace(node_id, role=NodeRole.LEADER, upstream_node_id=None, active=True)

    def set_upstream(self, node_id: int, upstream_node_id: int, expected_upstream_id: int | None) -> None:
        with self.lock:
            node = self.nodes.get(node_id)
            if node is None or node.role == NodeRole.LEADER or node.upstream_node_id != expected_upstream_id:
                raise ConflictError(f"upstream of node {node_id} is no longer {expected_upstream_id}")
            self._replace(node_id, upstream_node_id=upstream_node_id, active=True)

    def set_active(self, node_id: int, active: bool) -> None:
        with self.lock:
            if node_id in self.nodes:
                self._replace(node_id, active=active)

    def update_slot_name(self, node_id: int, slot_name: str) -> None:
        with self.lock:
            if node_id in self.nodes:
                self._replace(node_id, slot_name=slot_name)

    def create_event(self, node_id: int, event: str, successful: bool, details: str = "") -> EventRecord:
        record = EventRecord(node_id=node_id, event=event, successful=successful, details=details)
        with self.lock:
            self.events.append(record)
        return record

    def get_events(self, node_id: int | None = None, limit: int = 20) -> list[EventRecord]:
        with self.lock:
            events = [event for event in reversed(self.events) if node_id is None or event.node_id == node_id]
        return events[:limit]

    def add_monitoring_record(
        self, primary_node_id: int, standby_node_id: int, primary_lsn: int, standby: ReplicationStatus
    ) -> None:
        with self.lock:
            self.monitoring_history.append(
                {
                    "primary_node_id": primary_node_id,
                    "standby_node_id": standby_node_id,
                    "primary_lsn": primary_lsn,
                    "standby_lsn": standby.wal_receive_lsn,
                    "lag_seconds": standby.lag_seconds,
                }
            )
