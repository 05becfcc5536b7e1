"""
pgwarden - replication monitoring component

Copyright (c) 2015 Ohmu Ltd
Copyright (c) 2014 F-Secure

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pgwarden import logutil
from pgwarden.clock import Clock, poll_until
from pgwarden.common import format_lsn
from pgwarden.common_types import NodeRecord, NodeRole, RecoveryType, ReplicationStatus
from pgwarden.config import Config
from pgwarden.control_state import ControlState
from pgwarden.dbutils import Connector, NodeConnection
from pgwarden.default import (
    LOG_STATUS_INTERVAL,
    RECONNECT_ATTEMPTS,
    RECONNECT_INTERVAL,
    REPLICATION_LAG_CRITICAL,
    REPLICATION_LAG_WARNING,
)
from pgwarden.errors import ConfigurationError, LocalNodeFailure, PgWardenError, QueryError, TransientError
from pgwarden.registry import NodeRegistry, PostgresNodeRegistry
from pgwarden.statsd import StatsClient
from typing import Callable

import logging

RegistryFactory = Callable[[NodeConnection], NodeRegistry]


class MonitorEvent(Enum):
    OK = "ok"
    LEADER_LOST = "leader_lost"
    UPSTREAM_LOST = "upstream_lost"


def collect_status(conn: NodeConnection) -> ReplicationStatus:
    info = conn.replication_info()
    if info.in_recovery:
        replay_lsn = info.last_wal_replay_lsn
        # a standby restoring from archive has no receive position
        receive_lsn = max(info.last_wal_receive_lsn, replay_lsn)
        recovery_type = RecoveryType.STANDBY
    else:
        receive_lsn = replay_lsn = conn.current_wal_lsn()
        recovery_type = RecoveryType.LEADER
    senders = conn.sender_stats()
    slots = conn.slot_stats()
    return ReplicationStatus(
        is_reachable=True,
        recovery_type=recovery_type,
        wal_receive_lsn=receive_lsn,
        wal_replay_lsn=replay_lsn,
        lag_seconds=info.replication_lag_seconds,
        active_slot_count=slots.active_slots,
        free_slot_count=slots.free,
        free_sender_count=senders.free,
    )


class ReplicationMonitor:
    def __init__(
        self,
        config: Config,
        *,
        connector: Connector,
        control_state: ControlState,
        clock: Clock | None = None,
        stats: StatsClient | None = None,
        registry_factory: RegistryFactory = PostgresNodeRegistry,
    ) -> None:
        self.log = logging.getLogger("ReplicationMonitor")
        self.config = config
        self.connector = connector
        self.control_state = control_state
        self.clock = clock or Clock()
        self.stats = stats or StatsClient(host=None)
        self.registry_factory = registry_factory
        self.node_id: int = config["node_id"]
        self.db_conns: dict[int, NodeConnection] = {}
        self.nodes: dict[int, NodeRecord] = {}
        self.node_status: dict[int, ReplicationStatus] = {}
        self.replication_lag_over_warning_limit = False
        self.last_status_log_time: float | None = None
        self.last_monitoring_success_time: float | None = None
        self.log.debug("Initialized ReplicationMonitor for node %d", self.node_id)

    @property
    def local_node(self) -> NodeRecord | None:
        return self.nodes.get(self.node_id)

    def connection_for(self, node: NodeRecord) -> NodeConnection | None:
        conn = self.db_conns.get(node.node_id)
        if conn is not None and not conn.closed:
            return conn
        conn = self.connector.connect(node.conninfo, name=f"{node.node_name!r} (ID: {node.node_id})")
        if conn is not None:
            self.db_conns[node.node_id] = conn
        return conn

    def close_connection(self, node_id: int) -> None:
        conn = self.db_conns.pop(node_id, None)
        if conn is not None:
            conn.close()

    def close(self) -> None:
        for node_id in list(self.db_conns):
            self.close_connection(node_id)

    def poll(self, node: NodeRecord) -> ReplicationStatus:
        """Check ``node`` once; failures are reported in the returned status, never raised."""
        conn = self.connection_for(node)
        if conn is None:
            status = ReplicationStatus(is_reachable=False, error="connection failed")
        else:
            try:
                status = collect_status(conn)
            except QueryError as ex:
                self.log.warning("Failed to poll node %r: %s", node.node_name, ex)
                self.close_connection(node.node_id)
                status = ReplicationStatus(is_reachable=False, error=str(ex))
        self.node_status[node.node_id] = status
        return status

    def try_reconnect(self, node: NodeRecord) -> ReplicationStatus:
        """Keep probing ``node`` for ``reconnect_attempts * reconnect_interval`` seconds."""
        interval = self.config.get("reconnect_interval", RECONNECT_INTERVAL)
        timeout = self.config.get("reconnect_attempts", RECONNECT_ATTEMPTS) * interval
        self.log.info(
            "Checking state of node %r (ID: %d), for up to %.0f seconds", node.node_name, node.node_id, timeout
        )
        reachable, status = poll_until(
            self.clock,
            lambda: self.poll(node),
            lambda status: status.is_reachable,
            timeout=timeout,
            interval=interval,
        )
        if reachable:
            self.log.info("Reconnected to node %r (ID: %d)", node.node_name, node.node_id)
        else:
            self.log.warning("Unable to reconnect to node %r (ID: %d) after %.0f seconds", node.node_name, node.node_id, timeout)
        return status

    def local_registry(self) -> NodeRegistry:
        node = self.local_node or NodeRecord(
            node_id=self.node_id,
            node_name=self.config["node_name"],
            role=NodeRole.STANDBY,
            conninfo=self.config["conninfo"],
        )
        conn = self.connection_for(node)
        if conn is None:
            raise TransientError(f"unable to connect to local node {node.node_name!r}")
        return self.registry_factory(conn)

    def leader_registry(self) -> NodeRegistry | None:
        for node in self.nodes.values():
            if node.role == NodeRole.LEADER and node.active:
                conn = self.connection_for(node)
                if conn is not None:
                    return self.registry_factory(conn)
        return None

    def refresh_nodes(self, registry: NodeRegistry) -> None:
        nodes = {node.node_id: node for node in registry.get_all_nodes()}
        if self.node_id not in nodes:
            raise ConfigurationError(
                f"node {self.node_id} is not registered",
                hint="register this node with `pgwarden-ctl register` first",
            )
        for node_id in set(self.db_conns) - set(nodes):
            self.log.debug("Removing leftover connection for node %r", node_id)
            self.close_connection(node_id)
        self.nodes = nodes

    def handle_local_failure(self) -> None:
        node = self.local_node
        name = node.node_name if node else self.config["node_name"]
        self.stats.increase("local_node_failure")
        registry = self.leader_registry() if node is None or node.role != NodeRole.LEADER else None
        if registry is not None:
            try:
                registry.set_active(self.node_id, False)
                registry.create_event(self.node_id, "standby_failure", False, "unable to connect to local node")
            except PgWardenError as ex:
                self.log.warning("Unable to mark node %d as failed: %s", self.node_id, ex)
        logutil.log_detail(self.log, "local node %r was unreachable for the whole reconnection period", name)
        raise LocalNodeFailure(f"unable to connect to local node {name!r}, terminating")

    def check(self) -> MonitorEvent:
        """One monitoring iteration for the local node."""
        local_stub = self.local_node or NodeRecord(
            node_id=self.node_id,
            node_name=self.config["node_name"],
            role=NodeRole.STANDBY,
            conninfo=self.config["conninfo"],
        )
        local_status = self.poll(local_stub)
        if not local_status.is_reachable:
            self.log.warning("Unable to connect to local node %r", local_stub.node_name)
            local_status = self.try_reconnect(local_stub)
            if not local_status.is_reachable:
                if self.control_state.is_paused():
                    # a paused node is expected to go down, e.g. the leader during a switchover
                    logutil.log_notice(self.log, "local node is unreachable but failover handling is paused")
                    return MonitorEvent.OK
                self.handle_local_failure()

        self.refresh_nodes(self.local_registry())
        node = self.nodes[self.node_id]

        if node.role == NodeRole.LEADER or node.upstream_node_id is None:
            self.log_status(node, None)
            self.last_monitoring_success_time = self.clock.monotonic()
            return MonitorEvent.OK

        upstream = self.nodes.get(node.upstream_node_id)
        if upstream is None:
            raise ConfigurationError(f"upstream node {node.upstream_node_id} of node {self.node_id} is not registered")

        upstream_status = self.poll(upstream)
        if not upstream_status.is_reachable:
            self.log.warning("Unable to connect to upstream node %r (ID: %d)", upstream.node_name, upstream.node_id)
            self.stats.increase("upstream_unreachable")
            upstream_status = self.try_reconnect(upstream)
            if not upstream_status.is_reachable:
                if upstream.role == NodeRole.LEADER:
                    logutil.log_notice(self.log, "leader node %r (ID: %d) is unreachable", upstream.node_name, upstream.node_id)
                    return MonitorEvent.LEADER_LOST
                logutil.log_notice(self.log, "upstream node %r (ID: %d) is unreachable", upstream.node_name, upstream.node_id)
                return MonitorEvent.UPSTREAM_LOST
            self.record_event("daemon_upstream_reconnect", True, f"reconnected to upstream node {upstream.node_id}")

        self.control_state.set_upstream_last_seen()
        if node.role == NodeRole.WITNESS:
            self.sync_witness_registry()
        else:
            self.check_replication_lag(node, local_status)
            self.record_monitoring_history(upstream, upstream_status, local_status)
        self.log_status(node, upstream)
        self.last_monitoring_success_time = self.clock.monotonic()
        return MonitorEvent.OK

    def record_event(self, event: str, successful: bool, details: str) -> None:
        registry = self.leader_registry()
        if registry is None:
            self.log.warning("No leader available to record event %r", event)
            return
        try:
            registry.create_event(self.node_id, event, successful, details)
        except PgWardenError as ex:
            self.log.warning("Unable to record event %r: %s", event, ex)

    def sync_witness_registry(self) -> None:
        """Witnesses have no replicated registry; copy the leader's node records locally."""
        leader = self.leader_registry()
        if leader is None:
            return
        local = self.local_registry()
        try:
            changed = local.sync_from(leader.get_all_nodes())
            if changed:
                self.log.info("Copied %d changed node record(s) from the leader", changed)
        except PgWardenError as ex:
            self.log.warning("Unable to copy node records to witness: %s", ex)

    def check_replication_lag(self, node: NodeRecord, status: ReplicationStatus) -> None:
        lag = status.lag_seconds
        if lag is None:
            return
        self.stats.gauge("pg.replication_lag", lag, tags={"node": node.node_name})
        warning = self.config.get("replication_lag_warning", REPLICATION_LAG_WARNING)
        critical = self.config.get("replication_lag_critical", REPLICATION_LAG_CRITICAL)
        if lag >= critical:
            self.log.error("Replication lag of node %r is %.1fs, over the critical limit of %.1fs", node.node_name, lag, critical)
            self.replication_lag_over_warning_limit = True
        elif lag >= warning:
            self.log.warning("Replication lag of node %r is %.1fs, over the warning limit of %.1fs", node.node_name, lag, warning)
            self.replication_lag_over_warning_limit = True
        elif self.replication_lag_over_warning_limit:
            self.log.info("Replication lag of node %r is back under the warning limit: %.1fs", node.node_name, lag)
            self.replication_lag_over_warning_limit = False

    def record_monitoring_history(
        self, upstream: NodeRecord, upstream_status: ReplicationStatus, local_status: ReplicationStatus
    ) -> None:
        if not self.config.get("monitoring_history", False):
            return
        if upstream.role != NodeRole.LEADER:
            return
        registry = self.leader_registry()
        if registry is None:
            return
        try:
            registry.add_monitoring_record(upstream.node_id, self.node_id, upstream_status.wal_receive_lsn, local_status)
        except PgWardenError as ex:
            self.log.warning("Unable to write monitoring history: %s", ex)
            self.stats.increase("monitoring_history_failure")

    def log_status(self, node: NodeRecord, upstream: NodeRecord | None) -> None:
        now = self.clock.monotonic()
        interval = self.config.get("log_status_interval", LOG_STATUS_INTERVAL)
        if self.last_status_log_time is not None and now - self.last_status_log_time < interval:
            return
        self.last_status_log_time = now
        status = self.node_status.get(node.node_id) or ReplicationStatus()
        if upstream is None:
            self.log.info(
                "monitoring cluster leader %r (ID: %d), current LSN %s",
                node.node_name,
                node.node_id,
                format_lsn(status.wal_receive_lsn),
            )
        else:
            self.log.info(
                "node %r (ID: %d) monitoring upstream node %r (ID: %d), last received LSN %s",
                node.node_name,
                node.node_id,
                upstream.node_name,
                upstream.node_id,
                format_lsn(status.wal_receive_lsn),
            )

    def check_nodes(self, nodes: list[NodeRecord]) -> dict[int, ReplicationStatus]:
        """Poll several nodes concurrently."""
        if not nodes:
            return {}
        with ThreadPoolExecutor(max_workers=min(len(nodes), 16)) as executor:
            results = dict(zip([node.node_id for node in nodes], executor.map(self.poll, nodes)))
        return results

    def find_new_leader(self) -> NodeRecord | None:
        """Degraded monitoring: look for a node that is running as leader."""
        candidates = [node for node in self.nodes.values() if node.node_id != self.node_id and node.active]
        for node_id, status in self.check_nodes(candidates).items():
            if status.is_reachable and status.recovery_type == RecoveryType.LEADER:
                node = self.nodes[node_id]
                self.log.info("Found node %r (ID: %d) running as leader", node.node_name, node.node_id)
                return node
        return None

    def get_state(self) -> dict[str, object]:
        return {
            "node_id": self.node_id,
            "nodes": {str(node_id): node.as_dict() for node_id, node in self.nodes.items()},
            "status": {str(node_id): status.as_dict() for node_id, status in self.node_status.items()},
            "replication_lag_over_warning_limit": self.replication_lag_over_warning_limit,
        }
