# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - promote, follow, rejoin and switchover

A switchover runs in three phases:

A. pre-flight checks, which have no side effects and can be repeated freely;
B. stop the leader, wait for this node to receive the leader's shutdown
   checkpoint, promote this node and record it as the leader. There is no way
   back once this phase has started;
C. rejoin the old leader as a standby of this node and optionally have the
   siblings follow. Failures here leave a working leader, so they downgrade the
   result to "incomplete" instead of failing the switchover.

Failover handling on the involved nodes is paused after phase A and resumed
when the run ends, whichever way it ends.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pgwarden import logutil
from pgwarden.clock import Clock, poll_until
from pgwarden.common import format_lsn, is_valid_lsn, parse_option_output
from pgwarden.common_types import CheckStatus, NodeRecord, NodeRole, RecoveryType, ShutdownState
from pgwarden.config import Config
from pgwarden.control_state import ControlState, ControlStore, HttpControlStore
from pgwarden.controldata import ControlData, read_control_data
from pgwarden.dbutils import Connector, NodeConnection
from pgwarden.default import (
    CHECK_INTERVAL,
    NODE_REJOIN_TIMEOUT,
    PROMOTE_CHECK_INTERVAL,
    PROMOTE_CHECK_TIMEOUT,
    REPLICATION_LAG_CRITICAL,
    REPLICATION_LAG_WARNING,
    SHUTDOWN_CHECK_TIMEOUT,
    SLOT_NAME_TEMPLATE,
    STANDBY_RECONNECT_TIMEOUT,
    WAL_RECEIVE_CHECK_TIMEOUT,
)
from pgwarden.errors import (
    ConfigurationError,
    FollowError,
    IncompleteError,
    PgWardenError,
    PromotionError,
    QueryError,
    RejoinError,
    RemoteCommandError,
    SwitchoverError,
    TransientError,
)
from pgwarden.registry import NodeRegistry, PostgresNodeRegistry
from pgwarden.remote import make_remote_command, parse_check_status, parse_shutdown_status, RemoteCommandChannel, RemoteResult
from pgwarden.server_control import ServerControl
from pgwarden.statsd import StatsClient
from typing import Callable

import logging
import shlex

# pre-flight checks that need a working remote command channel to the leader
REMOTE_CHECKS = frozenset(["ssh", "remote-command"])


@dataclass(frozen=True)
class PreflightCheck:
    name: str
    passed: bool
    message: str = ""
    # failures of non-overridable checks stop a switchover even with --force
    overridable: bool = True


@dataclass(frozen=True)
class SwitchoverOptions:
    dry_run: bool = False
    force: bool = False
    always_promote: bool = False
    force_rewind: bool = False
    siblings_follow: bool = False
    no_pause: bool = False
    force_unpause: bool = False


@dataclass
class SwitchoverPlan:
    leader: NodeRecord
    candidate: NodeRecord
    siblings: list[NodeRecord]
    reachable_siblings: list[NodeRecord] = field(default_factory=list)
    checks: list[PreflightCheck] = field(default_factory=list)
    required_wal_senders: int = 0
    required_slots: int = 0
    paused: dict[int, bool] = field(default_factory=dict)
    shutdown_checkpoint_lsn: int = 0

    def add_check(self, name: str, passed: bool, message: str = "", *, overridable: bool = True) -> PreflightCheck:
        check = PreflightCheck(name=name, passed=passed, message=message, overridable=overridable)
        self.checks.append(check)
        return check

    @property
    def failures(self) -> list[PreflightCheck]:
        return [check for check in self.checks if not check.passed]

    @property
    def passed(self) -> bool:
        return not self.failures

    @property
    def verdict(self) -> tuple[tuple[str, bool, str], ...]:
        return tuple((check.name, check.passed, check.message) for check in self.checks)


def deficit_message(what: str, required: int, available: int) -> str:
    return f"insufficient free {what}: {required} required, {available} available (deficit: {required - available})"


class Orchestrator:
    def __init__(
        self,
        config: Config,
        *,
        connector: Connector,
        control_state: ControlState,
        remote: RemoteCommandChannel,
        server_control: ServerControl,
        clock: Clock | None = None,
        stats: StatsClient | None = None,
        registry_factory: Callable[[NodeConnection], NodeRegistry] = PostgresNodeRegistry,
        control_store_factory: Callable[[str], ControlStore] = HttpControlStore,
        control_data_reader: Callable[[str, str], ControlData | None] = read_control_data,
    ) -> None:
        self.log = logging.getLogger("Orchestrator")
        self.config = config
        self.connector = connector
        self.control_state = control_state
        self.remote = remote
        self.server_control = server_control
        self.clock = clock or Clock()
        self.stats = stats or StatsClient(host=None)
        self.registry_factory = registry_factory
        self.control_store_factory = control_store_factory
        self.control_data_reader = control_data_reader
        self.node_id: int = config["node_id"]

    @property
    def check_interval(self) -> float:
        return self.config.get("check_interval", CHECK_INTERVAL)

    def connect_local(self) -> NodeConnection:
        conn = self.connector.connect(self.config["conninfo"], name="local node")
        if conn is None:
            raise TransientError(
                "unable to connect to local node",
                hint="check that PostgreSQL is running and `conninfo` is correct",
            )
        return conn

    def connect(self, node: NodeRecord) -> NodeConnection | None:
        return self.connector.connect(node.conninfo, name=f"{node.node_name!r} (ID: {node.node_id})")

    def local_record(self, registry: NodeRegistry) -> NodeRecord:
        node = registry.get_node(self.node_id)
        if node is None:
            raise ConfigurationError(
                f"no record found for node {self.node_id}",
                hint="register this node with `pgwarden-ctl register` first",
            )
        return node

    def run_remote(self, node: NodeRecord, action: str) -> RemoteResult:
        command = make_remote_command(node, action, self.config.get("pgwarden_bindir", ""))
        return self.remote.run_on_node(node, command)

    def slot_name_for(self, node: NodeRecord) -> str:
        if not self.config.get("use_replication_slots", False):
            return ""
        return node.slot_name or SLOT_NAME_TEMPLATE.format(node_id=node.node_id)

    def downstream_state(self, upstream_conn: NodeConnection, application_name: str) -> str | None:
        try:
            return upstream_conn.downstream_state(application_name)
        except QueryError as ex:
            self.log.debug("Unable to query replication state: %s", ex)
            return None

    def wait_attached(self, upstream_conn: NodeConnection, application_name: str, timeout: float) -> bool:
        attached, state = poll_until(
            self.clock,
            lambda: self.downstream_state(upstream_conn, application_name),
            lambda state: state == "streaming",
            timeout=timeout,
            interval=self.check_interval,
        )
        if not attached:
            self.log.warning(
                "Node %r is not streaming from its upstream after %.0fs, replication state: %r",
                application_name,
                timeout,
                state,
            )
        return attached

    def check_upstream_capacity(self, upstream_conn: NodeConnection, node: NodeRecord, slot_name: str) -> list[str]:
        """Problems preventing ``node`` from attaching to ``upstream_conn``, empty when there are none."""
        problems = []
        if node.node_name not in upstream_conn.attached_application_names():
            senders = upstream_conn.sender_stats()
            if senders.free < 1:
                problems.append(deficit_message("WAL senders on upstream", 1, senders.free))
        if slot_name and upstream_conn.replication_slot(slot_name) is None:
            slots = upstream_conn.slot_stats()
            if slots.free < 1:
                problems.append(deficit_message("replication slots on upstream", 1, slots.free))
        return problems

    def promote_local(self, conn: NodeConnection) -> None:
        if self.config.get("service_promote_command"):
            if not self.server_control.promote():
                raise PromotionError("service_promote_command failed")
        else:
            try:
                if not conn.promote():
                    raise PromotionError("pg_promote() returned false")
            except QueryError as ex:
                raise PromotionError(f"unable to promote local node: {ex}") from ex

        timeout = self.config.get("promote_check_timeout", PROMOTE_CHECK_TIMEOUT)
        promoted, _ = poll_until(
            self.clock,
            conn.recovery_type,
            lambda recovery_type: recovery_type == RecoveryType.LEADER,
            timeout=timeout,
            interval=self.config.get("promote_check_interval", PROMOTE_CHECK_INTERVAL),
        )
        if not promoted:
            raise PromotionError(
                f"promotion of local node not confirmed within {timeout:.0f} seconds",
                hint="check the PostgreSQL log on this node",
            )
        logutil.log_notice(self.log, "local node was promoted to leader")

    def promote(self) -> NodeRecord:
        conn = self.connect_local()
        try:
            registry = self.registry_factory(conn)
            local = self.local_record(registry)
            if conn.recovery_type() != RecoveryType.STANDBY:
                raise ConfigurationError("this node is not a standby, unable to promote it")

            leader = registry.get_primary_node()
            if leader is not None:
                leader_conn = self.connect(leader)
                if leader_conn is not None:
                    running_as_leader = leader_conn.recovery_type() == RecoveryType.LEADER
                    leader_conn.close()
                    if running_as_leader:
                        raise ConfigurationError(
                            "this cluster already has an active leader",
                            detail=f"current leader is {leader.node_name!r} (ID: {leader.node_id})",
                            hint="use `pgwarden-ctl switchover` to promote this node and demote the current leader",
                        )

            info = conn.replication_info()
            if info.wal_replay_paused and info.last_wal_receive_lsn > info.last_wal_replay_lsn:
                raise PromotionError(
                    "WAL replay is paused and WAL is still waiting to be replayed",
                    detail=(
                        f"last received LSN {format_lsn(info.last_wal_receive_lsn)}, "
                        f"last replayed LSN {format_lsn(info.last_wal_replay_lsn)}"
                    ),
                    hint="resume replay with pg_wal_replay_resume() before promoting",
                )

            self.promote_local(conn)
            registry.promote_node(local.node_id, leader.node_id if leader else None, old_leader_active=False)
            term = self.control_state.increment_term()
            registry.create_event(
                local.node_id,
                "standby_promote",
                True,
                f"server {local.node_name!r} (ID: {local.node_id}) was successfully promoted to leader in term {term}",
            )
            self.stats.increase("standby_promote")
            return registry.get_node(local.node_id) or local
        finally:
            conn.close()

    def follow(self, upstream_node_id: int | None = None, *, wait: bool = True) -> NodeRecord:
        """Point this running standby (or witness) at a new upstream, by default the current leader."""
        conn = self.connect_local()
        try:
            registry = self.registry_factory(conn)
            local = self.local_record(registry)
            if upstream_node_id is None:
                target = registry.get_primary_node()
                if target is None:
                    raise ConfigurationError("unable to determine the current leader, specify the node to follow")
            else:
                target = registry.get_node(upstream_node_id)
                if target is None:
                    raise ConfigurationError(f"no record found for node {upstream_node_id}")
            if target.node_id == local.node_id:
                raise ConfigurationError("a node can't follow itself")
        finally:
            conn.close()

        target_conn = self.connect(target)
        if target_conn is None:
            raise FollowError(f"unable to connect to node {target.node_name!r} (ID: {target.node_id})")
        try:
            if target_conn.recovery_type() != RecoveryType.LEADER:
                raise FollowError(f"node {target.node_name!r} (ID: {target.node_id}) is not running as leader")
            target_registry = self.registry_factory(target_conn)
            current = target_registry.get_node(local.node_id) or local

            if local.is_witness:
                if current.upstream_node_id != target.node_id:
                    target_registry.set_upstream(local.node_id, target.node_id, current.upstream_node_id)
                target_registry.create_event(
                    local.node_id, "standby_follow", True, f"witness now following node {target.node_id}"
                )
                return target_registry.get_node(local.node_id) or local

            slot_name = self.slot_name_for(local)
            problems = self.check_upstream_capacity(target_conn, local, slot_name)
            if problems:
                raise FollowError(f"unable to attach to node {target.node_name!r}", detail="; ".join(problems))
            if slot_name:
                target_conn.create_replication_slot(slot_name)

            self.server_control.write_replication_config(
                upstream_conninfo=target.conninfo, upstream_name=target.node_name, slot_name=slot_name
            )
            if not self.server_control.restart():
                raise FollowError("unable to restart local node", hint="check the PostgreSQL log on this node")

            if wait and not self.wait_attached(
                target_conn, local.node_name, self.config.get("standby_reconnect_timeout", STANDBY_RECONNECT_TIMEOUT)
            ):
                raise FollowError(f"local node did not attach to node {target.node_name!r} in time")

            if current.upstream_node_id != target.node_id:
                target_registry.set_upstream(local.node_id, target.node_id, current.upstream_node_id)
            if slot_name and slot_name != current.slot_name:
                target_registry.update_slot_name(local.node_id, slot_name)
            target_registry.create_event(
                local.node_id,
                "standby_follow",
                True,
                f"standby attached to upstream node {target.node_name!r} (ID: {target.node_id})",
            )
            self.stats.increase("standby_follow")
            return target_registry.get_node(local.node_id) or local
        finally:
            target_conn.close()

    def find_divergence(self, control: ControlData, upstream_conn: NodeConnection, upstream_conninfo: str) -> str | None:
        """Describe how the local timeline diverges from the upstream's, ``None`` when it doesn't."""
        local_tli = control.timeline_id
        upstream_tli = upstream_conn.timeline_id()
        if local_tli is None or upstream_tli is None or local_tli == upstream_tli:
            return None
        if local_tli > upstream_tli:
            return f"local timeline {local_tli} is ahead of upstream timeline {upstream_tli}"
        history = self.connector.timeline_history(upstream_conninfo, upstream_tli)
        fork_points = [switchpoint for tli, switchpoint in history if tli == local_tli]
        if not fork_points:
            return f"local timeline {local_tli} is not in the history of upstream timeline {upstream_tli}"
        if control.checkpoint_lsn > fork_points[0]:
            return (
                f"local checkpoint {format_lsn(control.checkpoint_lsn)} is past the point where upstream timeline "
                f"{upstream_tli} forked from timeline {local_tli} ({format_lsn(fork_points[0])})"
            )
        return None

    def rejoin(self, upstream_conninfo: str, *, force_rewind: bool = False, wait: bool = True) -> NodeRecord:
        """Reattach this stopped node as a standby of the leader at ``upstream_conninfo``."""
        # local checks first, nothing goes over the network until they pass
        if self.server_control.is_running():
            raise RejoinError("database is still running", hint="stop PostgreSQL on this node before rejoining it")
        control = self.control_data_reader(self.config["data_directory"], self.config.get("pg_bindir", ""))
        if control is None:
            raise RejoinError("unable to read control data of the local data directory")
        needs_rewind = False
        if not control.shut_down_cleanly:
            if not force_rewind:
                raise RejoinError(
                    "database was not shut down cleanly",
                    detail=f"pg_control reports the cluster state as {control.cluster_state!r}",
                    hint="use --force-rewind to repair the data directory with pg_rewind",
                )
            needs_rewind = True

        upstream_conn = self.connector.connect(upstream_conninfo, name="rejoin target")
        if upstream_conn is None:
            raise RejoinError("unable to connect to the rejoin target")
        try:
            if upstream_conn.recovery_type() != RecoveryType.LEADER:
                raise RejoinError("the rejoin target is not running as leader")
            registry = self.registry_factory(upstream_conn)
            leader = registry.get_primary_node()
            if leader is None:
                raise RejoinError("no active leader registered on the rejoin target")
            local = registry.get_node(self.node_id)
            if local is None:
                raise RejoinError(f"no record for node {self.node_id} found on the rejoin target")

            slot_name = self.slot_name_for(local)
            problems = self.check_upstream_capacity(upstream_conn, local, slot_name)
            if problems:
                raise RejoinError("the rejoin target can't accept this node", detail="; ".join(problems))

            divergence = self.find_divergence(control, upstream_conn, upstream_conninfo)
            if divergence:
                if not force_rewind:
                    raise RejoinError(
                        "this node has diverged from the rejoin target",
                        detail=divergence,
                        hint="use --force-rewind to repair the data directory with pg_rewind",
                    )
                needs_rewind = True
            if needs_rewind:
                logutil.log_notice(self.log, "executing pg_rewind against %r", leader.node_name)
                if not self.server_control.run_pg_rewind(upstream_conninfo):
                    raise RejoinError("pg_rewind failed", hint="check the pg_rewind output above")

            if slot_name:
                upstream_conn.create_replication_slot(slot_name)
            self.server_control.write_replication_config(
                upstream_conninfo=leader.conninfo, upstream_name=leader.node_name, slot_name=slot_name
            )
            if not self.server_control.start():
                raise RejoinError("unable to start local node", hint="check the PostgreSQL log on this node")

            if wait and not self.wait_attached(
                upstream_conn, local.node_name, self.config.get("node_rejoin_timeout", NODE_REJOIN_TIMEOUT)
            ):
                raise RejoinError(f"local node did not attach to {leader.node_name!r} in time")

            if local.role == NodeRole.LEADER:
                registry.register_node(
                    local.with_changes(role=NodeRole.STANDBY, upstream_node_id=leader.node_id, active=True), force=True
                )
            elif local.upstream_node_id != leader.node_id:
                registry.set_upstream(local.node_id, leader.node_id, local.upstream_node_id)
            elif not local.active:
                registry.set_active(local.node_id, True)
            if slot_name and slot_name != local.slot_name:
                registry.update_slot_name(local.node_id, slot_name)
            registry.create_event(
                local.node_id,
                "node_rejoin",
                True,
                f"node {local.node_id} is now attached to node {leader.node_id}",
            )
            return registry.get_node(local.node_id) or local
        finally:
            upstream_conn.close()

    def preflight(self, conn: NodeConnection, registry: NodeRegistry, options: SwitchoverOptions) -> SwitchoverPlan:
        """Phase A: gather everything a switchover depends on, without changing anything."""
        candidate = self.local_record(registry)
        leader = registry.get_primary_node()
        if leader is None:
            raise ConfigurationError("no active leader found in the node registry")
        if candidate.node_id == leader.node_id:
            raise ConfigurationError("local node is already the leader")
        siblings = registry.get_sibling_nodes(candidate)
        plan = SwitchoverPlan(leader=leader, candidate=candidate, siblings=siblings)

        plan.add_check(
            "role",
            candidate.role == NodeRole.STANDBY
            and candidate.upstream_node_id == leader.node_id
            and conn.recovery_type() == RecoveryType.STANDBY,
            f"local node must be a standby attached to leader {leader.node_name!r}",
            overridable=False,
        )

        info = conn.replication_info()
        plan.add_check(
            "wal-replay",
            not (info.wal_replay_paused and info.last_wal_receive_lsn > info.last_wal_replay_lsn),
            "WAL replay is paused with WAL still waiting to be replayed",
            overridable=False,
        )
        lag = info.replication_lag_seconds
        critical = self.config.get("replication_lag_critical", REPLICATION_LAG_CRITICAL)
        warning = self.config.get("replication_lag_warning", REPLICATION_LAG_WARNING)
        if lag is not None and lag >= warning:
            self.log.warning("Replication lag of local node is %.1fs", lag)
        plan.add_check("replication-lag", lag is None or lag < critical, f"replication lag is {lag}s")

        leader_conn = self.connect(leader)
        plan.add_check("leader-connection", leader_conn is not None, "unable to connect to leader", overridable=False)
        if leader_conn is not None:
            try:
                plan.add_check(
                    "exclusive-backup",
                    not leader_conn.in_exclusive_backup(),
                    "an exclusive backup is in progress on the leader",
                    overridable=False,
                )
            finally:
                leader_conn.close()

        ssh_ok = self.remote.test_connection(leader)
        plan.add_check("ssh", ssh_ok, f"unable to connect to {leader.ssh_host!r} with ssh", overridable=False)
        if ssh_ok:
            version = self.run_remote(leader, "--version")
            plan.add_check(
                "remote-command",
                version.ok and bool(version.output.strip()),
                "pgwarden-ctl can't be executed on the leader",
                overridable=False,
            )
            data_directory = parse_option_output(
                self.run_remote(leader, "check --data-directory-config --optformat").output
            ).get("configured-data-directory", "UNKNOWN")
            plan.add_check(
                "data-directory-config",
                data_directory == "OK",
                f"configured data directory of the leader doesn't match the running instance ({data_directory})",
                overridable=data_directory != "MISMATCH",
            )
            archive_status, archive_details = parse_check_status(
                self.run_remote(leader, "check --archive-ready --optformat").output
            )
            plan.add_check(
                "archive-ready",
                archive_status in (CheckStatus.OK, CheckStatus.WARNING),
                f"{archive_details.get('files', '?')} WAL files waiting to be archived on the leader ({archive_status.value})",
            )

        for sibling in siblings:
            reachable = self.connector.is_server_available(sibling.conninfo)
            if reachable and options.siblings_follow:
                reachable = self.remote.test_connection(sibling)
            if reachable:
                plan.reachable_siblings.append(sibling)
            else:
                self.log.warning("Sibling node %r (ID: %d) is unreachable", sibling.node_name, sibling.node_id)
        unreachable = len(siblings) - len(plan.reachable_siblings)
        if options.siblings_follow:
            plan.add_check("siblings", unreachable == 0, f"{unreachable} sibling node(s) are unreachable")

        streaming_siblings = [node for node in plan.reachable_siblings if node.role == NodeRole.STANDBY]
        plan.required_wal_senders = 1 + len(streaming_siblings)
        plan.required_slots = len([node for node in siblings if node.slot_name])
        senders = conn.sender_stats()
        plan.add_check(
            "wal-senders",
            senders.free >= plan.required_wal_senders,
            deficit_message("WAL senders on promotion candidate", plan.required_wal_senders, senders.free),
        )
        if plan.required_slots:
            slots = conn.slot_stats()
            plan.add_check(
                "replication-slots",
                slots.free >= plan.required_slots,
                deficit_message("replication slots on promotion candidate", plan.required_slots, slots.free),
            )
        return plan

    def pause_voting(self, plan: SwitchoverPlan) -> None:
        for node in [plan.candidate, plan.leader, *plan.reachable_siblings]:
            control_state = self.control_state_for(node)
            if control_state is None:
                continue
            try:
                plan.paused[node.node_id] = control_state.set_paused(True)
            except TransientError as ex:
                self.log.warning("Unable to pause failover handling on node %r: %s", node.node_name, ex)

    def resume_voting(self, plan: SwitchoverPlan, force_unpause: bool) -> None:
        for node in [plan.candidate, plan.leader, *plan.reachable_siblings]:
            if node.node_id not in plan.paused:
                continue
            was_paused = plan.paused[node.node_id]
            if was_paused and not force_unpause:
                self.log.info("Leaving node %r paused, it was paused before the switchover", node.node_name)
                continue
            control_state = self.control_state_for(node)
            if control_state is None:
                continue
            try:
                control_state.set_paused(False)
            except TransientError as ex:
                self.log.warning("Unable to resume failover handling on node %r: %s", node.node_name, ex)
                logutil.log_hint(self.log, "execute `pgwarden-ctl unpause` on node %r", node.node_name)

    def control_state_for(self, node: NodeRecord) -> ControlState | None:
        if node.node_id == self.node_id:
            return self.control_state
        if not node.control_url:
            return None
        return ControlState(self.control_store_factory(node.control_url))

    def stop_leader(self, plan: SwitchoverPlan, options: SwitchoverOptions) -> None:
        leader = plan.leader
        leader_conn = self.connect(leader)
        checkpoint = False
        if leader_conn is not None:
            try:
                checkpoint = leader_conn.is_superuser()
            finally:
                leader_conn.close()
        action = "service --action=stop" + (" --checkpoint" if checkpoint else "")
        logutil.log_notice(self.log, "stopping current leader %r (ID: %d)", leader.node_name, leader.node_id)
        result = self.run_remote(leader, action)
        if not result.ok:
            self.log.warning("Stop command on leader returned %d, checking its state", result.returncode)

        timeout = self.config.get("shutdown_check_timeout", SHUTDOWN_CHECK_TIMEOUT)
        # an unclean shutdown is final, there is no point in waiting for a clean one
        stopped, (state, lsn) = poll_until(
            self.clock,
            lambda: parse_shutdown_status(self.run_remote(leader, "status --is-shutdown-cleanly").output),
            lambda status: status[0] == ShutdownState.UNCLEAN_SHUTDOWN
            or (status[0] == ShutdownState.SHUTDOWN and is_valid_lsn(status[1])),
            timeout=timeout,
            interval=self.check_interval,
        )
        if state == ShutdownState.UNCLEAN_SHUTDOWN:
            if not options.force:
                raise SwitchoverError(
                    "leader did not shut down cleanly",
                    hint="use --force to continue anyway, the old leader will need to be rewound",
                )
            self.log.warning("Leader did not shut down cleanly, continuing as --force was given")
        elif not stopped:
            raise SwitchoverError(
                f"shutdown of the leader was not confirmed within {timeout:.0f} seconds",
                detail=f"last reported state: {state.value}",
                hint="check the state of the leader, the switchover has not changed anything else",
            )
        plan.shutdown_checkpoint_lsn = lsn
        self.log.info("Leader shutdown checkpoint LSN is %s", format_lsn(lsn))

    def wait_for_checkpoint(self, conn: NodeConnection, plan: SwitchoverPlan, options: SwitchoverOptions) -> None:
        target = plan.shutdown_checkpoint_lsn
        if options.always_promote:
            self.log.info("Not waiting for WAL from the leader as --always-promote was given")
            return
        if not is_valid_lsn(target):
            raise SwitchoverError(
                "the leader's shutdown checkpoint location is unknown",
                hint="use --always-promote to promote without confirming that all WAL was received",
            )
        timeout = self.config.get("wal_receive_check_timeout", WAL_RECEIVE_CHECK_TIMEOUT)
        caught_up, received = poll_until(
            self.clock,
            conn.last_wal_receive_lsn,
            lambda lsn: lsn >= target,
            timeout=timeout,
            interval=self.check_interval,
        )
        if not caught_up:
            raise SwitchoverError(
                "local node has not received all WAL from the leader",
                detail=f"shutdown checkpoint LSN is {format_lsn(target)}, last received LSN is {format_lsn(received)}",
                hint="use --always-promote to promote anyway",
            )

    def demote_and_promote(self, conn: NodeConnection, plan: SwitchoverPlan, options: SwitchoverOptions) -> None:
        """Phase B, each step's result is checked before the next one starts."""
        self.stop_leader(plan, options)
        self.wait_for_checkpoint(conn, plan, options)
        self.promote_local(conn)
        registry = self.registry_factory(conn)
        registry.promote_node(plan.candidate.node_id, plan.leader.node_id, old_leader_active=True)
        self.control_state.increment_term()

    def rejoin_old_leader(self, conn: NodeConnection, plan: SwitchoverPlan, options: SwitchoverOptions) -> list[str]:
        """Phase C, returns what could not be completed."""
        incomplete = []
        leader = plan.leader
        action = f"rejoin --upstream-conninfo={shlex.quote(plan.candidate.conninfo)} --no-wait"
        if options.force_rewind:
            action += " --force-rewind"
        result = self.run_remote(leader, action)
        if not result.ok:
            incomplete.append(f"rejoin of node {leader.node_name!r} failed with exit code {result.returncode}")
        elif not self.wait_attached(conn, leader.node_name, self.config.get("node_rejoin_timeout", NODE_REJOIN_TIMEOUT)):
            incomplete.append(f"node {leader.node_name!r} did not attach as a standby in time")

        # the slot this node used on the old leader is no longer needed
        if plan.candidate.slot_name and not incomplete:
            leader_conn = self.connect(leader)
            if leader_conn is not None:
                try:
                    leader_conn.drop_replication_slot(plan.candidate.slot_name)
                except QueryError as ex:
                    self.log.warning("Unable to drop replication slot %r: %s", plan.candidate.slot_name, ex)
                finally:
                    leader_conn.close()

        if options.siblings_follow:
            for sibling in plan.reachable_siblings:
                result = self.run_remote(sibling, f"follow --upstream-node-id={plan.candidate.node_id}")
                if not result.ok:
                    incomplete.append(f"node {sibling.node_name!r} was unable to follow this node")
        elif plan.siblings:
            names = ", ".join(repr(node.node_name) for node in plan.siblings)
            logutil.log_hint(self.log, "sibling nodes %s are still attached to the old leader", names)
            logutil.log_hint(self.log, "use --siblings-follow or run `pgwarden-ctl follow` on them")
        return incomplete

    def switchover(self, options: SwitchoverOptions) -> SwitchoverPlan:
        conn = self.connect_local()
        try:
            registry = self.registry_factory(conn)
            plan = self.preflight(conn, registry, options)
            for check in plan.checks:
                if not check.passed:
                    self.log.error("Pre-flight check %r failed: %s", check.name, check.message)
            blocking = [check for check in plan.failures if options.force is False or not check.overridable]
            if blocking:
                error_class = RemoteCommandError if blocking[0].name in REMOTE_CHECKS else ConfigurationError
                raise error_class(
                    f"switchover pre-flight check {blocking[0].name!r} failed: {blocking[0].message}",
                    detail="; ".join(f"{check.name}: {check.message}" for check in blocking),
                    hint="fix the problems above or use --force where the checks allow it",
                )
            if options.dry_run:
                self.log.info("Pre-flight checks passed, not continuing as --dry-run was given")
                return plan

            if not options.no_pause:
                self.pause_voting(plan)
            try:
                self.demote_and_promote(conn, plan, options)
                incomplete = self.rejoin_old_leader(conn, plan, options)
            finally:
                self.resume_voting(plan, options.force_unpause)

            details = (
                f"node {plan.candidate.node_id} promoted to leader; "
                f"node {plan.leader.node_id} demoted to standby"
            )
            self.registry_factory(conn).create_event(
                plan.candidate.node_id, "standby_switchover", not incomplete, "; ".join([details, *incomplete])
            )
            if incomplete:
                raise IncompleteError(
                    "switchover completed but could not be confirmed to completion",
                    detail="; ".join(incomplete),
                    hint="check the state of the old leader and siblings, e.g. with `pgwarden-ctl status`",
                )
            logutil.log_notice(self.log, "switchover was successful")
            self.stats.increase("standby_switchover")
            return plan
        except PgWardenError:
            self.stats.increase("standby_switchover_failure")
            raise
        finally:
            conn.close()
