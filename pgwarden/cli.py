"""
pgwarden-ctl - cluster administration and node checks

Copyright (c) 2015 Ohmu Ltd
Copyright (c) 2014 F-Secure

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from logging import getLevelNamesMapping, getLogger
from pathlib import Path
from pgwarden import logutil, node_checks, version
from pgwarden.clock import Clock
from pgwarden.common import format_lsn
from pgwarden.common_types import CheckResult, CheckStatus, NodeRecord, NodeRole, RecoveryType
from pgwarden.config import Config, load_config_file
from pgwarden.control_state import ControlState, ControlStore, HttpControlStore, JsonFileControlStore
from pgwarden.controldata import ControlData, read_control_data
from pgwarden.dbutils import Connector, NodeConnection
from pgwarden.default import (
    CONFIG_FILE_PATH,
    CONNECT_TIMEOUT,
    CONTROL_STATE_FILE_PATH,
    LOCATION,
    PRIORITY,
    REMOTE_COMMAND_TIMEOUT,
    SLOT_NAME_TEMPLATE,
    SSH_OPTIONS,
)
from pgwarden.errors import ConfigurationError, ERR_NODE_STATUS, PgWardenError, SUCCESS, TransientError
from pgwarden.formatter import Formatter, get_formatter
from pgwarden.orchestrator import Orchestrator, SwitchoverOptions
from pgwarden.registry import NodeRegistry, PostgresNodeRegistry
from pgwarden.remote import RemoteCommandChannel
from pgwarden.server_control import ServerControl
from pgwarden.statsd import StatsClient
from typing import Callable, Final

import sys

CHECK_NAMES: Final[tuple[str, ...]] = ("replication-lag", "archive-ready", "downstream", "slots", "role")
CHECK_SEVERITY: Final[list[CheckStatus]] = [CheckStatus.OK, CheckStatus.UNKNOWN, CheckStatus.WARNING, CheckStatus.CRITICAL]
NAGIOS_EXIT_CODES: Final[dict[CheckStatus, int]] = {
    CheckStatus.OK: 0,
    CheckStatus.WARNING: 1,
    CheckStatus.CRITICAL: 2,
    CheckStatus.UNKNOWN: 3,
}


class PgWardenCtl:
    def __init__(
        self,
        config: Config,
        formatter: Formatter,
        *,
        config_path: Path | str | None = None,
        connector: Connector | None = None,
        control_state: ControlState | None = None,
        remote: RemoteCommandChannel | None = None,
        server_control: ServerControl | None = None,
        clock: Clock | None = None,
        registry_factory: Callable[[NodeConnection], NodeRegistry] = PostgresNodeRegistry,
        control_store_factory: Callable[[str], ControlStore] = HttpControlStore,
        control_data_reader: Callable[[str, str], ControlData | None] = read_control_data,
    ) -> None:
        self.log = getLogger("pgwarden-ctl")
        self.config = config
        self.formatter = formatter
        self.config_path = Path(config_path) if config_path else None
        self.stats = StatsClient(**config.get("statsd", {"host": None}))
        self.connector = connector or Connector(timeout=config.get("connect_timeout", CONNECT_TIMEOUT))
        self.control_state = control_state or ControlState(
            JsonFileControlStore(config.get("control_state_file_path", CONTROL_STATE_FILE_PATH))
        )
        self.remote = remote or RemoteCommandChannel(
            ssh_options=config.get("ssh_options", SSH_OPTIONS),
            timeout=config.get("remote_command_timeout", REMOTE_COMMAND_TIMEOUT),
        )
        self.server_control = server_control or ServerControl(config, stats=self.stats)
        self.registry_factory = registry_factory
        self.control_store_factory = control_store_factory
        self.control_data_reader = control_data_reader
        self.orchestrator = Orchestrator(
            config,
            connector=self.connector,
            control_state=self.control_state,
            remote=self.remote,
            server_control=self.server_control,
            clock=clock,
            stats=self.stats,
            registry_factory=registry_factory,
            control_store_factory=control_store_factory,
            control_data_reader=control_data_reader,
        )
        self.node_id: int = config["node_id"]

    def run(self, args: Namespace) -> int:
        handler = getattr(self, "action_" + args.action.replace("-", "_"))
        return handler(args)

    def local_registry(self) -> tuple[NodeConnection, NodeRegistry]:
        conn = self.orchestrator.connect_local()
        return conn, self.registry_factory(conn)

    def leader_registry(self, registry: NodeRegistry, leader_conninfo: str | None = None) -> tuple[NodeConnection, NodeRegistry]:
        if leader_conninfo is None:
            leader = registry.get_primary_node()
            if leader is None:
                raise ConfigurationError(
                    "no active leader found in the node registry",
                    hint="provide the leader's connection string with --leader-conninfo",
                )
            leader_conninfo = leader.conninfo
        conn = self.connector.connect(leader_conninfo, name="leader")
        if conn is None:
            raise TransientError("unable to connect to the leader")
        if conn.recovery_type() != RecoveryType.LEADER:
            conn.close()
            raise ConfigurationError("the given leader node is not running as leader")
        return conn, self.registry_factory(conn)

    def action_status(self, args: Namespace) -> int:
        if args.is_shutdown_cleanly:
            state, lsn = node_checks.shutdown_status(
                self.server_control.is_running(),
                lambda: self.control_data_reader(self.config["data_directory"], self.config.get("pg_bindir", "")),
            )
            # this output is parsed by other nodes, it is always in --key=value form
            get_formatter("optformat", self.formatter.out).emit_options(
                {"state": state.value, "last-checkpoint-lsn": format_lsn(lsn)}
            )
            return SUCCESS

        conn, registry = self.local_registry()
        try:
            if args.node:
                node = registry.get_node(self.node_id)
                if node is None:
                    raise ConfigurationError(f"no record found for node {self.node_id}")
                self.formatter.emit_options(node_checks.node_status_options(conn, node))
            else:
                rows = node_checks.cluster_status_rows(registry, self.connector)
                self.formatter.emit_table(node_checks.CLUSTER_STATUS_HEADERS, rows)
        finally:
            conn.close()
        return SUCCESS

    def action_check(self, args: Namespace) -> int:
        if args.data_directory_config:
            conn = self.connector.connect(self.config["conninfo"], name="local node")
            try:
                result = node_checks.check_data_directory_config(conn, self.config)
            finally:
                if conn is not None:
                    conn.close()
            self.formatter.emit_check("data-directory-config", result, status_key="configured-data-directory")
            return SUCCESS if result == "OK" else ERR_NODE_STATUS

        selected = [name for name in CHECK_NAMES if getattr(args, name.replace("-", "_"))]
        if selected == ["archive-ready"]:
            # counted from the data directory, also works while the database is not accepting connections
            results = [node_checks.check_archive_ready(self.config)]
        else:
            results = self.run_checks(selected or list(CHECK_NAMES))
        for result in results:
            self.formatter.emit_result(result)

        worst = max((result.status for result in results), key=CHECK_SEVERITY.index)
        if args.format == "nagios":
            return NAGIOS_EXIT_CODES[worst]
        return ERR_NODE_STATUS if worst == CheckStatus.CRITICAL else SUCCESS

    def run_checks(self, names: list[str]) -> list[CheckResult]:
        conn, registry = self.local_registry()
        try:
            node = registry.get_node(self.node_id)
            if node is None:
                raise ConfigurationError(f"no record found for node {self.node_id}")
            results = []
            for name in names:
                if name == "replication-lag":
                    results.append(node_checks.check_replication_lag(conn, self.config))
                elif name == "archive-ready":
                    results.append(node_checks.check_archive_ready(self.config, conn))
                elif name == "downstream":
                    results.append(node_checks.check_downstream(conn, registry, node))
                elif name == "slots":
                    results.append(node_checks.check_slots(conn))
                elif name == "role":
                    results.append(node_checks.check_role(conn, node))
            return results
        finally:
            conn.close()

    def action_promote(self, args: Namespace) -> int:  # pylint: disable=unused-argument
        node = self.orchestrator.promote()
        self.formatter.emit_options({"node-id": node.node_id, "role": node.role.value})
        return SUCCESS

    def action_follow(self, args: Namespace) -> int:
        node = self.orchestrator.follow(args.upstream_node_id, wait=not args.no_wait)
        self.formatter.emit_options({"node-id": node.node_id, "upstream-node-id": node.upstream_node_id})
        return SUCCESS

    def action_rejoin(self, args: Namespace) -> int:
        node = self.orchestrator.rejoin(args.upstream_conninfo, force_rewind=args.force_rewind, wait=not args.no_wait)
        self.formatter.emit_options({"node-id": node.node_id, "upstream-node-id": node.upstream_node_id})
        return SUCCESS

    def action_switchover(self, args: Namespace) -> int:
        options = SwitchoverOptions(
            dry_run=args.dry_run,
            force=args.force,
            always_promote=args.always_promote,
            force_rewind=args.force_rewind,
            siblings_follow=args.siblings_follow,
            no_pause=args.no_pause,
            force_unpause=args.force_unpause,
        )
        plan = self.orchestrator.switchover(options)
        if options.dry_run:
            rows = [[check.name, "OK" if check.passed else "FAILED", check.message] for check in plan.checks]
            self.formatter.emit_table(("Check", "Result", "Details"), rows)
        return SUCCESS

    def node_record_from_config(self, role: NodeRole, upstream_node_id: int | None) -> NodeRecord:
        slot_name = ""
        if self.config.get("use_replication_slots", False) and role == NodeRole.STANDBY:
            slot_name = SLOT_NAME_TEMPLATE.format(node_id=self.node_id)
        return NodeRecord(
            node_id=self.node_id,
            node_name=self.config["node_name"],
            role=role,
            conninfo=self.config["conninfo"],
            upstream_node_id=upstream_node_id,
            ssh_host=self.config.get("ssh_host", ""),
            slot_name=slot_name,
            priority=0 if role == NodeRole.WITNESS else self.config.get("priority", PRIORITY),
            config_file=str(self.config_path.resolve()) if self.config_path else "",
            control_url=self.config.get("control_url", ""),
            location=self.config.get("location", LOCATION),
        )

    def action_register(self, args: Namespace) -> int:
        role = NodeRole(args.role)
        conn, registry = self.local_registry()
        try:
            recovery_type = conn.recovery_type()
            if role == NodeRole.LEADER:
                if recovery_type != RecoveryType.LEADER:
                    raise ConfigurationError("this node is not running as leader")
                registry.ensure_schema()
                node = registry.register_node(self.node_record_from_config(role, None), force=args.force)
                registry.create_event(node.node_id, "primary_register", True)
            else:
                if role == NodeRole.STANDBY and recovery_type != RecoveryType.STANDBY:
                    raise ConfigurationError("this node is not running as standby")
                if role == NodeRole.WITNESS:
                    # a witness is a separate instance, its registry is a copy maintained by its daemon
                    registry.ensure_schema()
                leader_conn, leader_registry = self.leader_registry(registry, args.leader_conninfo)
                try:
                    upstream_node_id = args.upstream_node_id or self.config.get("upstream_node_id")
                    if upstream_node_id is None:
                        leader = leader_registry.get_primary_node()
                        upstream_node_id = leader.node_id if leader else None
                    node = leader_registry.register_node(
                        self.node_record_from_config(role, upstream_node_id), force=args.force
                    )
                    if role == NodeRole.WITNESS:
                        registry.sync_from(leader_registry.get_all_nodes())
                    leader_registry.create_event(node.node_id, f"{role.value}_register", True)
                finally:
                    leader_conn.close()
        finally:
            conn.close()
        logutil.log_notice(self.log, "%s node record (ID: %d) registered", role.value, node.node_id)
        return SUCCESS

    def action_unregister(self, args: Namespace) -> int:
        node_id = args.node_id or self.node_id
        conn, registry = self.local_registry()
        try:
            if conn.recovery_type() == RecoveryType.LEADER:
                node = registry.unregister_node(node_id)
                registry.create_event(node_id, f"{node.role.value}_unregister", True)
            else:
                leader_conn, leader_registry = self.leader_registry(registry, args.leader_conninfo)
                try:
                    node = leader_registry.unregister_node(node_id)
                    leader_registry.create_event(node_id, f"{node.role.value}_unregister", True)
                finally:
                    leader_conn.close()
        finally:
            conn.close()
        logutil.log_notice(self.log, "node %r (ID: %d) was unregistered", node.node_name, node_id)
        return SUCCESS

    def action_service(self, args: Namespace) -> int:
        if args.action_name == "stop" and args.checkpoint:
            conn = self.connector.connect(self.config["conninfo"], name="local node")
            if conn is not None:
                try:
                    if conn.recovery_type() == RecoveryType.LEADER and conn.is_superuser():
                        self.log.info("Issuing CHECKPOINT before shutdown")
                        conn.checkpoint()
                finally:
                    conn.close()
        if not self.server_control.run_service_action(args.action_name):
            raise PgWardenError(f"service action {args.action_name!r} failed", hint="check the PostgreSQL log on this node")
        return SUCCESS

    def action_pause(self, args: Namespace) -> int:  # pylint: disable=unused-argument
        return self.set_cluster_paused(True)

    def action_unpause(self, args: Namespace) -> int:  # pylint: disable=unused-argument
        return self.set_cluster_paused(False)

    def set_cluster_paused(self, paused: bool) -> int:
        conn, registry = self.local_registry()
        try:
            nodes = registry.get_active_nodes()
        finally:
            conn.close()
        rows = []
        failed = []
        for node in nodes:
            if node.node_id == self.node_id:
                control_state = self.control_state
            elif node.control_url:
                control_state = ControlState(self.control_store_factory(node.control_url))
            else:
                rows.append([node.node_id, node.node_name, "no control URL"])
                failed.append(node.node_name)
                continue
            try:
                was_paused = control_state.set_paused(paused)
            except TransientError as ex:
                self.log.warning("Unable to change pause state of node %r: %s", node.node_name, ex)
                rows.append([node.node_id, node.node_name, "unreachable"])
                failed.append(node.node_name)
                continue
            if was_paused == paused:
                result = "already paused" if paused else "not paused"
            else:
                result = "paused" if paused else "unpaused"
            rows.append([node.node_id, node.node_name, result])
        self.formatter.emit_table(("ID", "Name", "Result"), rows)
        if failed:
            raise TransientError(
                f"unable to {'pause' if paused else 'unpause'} {len(failed)} node(s)",
                detail=", ".join(failed),
            )
        return SUCCESS

    def action_events(self, args: Namespace) -> int:
        conn, registry = self.local_registry()
        try:
            events = registry.get_events(node_id=args.node_id, limit=args.limit)
            names = {node.node_id: node.node_name for node in registry.get_all_nodes()}
        finally:
            conn.close()
        rows = [
            [event.node_id, names.get(event.node_id, ""), event.event, "t" if event.successful else "f", event.event_timestamp, event.details]
            for event in events
        ]
        self.formatter.emit_table(("Node ID", "Name", "Event", "OK", "Timestamp", "Details"), rows)
        return SUCCESS


def get_argument_parser() -> ArgumentParser:
    output = ArgumentParser(add_help=False)
    group = output.add_mutually_exclusive_group()
    group.add_argument("--csv", dest="format", action="store_const", const="csv", help="output in CSV format")
    group.add_argument("--nagios", dest="format", action="store_const", const="nagios", help="output in Nagios format")
    group.add_argument(
        "--optformat", dest="format", action="store_const", const="optformat", help="output as --key=value tokens"
    )
    output.set_defaults(format="text")

    parser = ArgumentParser(
        prog="pgwarden-ctl",
        description="postgresql replication cluster administration",
    )
    parser.add_argument("--version", action="version", help="show program version", version=version.__version__)
    parser.add_argument("-f", "--config-file", type=Path, default=Path(CONFIG_FILE_PATH), help="configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    actions = parser.add_subparsers(dest="action", required=True)

    status = actions.add_parser("status", parents=[output], help="show cluster or node status")
    status.add_argument("--node", action="store_true", help="show status of the local node only")
    status.add_argument("--is-shutdown-cleanly", action="store_true", help="report whether the local instance is shut down")

    check = actions.add_parser("check", parents=[output], help="run node checks")
    for name in CHECK_NAMES:
        check.add_argument(f"--{name}", action="store_true", help=f"run the {name} check")
    check.add_argument("--data-directory-config", action="store_true", help="verify the configured data directory")

    actions.add_parser("promote", parents=[output], help="promote the local standby to leader")

    follow = actions.add_parser("follow", parents=[output], help="follow the current leader or the given node")
    follow.add_argument("--upstream-node-id", type=int, help="node to follow, defaults to the current leader")
    follow.add_argument("--no-wait", action="store_true", help="don't wait for the node to attach")

    rejoin = actions.add_parser("rejoin", parents=[output], help="rejoin a stopped node to the cluster")
    rejoin.add_argument("--upstream-conninfo", required=True, help="connection string of the node to follow")
    rejoin.add_argument("--force-rewind", action="store_true", help="run pg_rewind if the node has diverged")
    rejoin.add_argument("--no-wait", action="store_true", help="don't wait for the node to attach")

    switchover = actions.add_parser("switchover", parents=[output], help="promote the local standby, demote the leader")
    switchover.add_argument("--dry-run", action="store_true", help="only run the pre-flight checks")
    switchover.add_argument("--force", action="store_true", help="ignore overridable pre-flight failures")
    switchover.add_argument("--always-promote", action="store_true", help="promote even if not caught up with the leader")
    switchover.add_argument("--force-rewind", action="store_true", help="allow pg_rewind on the demoted leader")
    switchover.add_argument("--siblings-follow", action="store_true", help="have sibling standbys follow the new leader")
    switchover.add_argument("--no-pause", action="store_true", help="don't pause failover handling during switchover")
    switchover.add_argument("--force-unpause", action="store_true", help="unpause all nodes afterwards")

    register = actions.add_parser("register", parents=[output], help="register the local node")
    register.add_argument("--role", choices=[role.value for role in NodeRole], required=True)
    register.add_argument("--upstream-node-id", type=int, help="upstream node, defaults to the current leader")
    register.add_argument("--leader-conninfo", help="leader connection string, when the local registry doesn't know it")
    register.add_argument("--force", action="store_true", help="overwrite an existing record")

    unregister = actions.add_parser("unregister", parents=[output], help="remove a node record")
    unregister.add_argument("--node-id", type=int, help="node to unregister, defaults to the local node")
    unregister.add_argument("--leader-conninfo", help="leader connection string, when the local registry doesn't know it")

    service = actions.add_parser("service", parents=[output], help="run a service action on the local instance")
    service.add_argument("--action", dest="action_name", choices=["start", "stop", "restart", "promote"], required=True)
    service.add_argument("--checkpoint", action="store_true", help="issue a CHECKPOINT before stopping")

    actions.add_parser("pause", parents=[output], help="pause failover handling on all nodes")
    actions.add_parser("unpause", parents=[output], help="resume failover handling on all nodes")

    events = actions.add_parser("events", parents=[output], help="show recent events")
    events.add_argument("--node-id", type=int, help="only show events of this node")
    events.add_argument("--limit", type=int, default=20, help="number of events to show")
    return parser


def main(args: list[str] | None = None) -> int:
    if args is None:
        args = sys.argv[1:]

    parser = get_argument_parser()
    arg = parser.parse_args(args)

    log = getLogger("pgwarden-ctl")
    try:
        config = load_config_file(arg.config_file)
        level = "DEBUG" if arg.verbose else config.get("log_level", "INFO" if arg.format == "text" else "WARNING")
        logutil.configure_logging(level=getLevelNamesMapping()[level], short_log=True)
        ctl = PgWardenCtl(config, get_formatter(arg.format), config_path=arg.config_file)
        return ctl.run(arg)
    except PgWardenError as ex:
        logutil.configure_logging(short_log=True)
        log.error("%s", ex)
        if ex.detail:
            logutil.log_detail(log, "%s", ex.detail)
        if ex.hint:
            logutil.log_hint(log, "%s", ex.hint)
        return ex.exit_code


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
