"""
pgwarden - replication monitoring and failover daemon

Copyright (c) 2015 Ohmu Ltd
Copyright (c) 2014 F-Secure

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from argparse import ArgumentParser
from logging import getLevelNamesMapping, getLogger, Logger
from logging.handlers import SysLogHandler
from pathlib import Path
from pgwarden import logutil
from pgwarden.clock import Clock
from pgwarden.cluster_monitor import MonitorEvent, ReplicationMonitor
from pgwarden.common_types import NodeRecord, VotingStatus
from pgwarden.config import Config, load_config_file
from pgwarden.control_state import ControlState, ControlStore, HttpControlStore, JsonFileControlStore
from pgwarden.dbutils import Connector, NodeConnection
from pgwarden.default import (
    CONNECT_TIMEOUT,
    CONTROL_STATE_FILE_PATH,
    DB_POLL_INTERVAL,
    DEGRADED_MONITORING_TIMEOUT,
    JSON_STATE_FILE_PATH,
    REMOTE_COMMAND_TIMEOUT,
    SSH_OPTIONS,
)
from pgwarden.errors import FollowError, MonitoringTimeout, PgWardenError, SUCCESS, TransientError
from pgwarden.orchestrator import Orchestrator
from pgwarden.registry import NodeRegistry, PostgresNodeRegistry
from pgwarden.remote import RemoteCommandChannel
from pgwarden.server_control import ServerControl
from pgwarden.statsd import StatsClient
from pgwarden.version import __version__
from pgwarden.voting import FailoverOutcome, FailoverResult, FailoverVotingEngine
from pgwarden.webserver import WebServer
from queue import Empty, Queue
from signal import SIGHUP, SIGINT, signal, SIGTERM
from socket import gethostname
from types import FrameType
from typing import Callable, Final

import json
import shlex
import sys
import time

DEFAULT_LOG_LEVEL: Final[str] = "DEBUG"
LOG_LEVEL_NAMES_MAPPING: Final[dict[str, int]] = getLevelNamesMapping()


class PgWarden:
    def __init__(
        self,
        config_path: Path | str,
        *,
        clock: Clock | None = None,
        connector: Connector | None = None,
        control_store: ControlStore | None = None,
        server_control: ServerControl | None = None,
        remote: RemoteCommandChannel | None = None,
        registry_factory: Callable[[NodeConnection], NodeRegistry] = PostgresNodeRegistry,
        control_store_factory: Callable[[str], ControlStore] = HttpControlStore,
        install_signal_handlers: bool = True,
    ) -> None:
        self.log: Logger = getLogger("pgwarden")
        # dummy to make sure we never get an AttributeError -> gets overwritten after the first config loading
        self.stats: StatsClient = StatsClient(host=None)
        self.running: bool = True
        self.config_path: Path = Path(config_path)
        self.config: Config = {}
        self.syslog_handler: SysLogHandler | None = None
        self.check_queue: Queue[str] = Queue()
        self.degraded_since: float | None = None
        self.load_config()

        if install_signal_handlers:
            signal(SIGHUP, self.load_config_from_signal)
            signal(SIGINT, self.quit)
            signal(SIGTERM, self.quit)

        self.clock = clock or Clock()
        self.control_state = ControlState(
            control_store or JsonFileControlStore(self.config.get("control_state_file_path", CONTROL_STATE_FILE_PATH))
        )
        self.connector = connector or Connector(timeout=self.config.get("connect_timeout", CONNECT_TIMEOUT))
        self.server_control = server_control or ServerControl(self.config, stats=self.stats)
        self.remote = remote or RemoteCommandChannel(
            ssh_options=self.config.get("ssh_options", SSH_OPTIONS),
            timeout=self.config.get("remote_command_timeout", REMOTE_COMMAND_TIMEOUT),
        )
        self.monitor = ReplicationMonitor(
            self.config,
            connector=self.connector,
            control_state=self.control_state,
            clock=self.clock,
            stats=self.stats,
            registry_factory=registry_factory,
        )
        self.orchestrator = Orchestrator(
            self.config,
            connector=self.connector,
            control_state=self.control_state,
            remote=self.remote,
            server_control=self.server_control,
            clock=self.clock,
            stats=self.stats,
            registry_factory=registry_factory,
            control_store_factory=control_store_factory,
        )
        self.voting = FailoverVotingEngine(
            self.config,
            monitor=self.monitor,
            control_state=self.control_state,
            server_control=self.server_control,
            follow=self.follow_new_leader,
            clock=self.clock,
            stats=self.stats,
            control_store_factory=control_store_factory,
        )
        self.webserver: WebServer = WebServer(self.config, self.control_state, self.get_state, self.check_queue)

        logutil.notify_systemd("READY=1")
        self.log.info(
            "pgwarden initialized, local hostname: %r, node_id: %r, cwd: %r",
            gethostname(),
            self.config["node_id"],
            Path.cwd(),
        )

    def quit(self, _signal: int | None = None, _frame: FrameType | None = None) -> None:
        self.log.warning("Quitting, signal: %r, frame: %r", _signal, _frame)
        self.running = False
        self.check_queue.put("quit")
        self.webserver.close()

    def load_config_from_signal(self, _signal: int, _frame: FrameType | None = None) -> None:
        self.log.debug("Loading JSON config from: %r, signal: %r, frame: %r", self.config_path, _signal, _frame)
        self.load_config()

    def load_config(self) -> None:
        self.log.debug("Loading JSON config from: %r", self.config_path)
        try:
            new_config = load_config_file(self.config_path)
        except PgWardenError as ex:
            if not self.config:
                raise
            self.log.error("Invalid configuration, keeping the previous one: %s", ex)
            self.stats.unexpected_exception(ex, where="load_config")
            return
        if self.config and new_config["node_id"] != self.config["node_id"]:
            self.log.error("`node_id` can't be changed on reload, keeping the previous configuration")
            return

        # components hold a reference to this dict, update it in place
        self.config.clear()
        self.config.update(new_config)

        # statsd settings may have changed
        self.stats = StatsClient(**self.config.get("statsd", {}))

        if self.config.get("syslog") and self.syslog_handler is None:
            self.syslog_handler = logutil.set_syslog_handler(
                address=self.config.get("syslog_address", "/dev/log"),
                facility=self.config.get("syslog_facility", "local2"),
                logger=getLogger(),
            )

        log_level_name = self.config.get("log_level", DEFAULT_LOG_LEVEL)
        try:
            getLogger().setLevel(LOG_LEVEL_NAMES_MAPPING[log_level_name])
        except KeyError:
            self.log.error("Unknown log_level: %r", log_level_name)
        self.log.debug("Loaded config: %r from: %r", self.config, self.config_path)
        self.check_queue.put("new config came, recheck")

    def get_state(self) -> dict[str, object]:
        return {
            **self.monitor.get_state(),
            "control": self.control_state.snapshot(),
            "degraded": self.degraded_since is not None,
        }

    def write_state_to_json_file(self) -> None:
        """Periodically write a JSON state file to disk, for other tools to inspect."""
        start_time = time.monotonic()
        state_file_path = Path(self.config.get("json_state_file_path", JSON_STATE_FILE_PATH))
        json_to_dump = json.dumps(self.get_state(), indent=4)
        self.log.debug("Writing JSON state file to: %s, file_size: %r", state_file_path, len(json_to_dump))
        state_file_path_tmp = state_file_path.with_name(f"{state_file_path.name}.tmp")
        state_file_path_tmp.write_text(json_to_dump)
        state_file_path_tmp.rename(state_file_path)
        self.log.debug("Wrote JSON state file to disk, took %.4fs", time.monotonic() - start_time)

    @property
    def manual_failover(self) -> bool:
        return self.config.get("failover", "automatic") == "manual"

    def follow_new_leader(self, node_id: int | None) -> None:
        follow_command = self.config.get("follow_command")
        if follow_command and node_id is not None:
            command = shlex.split(follow_command.replace("%n", str(node_id)))
            if self.server_control.execute_external_command(command) != 0:
                raise FollowError(f"follow command {follow_command!r} failed")
            return
        self.orchestrator.follow(node_id)

    def enter_degraded(self, reason: str) -> None:
        if self.degraded_since is None:
            self.degraded_since = self.clock.monotonic()
            self.stats.increase("degraded_monitoring")
        logutil.log_notice(self.log, "entering degraded monitoring: %s", reason)

    def leave_degraded(self, reason: str) -> None:
        self.degraded_since = None
        logutil.log_notice(self.log, "leaving degraded monitoring: %s", reason)

    def handle_failover_result(self, result: FailoverResult) -> None:
        if result.outcome == FailoverOutcome.DEGRADED:
            self.enter_degraded("failover did not complete")
        elif result.outcome == FailoverOutcome.PROMOTED:
            logutil.log_notice(self.log, "this node is now the leader (term %s)", result.term)
        elif result.outcome == FailoverOutcome.FOLLOWED_NEW_LEADER:
            logutil.log_notice(self.log, "now following new leader %s", result.new_leader_id)

    def handle_follow_directive(self) -> None:
        """Follow a new leader announced while this node was not taking part in an election."""
        new_primary_id = self.control_state.get_new_primary()
        if new_primary_id is None or self.control_state.voting_status() != VotingStatus.NO_VOTE:
            return
        local = self.monitor.local_node
        if local is not None and local.upstream_node_id == new_primary_id:
            self.control_state.reset_voting_status()
            return
        if self.control_state.is_paused():
            self.log.info("Failover handling is paused, not following node %d yet", new_primary_id)
            return
        if self.manual_failover:
            logutil.log_notice(self.log, "not following node %d, failover is set to manual", new_primary_id)
            self.control_state.reset_voting_status()
            return
        logutil.log_notice(self.log, "received notification to follow node %d", new_primary_id)
        try:
            self.follow_new_leader(new_primary_id)
            if self.degraded_since is not None:
                self.leave_degraded(f"following node {new_primary_id}")
        except (FollowError, TransientError) as ex:
            self.log.error("Unable to follow node %d: %s", new_primary_id, ex)
            self.enter_degraded("unable to follow the announced leader")
        finally:
            self.control_state.reset_voting_status()

    def check_degraded(self) -> None:
        assert self.degraded_since is not None
        timeout = self.config.get("degraded_monitoring_timeout", DEGRADED_MONITORING_TIMEOUT)
        elapsed = self.clock.monotonic() - self.degraded_since
        if timeout > 0 and elapsed > timeout:
            raise MonitoringTimeout(
                f"degraded monitoring timeout ({timeout:.0f} seconds) exceeded, terminating",
                hint="check the cluster state with `pgwarden-ctl status`",
            )
        self.handle_follow_directive()
        if self.degraded_since is None:
            return
        local = self.monitor.local_node
        new_leader: NodeRecord | None = self.monitor.find_new_leader()
        if new_leader is None:
            self.log.info("Degraded monitoring for %.0fs, no leader found", elapsed)
            return
        if local is None or new_leader.node_id == local.upstream_node_id:
            self.leave_degraded(f"upstream node {new_leader.node_name!r} is running as leader")
            return
        if self.control_state.is_paused():
            return
        if self.manual_failover:
            self.log.info("Node %r is the leader, waiting for it to be followed manually", new_leader.node_name)
            return
        try:
            self.follow_new_leader(new_leader.node_id)
        except (FollowError, TransientError) as ex:
            self.log.error("Unable to follow node %r: %s", new_leader.node_name, ex)
            return
        self.monitor.record_event(
            "daemon_degraded_follow", True, f"node {local.node_id} now following new leader {new_leader.node_id}"
        )
        self.leave_degraded(f"following new leader {new_leader.node_name!r}")

    def check_cluster_state(self) -> None:
        if self.degraded_since is not None:
            self.check_degraded()
            return

        self.handle_follow_directive()
        event = self.monitor.check()
        if event == MonitorEvent.OK:
            return

        local = self.monitor.local_node
        if local is None or local.upstream_node_id is None:
            return
        upstream = self.monitor.nodes[local.upstream_node_id]
        if self.control_state.is_paused():
            logutil.log_notice(self.log, "failover handling is paused, not acting on loss of node %r", upstream.node_name)
            return

        if event == MonitorEvent.LEADER_LOST:
            self.handle_failover_result(self.voting.handle_leader_lost(upstream))
        elif local.is_witness:
            self.enter_degraded(f"upstream node {upstream.node_name!r} was lost")
        else:
            # a cascading standby lost its upstream, attach directly to the leader
            try:
                self.follow_new_leader(None)
            except (FollowError, TransientError) as ex:
                self.log.error("Unable to follow the leader: %s", ex)
                self.enter_degraded(f"upstream node {upstream.node_name!r} was lost")

    def main_loop(self) -> None:
        while self.running:
            try:
                self.check_cluster_state()
            except TransientError as ex:
                self.log.warning("Cluster state check failed: %s", ex)
                self.stats.increase("transient_error")
            except PgWardenError:
                raise
            except Exception as ex:  # pylint: disable=broad-except
                self.log.exception("Failed to check cluster state")
                self.stats.unexpected_exception(ex, where="main_loop_check_cluster_state")

            try:
                self.write_state_to_json_file()
            except Exception as ex:  # pylint: disable=broad-except
                self.log.exception("Failed to write state file")
                self.stats.unexpected_exception(ex, where="main_loop_write_state")

            try:
                self.check_queue.get(timeout=self.config.get("db_poll_interval", DB_POLL_INTERVAL))
                while not self.check_queue.empty():
                    try:
                        self.check_queue.get(False)
                    except Empty:
                        continue
            except Empty:
                pass

    def run(self) -> None:
        self.webserver.start()
        try:
            self.main_loop()
        finally:
            self.webserver.close()
            self.monitor.close()


def get_argument_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="pgwarden",
        description="postgresql replication monitoring and failover daemon",
    )
    parser.add_argument(
        "--version",
        action="version",
        help="show program version",
        version=__version__,
    )
    # it's a type of filepath
    parser.add_argument("config", type=Path, help="configuration file")

    return parser


def main(args: list[str] | None = None) -> int:
    if args is None:
        args = sys.argv[1:]

    parser = get_argument_parser()
    arg = parser.parse_args(args)

    if not arg.config.is_file():
        print(f"pgwarden: {arg.config!r} doesn't exist")
        return 1

    logutil.configure_logging()
    log = getLogger("pgwarden")

    try:
        pgwarden = PgWarden(arg.config)
        pgwarden.run()
    except PgWardenError as ex:
        log.error("%s", ex)
        if ex.detail:
            logutil.log_detail(log, "%s", ex.detail)
        if ex.hint:
            logutil.log_hint(log, "%s", ex.hint)
        logutil.notify_systemd(f"STATUS={ex}")
        return ex.exit_code

    return SUCCESS


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
