# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - failover voting engine

When a standby loses its leader it runs a term scoped election among the
surviving nodes:

* every active registered node is checked, and the election only goes ahead
  when a strict majority of them (the lost leader included in the total) is
  visible, so that a minority partition never promotes itself;
* when neither this node nor any visible sibling shares the lost leader's
  ``location`` a network split between the locations is assumed and the
  election is cancelled;
* direct siblings report their last received WAL position; a node counts as
  ready once it has reported a valid position and stays ready for the rest of
  the term;
* the ready candidate with the greatest position wins, ties broken by the
  higher priority and then the lower node id. Witnesses and nodes with a
  priority of zero count for visibility but never win.

The winner promotes itself and tells the other nodes to follow it through
their shared control state; the losers wait for that notification and follow.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pgwarden import logutil
from pgwarden.clock import Clock, poll_until
from pgwarden.cluster_monitor import ReplicationMonitor
from pgwarden.common import format_lsn, is_valid_lsn
from pgwarden.common_types import NodeRecord, NodeRole, RecoveryType, ReplicationStatus, VotingStatus
from pgwarden.config import Config
from pgwarden.control_state import ControlState, ControlStore, HttpControlStore
from pgwarden.default import (
    CHECK_INTERVAL,
    ELECTION_READY_TIMEOUT,
    PRIMARY_NOTIFICATION_TIMEOUT,
    PROMOTE_CHECK_INTERVAL,
    PROMOTE_CHECK_TIMEOUT,
)
from pgwarden.errors import (
    ConflictError,
    ElectionError,
    FollowError,
    PartitionError,
    PgWardenError,
    PromotionError,
    QueryError,
    TransientError,
)
from pgwarden.server_control import ServerControl
from pgwarden.statsd import StatsClient
from typing import Callable, Iterable

import logging
import shlex


@dataclass(frozen=True)
class Candidate:
    node_id: int
    lsn: int
    priority: int


def ranking_key(candidate: Candidate) -> tuple[int, int, int]:
    return candidate.lsn, candidate.priority, -candidate.node_id


def select_candidate(candidates: Iterable[Candidate]) -> Candidate | None:
    eligible = [candidate for candidate in candidates if candidate.priority > 0 and is_valid_lsn(candidate.lsn)]
    return max(eligible, key=ranking_key, default=None)


def has_quorum(visible: int, total: int) -> bool:
    return total > 0 and visible * 2 > total


class FailoverOutcome(Enum):
    PROMOTED = "promoted"
    FOLLOWED_NEW_LEADER = "followed_new_leader"
    LEADER_REAPPEARED = "leader_reappeared"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class FailoverResult:
    outcome: FailoverOutcome
    term: int | None = None
    new_leader_id: int | None = None


class FailoverVotingEngine:
    def __init__(
        self,
        config: Config,
        *,
        monitor: ReplicationMonitor,
        control_state: ControlState,
        server_control: ServerControl,
        follow: Callable[[int], None],
        clock: Clock | None = None,
        stats: StatsClient | None = None,
        control_store_factory: Callable[[str], ControlStore] = HttpControlStore,
    ) -> None:
        self.log = logging.getLogger("FailoverVotingEngine")
        self.config = config
        self.monitor = monitor
        self.control_state = control_state
        self.server_control = server_control
        self.follow = follow
        self.clock = clock or Clock()
        self.stats = stats or StatsClient(host=None)
        self.control_store_factory = control_store_factory

    @property
    def check_interval(self) -> float:
        return self.config.get("check_interval", CHECK_INTERVAL)

    def handle_leader_lost(self, lost_leader: NodeRecord) -> FailoverResult:
        if self.control_state.is_paused():
            logutil.log_notice(self.log, "failover handling is paused, not starting an election")
            logutil.log_hint(self.log, "execute `pgwarden-ctl unpause` to resume automatic failover")
            return FailoverResult(FailoverOutcome.DEGRADED)

        local = self.monitor.local_node
        if local is None:
            raise ElectionError("local node record is not known, unable to take part in an election")
        try:
            if local.is_witness:
                return self.witness_failover(local, lost_leader)
            if self.config.get("failover", "automatic") == "manual":
                logutil.log_notice(
                    self.log,
                    "this node is not configured for automatic failover so will not be considered as "
                    "promotion candidate, and will not follow the new leader",
                )
                logutil.log_detail(self.log, '"failover" is set to "manual" in the configuration')
                logutil.log_hint(self.log, "execute `pgwarden-ctl follow` to have this node follow the new leader")
                return self.manual_failover(local, lost_leader)
            return self.run_election(local, lost_leader)
        finally:
            self.control_state.reset_voting_status()

    def _peer_terms(self, peers: list[NodeRecord]) -> list[int]:
        terms = []
        for node in peers:
            if not node.control_url:
                continue
            try:
                terms.append(ControlState(self.control_store_factory(node.control_url)).current_term())
            except TransientError as ex:
                self.log.debug("Unable to read term of node %r: %s", node.node_name, ex)
        return terms

    def announced_leader(self, lost_leader: NodeRecord, peer_term: int) -> int | None:
        """A new leader another node has already told us about, if the announcement is still current."""
        directive = self.control_state.get_follow_directive()
        if directive is None:
            return None
        node_id, term = directive
        if term < peer_term or node_id == lost_leader.node_id:
            self.log.info("Ignoring stale follow directive for node %d from term %d", node_id, term)
            self.control_state.reset_voting_status()
            return None
        logutil.log_notice(self.log, "node %d was announced as the new leader in term %d", node_id, term)
        return node_id

    def run_election(self, local: NodeRecord, lost_leader: NodeRecord) -> FailoverResult:
        peers = [node for node in self.monitor.nodes.values() if node.active and node.node_id != local.node_id]
        if all(node.node_id != lost_leader.node_id for node in peers):
            peers.append(lost_leader)
        statuses = self.monitor.check_nodes(peers)
        visible_peers = [node for node in peers if statuses[node.node_id].is_reachable]
        siblings = [node for node in peers if node.upstream_node_id == lost_leader.node_id]
        visible_siblings = [node for node in siblings if statuses[node.node_id].is_reachable]
        peer_term = max(self._peer_terms(visible_peers), default=0)

        leader_status = statuses.get(lost_leader.node_id)
        if leader_status and leader_status.is_reachable and leader_status.recovery_type == RecoveryType.LEADER:
            logutil.log_notice(self.log, "leader node %r (ID: %d) has reappeared", lost_leader.node_name, lost_leader.node_id)
            # siblings may be waiting for the outcome of an election of their own
            term = max(peer_term, self.control_state.current_term())
            self.notify_followers(lost_leader.node_id, visible_siblings, term)
            return FailoverResult(FailoverOutcome.LEADER_REAPPEARED, term=term, new_leader_id=lost_leader.node_id)

        announced = self.announced_leader(lost_leader, peer_term)
        if announced is not None:
            return self.follow_announced_leader(local, lost_leader, announced, self.control_state.current_term())

        term = self.control_state.start_election(at_least=peer_term)
        self.stats.increase("election_started")

        locations = {local.location} | {node.location for node in visible_siblings}
        if lost_leader.location not in locations:
            self.stats.increase("election_cancelled")
            logutil.log_notice(
                self.log, 'no nodes from the leader location "%s" visible, assuming network split', lost_leader.location
            )
            logutil.log_detail(self.log, "node will enter degraded monitoring state waiting for reconnect")
            return FailoverResult(FailoverOutcome.DEGRADED, term=term)

        total = len(peers) + 1
        visible = len(visible_peers) + 1
        self.log.info("Election in term %d: %d of %d nodes visible", term, visible, total)
        if not has_quorum(visible, total):
            self.stats.increase("election_no_quorum")
            raise PartitionError(
                "unable to reach a qualified majority of nodes",
                detail=f"{visible} of {total} registered nodes are visible",
                hint="check network connectivity between nodes; a witness node helps small clusters keep a majority",
            )

        candidates = self.collect_candidates(local, siblings, statuses, visible_peers)
        winner = select_candidate(candidates.values())
        if winner is None:
            self.stats.increase("election_no_candidate")
            raise ElectionError(
                "no promotion candidate is ready",
                detail=f"{len(candidates)} node(s) reported a WAL position within the election timeout",
                hint="manually promote the most advanced standby with `pgwarden-ctl promote`",
            )

        self.log.info(
            "Election in term %d won by node %d with last received LSN %s", term, winner.node_id, format_lsn(winner.lsn)
        )
        # the winner of this term may have finished while we were collecting positions
        announced = self.control_state.get_new_primary()
        if announced is not None:
            return self.follow_announced_leader(local, lost_leader, announced, term)
        if winner.node_id == local.node_id:
            self.control_state.set_voting_status(VotingStatus.WON, candidate_id=local.node_id)
            return self.promote_self(local, lost_leader, siblings, term)
        self.control_state.set_voting_status(VotingStatus.LOST, candidate_id=winner.node_id)
        return self.wait_and_follow(local, lost_leader, term)

    def collect_candidates(
        self,
        local: NodeRecord,
        siblings: list[NodeRecord],
        statuses: dict[int, ReplicationStatus],
        visible_peers: list[NodeRecord],
    ) -> dict[int, Candidate]:
        """Wait until every visible sibling candidate reports a WAL position or the election times out.

        Returns the ready candidates; once a node is ready it is never removed.
        """
        ready: dict[int, Candidate] = {}
        local_status = self.monitor.poll(local)
        if local.priority > 0 and is_valid_lsn(local_status.wal_receive_lsn):
            ready[local.node_id] = Candidate(local.node_id, local_status.wal_receive_lsn, local.priority)
        elif local.priority <= 0:
            logutil.log_notice(
                self.log, "this node's priority is %d so it will not be a promotion candidate", local.priority
            )

        # witnesses and zero priority nodes are ready unconditionally, they are never candidates
        pending = {
            node.node_id: node
            for node in siblings
            if node.role == NodeRole.STANDBY and node.priority > 0 and statuses[node.node_id].is_reachable
        }

        def consider(node: NodeRecord, status: ReplicationStatus) -> None:
            if node.node_id in pending and status.is_reachable and is_valid_lsn(status.wal_receive_lsn):
                previous = ready.get(node.node_id)
                lsn = max(status.wal_receive_lsn, previous.lsn if previous else 0)
                ready[node.node_id] = Candidate(node.node_id, lsn, node.priority)

        for node in pending.values():
            consider(node, statuses[node.node_id])

        def count_not_ready() -> int:
            not_ready = [node for node_id, node in pending.items() if node_id not in ready]
            if not not_ready:
                return 0
            results = self.monitor.check_nodes(visible_peers)
            if visible_peers and not any(status.is_reachable for status in results.values()):
                raise PartitionError(
                    "lost connectivity to all peers during the election",
                    hint="this node will not take any action until it can see other nodes",
                )
            for node in not_ready:
                consider(node, results[node.node_id])
            return sum(1 for node_id in pending if node_id not in ready)

        timeout = self.config.get("election_ready_timeout", ELECTION_READY_TIMEOUT)
        all_ready, remaining = poll_until(
            self.clock, count_not_ready, lambda count: count == 0, timeout=timeout, interval=self.check_interval
        )
        if not all_ready:
            self.log.warning("%d sibling(s) did not report a WAL position within %.0fs, excluding them", remaining, timeout)
        return ready

    def _promote(self, local: NodeRecord) -> None:
        promote_command = self.config.get("promote_command")
        if promote_command:
            if self.server_control.execute_external_command(shlex.split(promote_command)) != 0:
                raise PromotionError(f"promote command {promote_command!r} failed")
        else:
            conn = self.monitor.connection_for(local)
            if conn is None:
                raise PromotionError("unable to connect to local node to promote it")
            try:
                if not conn.promote():
                    raise PromotionError("pg_promote() returned false")
            except QueryError as ex:
                raise PromotionError(f"unable to promote local node: {ex}") from ex

        promoted, _ = poll_until(
            self.clock,
            lambda: self.monitor.poll(local).recovery_type,
            lambda recovery_type: recovery_type == RecoveryType.LEADER,
            timeout=self.config.get("promote_check_timeout", PROMOTE_CHECK_TIMEOUT),
            interval=self.config.get("promote_check_interval", PROMOTE_CHECK_INTERVAL),
        )
        if not promoted:
            raise PromotionError(
                "local node did not finish promotion in time",
                hint="check the PostgreSQL log of this node",
            )

    def promote_self(
        self, local: NodeRecord, lost_leader: NodeRecord, siblings: list[NodeRecord], term: int
    ) -> FailoverResult:
        logutil.log_notice(self.log, "this node is the winner, will now promote itself and inform other nodes")
        self._promote(local)

        conn = self.monitor.connection_for(local)
        if conn is None:
            raise PromotionError("unable to connect to local node after promotion")
        registry = self.monitor.registry_factory(conn)
        record = registry.get_node(local.node_id)
        # a promote_command running `pgwarden-ctl promote` has updated the registry already
        if record is None or record.role != NodeRole.LEADER:
            registry.promote_node(local.node_id, lost_leader.node_id, old_leader_active=False)
        registry.create_event(
            local.node_id,
            "daemon_failover_promote",
            True,
            f"node {local.node_id} promoted to leader; old leader {lost_leader.node_id} marked as failed",
        )
        self.stats.increase("failover_promote")
        self.notify_followers(local.node_id, siblings, term)
        return FailoverResult(FailoverOutcome.PROMOTED, term=term, new_leader_id=local.node_id)

    def notify_followers(self, leader_id: int, siblings: list[NodeRecord], term: int) -> None:
        for node in siblings:
            if not node.control_url:
                self.log.warning("Node %r has no control URL, it must be told to follow manually", node.node_name)
                continue
            try:
                ControlState(self.control_store_factory(node.control_url)).notify_follow(leader_id, term)
                self.log.info("Notified node %r (ID: %d) to follow node %d", node.node_name, node.node_id, leader_id)
            except (TransientError, ValueError) as ex:
                self.log.warning("Unable to notify node %r to follow node %d: %s", node.node_name, leader_id, ex)

    def wait_primary_notification(self) -> int | None:
        timeout = self.config.get("primary_notification_timeout", PRIMARY_NOTIFICATION_TIMEOUT)
        self.log.info("Waiting up to %.0fs for notification of the new leader", timeout)
        notified, new_primary_id = poll_until(
            self.clock,
            self.control_state.get_new_primary,
            lambda node_id: node_id is not None,
            timeout=timeout,
            interval=self.check_interval,
        )
        if not notified:
            logutil.log_notice(self.log, "no notification of a new leader received within %.0fs", timeout)
            logutil.log_detail(self.log, "node will enter degraded monitoring state waiting for a new leader")
            return None
        return new_primary_id

    def wait_and_follow(self, local: NodeRecord, lost_leader: NodeRecord, term: int) -> FailoverResult:
        new_primary_id = self.wait_primary_notification()
        if new_primary_id is None:
            return FailoverResult(FailoverOutcome.DEGRADED, term=term)
        return self.follow_announced_leader(local, lost_leader, new_primary_id, term)

    def follow_announced_leader(
        self, local: NodeRecord, lost_leader: NodeRecord, new_primary_id: int, term: int
    ) -> FailoverResult:
        if new_primary_id == lost_leader.node_id:
            self.log.info("Original leader %r has reappeared, continuing to follow it", lost_leader.node_name)
            return FailoverResult(FailoverOutcome.LEADER_REAPPEARED, term=term, new_leader_id=new_primary_id)
        try:
            self.follow(new_primary_id)
        except (FollowError, TransientError) as ex:
            self.log.error("Unable to follow new leader %d: %s", new_primary_id, ex)
            self.stats.increase("failover_follow_failure")
            return FailoverResult(FailoverOutcome.DEGRADED, term=term)
        self._record_event_on(
            new_primary_id, local, "daemon_failover_follow", f"node {local.node_id} now following new leader {new_primary_id}"
        )
        self.stats.increase("failover_follow")
        return FailoverResult(FailoverOutcome.FOLLOWED_NEW_LEADER, term=term, new_leader_id=new_primary_id)

    def _record_event_on(self, leader_id: int, local: NodeRecord, event: str, details: str) -> None:
        new_leader = self.monitor.nodes.get(leader_id)
        conn = self.monitor.connection_for(new_leader) if new_leader else None
        if conn is None:
            self.log.warning("Unable to connect to node %d to record event %r", leader_id, event)
            return
        try:
            self.monitor.registry_factory(conn).create_event(local.node_id, event, True, details)
        except PgWardenError as ex:
            self.log.warning("Unable to record event %r: %s", event, ex)

    def manual_failover(self, local: NodeRecord, lost_leader: NodeRecord) -> FailoverResult:
        """Wait for the outcome of the other nodes' election, but never follow the new leader."""
        new_primary_id = self.wait_primary_notification()
        if new_primary_id is None:
            return FailoverResult(FailoverOutcome.DEGRADED)
        if new_primary_id == lost_leader.node_id:
            return FailoverResult(FailoverOutcome.LEADER_REAPPEARED, new_leader_id=new_primary_id)
        self._record_event_on(
            new_primary_id,
            local,
            "standby_disconnect_manual",
            f"node {local.node_id} is in manual failover mode and is now disconnected from streaming replication",
        )
        self.log.info("Automatic failover disabled for this node, manual intervention required")
        return FailoverResult(FailoverOutcome.DEGRADED, new_leader_id=new_primary_id)

    def witness_failover(self, local: NodeRecord, lost_leader: NodeRecord) -> FailoverResult:
        """A witness takes no part in the election other than being visible, it only waits for the new leader."""
        new_primary_id = self.wait_primary_notification()
        if new_primary_id is None:
            return FailoverResult(FailoverOutcome.DEGRADED)
        if new_primary_id == lost_leader.node_id:
            return FailoverResult(FailoverOutcome.LEADER_REAPPEARED, new_leader_id=new_primary_id)
        new_leader = self.monitor.nodes.get(new_primary_id)
        conn = self.monitor.connection_for(new_leader) if new_leader else None
        if conn is None:
            self.log.error("Unable to connect to new leader %d", new_primary_id)
            return FailoverResult(FailoverOutcome.DEGRADED)
        registry = self.monitor.registry_factory(conn)
        try:
            registry.set_upstream(local.node_id, new_primary_id, lost_leader.node_id)
        except ConflictError:
            record = registry.get_node(local.node_id)
            if record is None or record.upstream_node_id != new_primary_id:
                raise
        registry.create_event(local.node_id, "daemon_failover_follow", True, f"witness now following new leader {new_primary_id}")
        return FailoverResult(FailoverOutcome.FOLLOWED_NEW_LEADER, new_leader_id=new_primary_id)
