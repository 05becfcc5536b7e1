"""
pgwarden tests

Copyright (c) 2016 Ohmu Ltd

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from .conftest import FakeClock, FakeCluster, make_node, registry_of
from pgwarden.common import parse_lsn
from pgwarden.common_types import NodeRole, RecoveryType
from pgwarden.controldata import ControlData
from pgwarden.errors import (
    ConfigurationError,
    FollowError,
    IncompleteError,
    PromotionError,
    RejoinError,
    RemoteCommandError,
    SwitchoverError,
)
from pgwarden.orchestrator import Orchestrator, SwitchoverOptions, SwitchoverPlan
from pgwarden.remote import RemoteResult
from typing import Any
from unittest.mock import Mock

import pytest

CLEAN_CONTROL_DATA = ControlData(cluster_state="shut down", checkpoint_lsn=parse_lsn("0/500"), timeline_id=1)
UNCLEAN_CONTROL_DATA = ControlData(cluster_state="in production", checkpoint_lsn=parse_lsn("0/500"), timeline_id=1)


def make_orchestrator(
    cluster: FakeCluster,
    node_id: int,
    clock: FakeClock,
    server_control: Mock,
    control_data: ControlData | None = CLEAN_CONTROL_DATA,
    **config: Any,
) -> Orchestrator:
    return Orchestrator(
        cluster.config(node_id, **config),
        connector=cluster.connector,
        control_state=cluster.control_state(node_id),
        remote=cluster.remote,
        server_control=server_control,
        clock=clock,
        registry_factory=registry_of,
        control_store_factory=cluster.store_for_url,
        control_data_reader=lambda data_directory, pg_bindir: control_data,
    )


def healthy_leader(cluster: FakeCluster, host: str = "node1") -> None:
    cluster.remote.on(host, "/bin/true", "")
    cluster.remote.on(host, "--version", "pgwarden-ctl 1.0.0\n")
    cluster.remote.on(host, "check --data-directory-config", "--configured-data-directory=OK\n")
    cluster.remote.on(host, "check --archive-ready", "--status=OK --files=0 --threshold=16\n")


def switchover_ready(cluster: FakeCluster, *, rejoin_ok: bool = True, shutdown_state: str = "SHUTDOWN") -> list[dict[int, bool]]:
    """Make node 1 answer a switchover to node 2; returns the pause flags seen while node 1 was stopping."""
    paused_while_stopping: list[dict[int, bool]] = []
    healthy_leader(cluster)

    def stop_leader() -> RemoteResult:
        paused_while_stopping.append({node_id: cluster.control_state(node_id).is_paused() for node_id in cluster.nodes})
        cluster.server(1).reachable = False
        return RemoteResult(output="", returncode=0)

    def rejoin_leader() -> RemoteResult:
        if not rejoin_ok:
            return RemoteResult(output="", returncode=24, error="rejoin failed")
        cluster.server(1).reachable = True
        cluster.server(1).recovery = RecoveryType.STANDBY
        cluster.server(2).downstream["node1"] = "streaming"
        return RemoteResult(output="", returncode=0)

    cluster.remote.on("node1", "service --action=stop", stop_leader)
    cluster.remote.on("node1", "status --is-shutdown-cleanly", f"--state={shutdown_state} --last-checkpoint-lsn=0/500\n")
    cluster.remote.on("node1", "rejoin", rejoin_leader)
    return paused_while_stopping


def test_switchover_waits_for_shutdown_checkpoint(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    paused_while_stopping = switchover_ready(cluster)
    # candidate is 0x80 bytes behind the shutdown checkpoint and catches up in one poll
    cluster.server(2).receive_lsn = parse_lsn("0/480")
    cluster.server(2).receive_lsn_step = parse_lsn("0/500") - parse_lsn("0/480")
    orchestrator = make_orchestrator(cluster, 2, clock, server_control)

    plan = orchestrator.switchover(SwitchoverOptions())

    assert plan.shutdown_checkpoint_lsn == parse_lsn("0/500")
    assert cluster.server(2).queries.count("last_wal_receive_lsn") == 2
    assert clock.sleeps == [1.0]
    assert cluster.server(2).recovery == RecoveryType.LEADER

    new_leader = cluster.registry.get_primary_node()
    old_leader = cluster.registry.get_node(1)
    assert new_leader is not None and new_leader.node_id == 2
    assert old_leader.role == NodeRole.STANDBY and old_leader.upstream_node_id == 2 and old_leader.active
    assert cluster.registry.get_node(3).upstream_node_id == 1
    assert cluster.control_state(2).current_term() == 1

    assert ("node1", "pgwarden-ctl -f /etc/pgwarden/pgwarden.json service --action=stop --checkpoint") in cluster.remote.calls
    assert (
        "node1",
        "pgwarden-ctl -f /etc/pgwarden/pgwarden.json rejoin --upstream-conninfo='host=node2 dbname=postgres' --no-wait",
    ) in cluster.remote.calls
    # the candidate's slot on the old leader is gone, node 3's is kept
    assert list(cluster.server(1).slots) == ["pgwarden_slot_3"]

    assert paused_while_stopping == [{1: True, 2: True, 3: True}]
    assert not any(cluster.control_state(node_id).is_paused() for node_id in cluster.nodes)
    event = cluster.registry.get_events()[0]
    assert event.event == "standby_switchover" and event.successful


def test_switchover_preflight_reports_capacity_deficit(clock: FakeClock, server_control: Mock) -> None:
    cluster = FakeCluster(
        [
            make_node(1, NodeRole.LEADER),
            make_node(2),
            make_node(3, slot_name="pgwarden_slot_3"),
            make_node(4, slot_name="pgwarden_slot_4"),
        ]
    )
    cluster.server(2).max_wal_senders = 0
    cluster.server(2).max_replication_slots = 0
    switchover_ready(cluster)
    orchestrator = make_orchestrator(cluster, 2, clock, server_control)

    with pytest.raises(ConfigurationError) as excinfo:
        orchestrator.switchover(SwitchoverOptions())

    assert "wal-senders" in str(excinfo.value)
    assert "3 required, 0 available (deficit: 3)" in str(excinfo.value)
    assert "replication slots on promotion candidate: 2 required, 0 available (deficit: 2)" in excinfo.value.detail
    assert excinfo.value.exit_code == 1
    # nothing was touched
    assert cluster.server(1).reachable
    assert cluster.server(2).recovery == RecoveryType.STANDBY
    assert not any(cluster.control_state(node_id).is_paused() for node_id in cluster.nodes)
    assert not any("service" in command for _, command in cluster.remote.calls)


def test_switchover_without_ssh_to_leader(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    orchestrator = make_orchestrator(three_node_cluster, 2, clock, server_control)
    with pytest.raises(RemoteCommandError) as excinfo:
        orchestrator.switchover(SwitchoverOptions(force=True))
    assert "'ssh'" in str(excinfo.value)
    assert excinfo.value.exit_code == 12
    assert three_node_cluster.remote.calls == [("node1", "/bin/true")]
    assert not any(three_node_cluster.control_state(node_id).is_paused() for node_id in three_node_cluster.nodes)


def test_preflight_is_idempotent(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster)
    orchestrator = make_orchestrator(cluster, 2, clock, server_control)
    nodes_before = cluster.registry.get_all_nodes()
    control_before = {node_id: cluster.control_state(node_id).snapshot() for node_id in cluster.nodes}
    conn = cluster.connector.connect(cluster.nodes[2].conninfo)
    assert conn is not None

    first = orchestrator.preflight(conn, registry_of(conn), SwitchoverOptions())
    second = orchestrator.preflight(conn, registry_of(conn), SwitchoverOptions())

    assert first.passed
    assert first.verdict == second.verdict
    assert [check.name for check in first.checks] == [
        "role",
        "wal-replay",
        "replication-lag",
        "leader-connection",
        "exclusive-backup",
        "ssh",
        "remote-command",
        "data-directory-config",
        "archive-ready",
        "wal-senders",
        "replication-slots",
    ]
    assert first.required_wal_senders == 2
    assert first.required_slots == 1
    assert cluster.registry.get_all_nodes() == nodes_before
    assert cluster.registry.get_events() == []
    assert {node_id: cluster.control_state(node_id).snapshot() for node_id in cluster.nodes} == control_before


def test_switchover_dry_run_changes_nothing(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster)
    plan = make_orchestrator(cluster, 2, clock, server_control).switchover(SwitchoverOptions(dry_run=True))

    assert plan.passed
    assert cluster.server(1).reachable
    assert cluster.registry.get_primary_node().node_id == 1
    assert not any(cluster.control_state(node_id).is_paused() for node_id in cluster.nodes)


def test_switchover_force_does_not_override_mismatched_data_directory(
    three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock
) -> None:
    cluster = three_node_cluster
    cluster.remote.on("node1", "check --data-directory-config", "--configured-data-directory=MISMATCH\n")
    switchover_ready(cluster)
    orchestrator = make_orchestrator(cluster, 2, clock, server_control)

    with pytest.raises(ConfigurationError) as excinfo:
        orchestrator.switchover(SwitchoverOptions(force=True))
    assert "data-directory-config" in str(excinfo.value)


def test_switchover_only_resumes_nodes_it_paused(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster)
    cluster.server(2).receive_lsn = parse_lsn("0/500")
    cluster.control_state(3).set_paused(True)

    make_orchestrator(cluster, 2, clock, server_control).switchover(SwitchoverOptions())

    assert cluster.control_state(3).is_paused()
    assert not cluster.control_state(1).is_paused()
    assert not cluster.control_state(2).is_paused()


def test_switchover_force_unpause(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster)
    cluster.server(2).receive_lsn = parse_lsn("0/500")
    cluster.control_state(3).set_paused(True)

    make_orchestrator(cluster, 2, clock, server_control).switchover(SwitchoverOptions(force_unpause=True))

    assert not any(cluster.control_state(node_id).is_paused() for node_id in cluster.nodes)


def test_switchover_incomplete_when_old_leader_does_not_rejoin(
    three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock
) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster, rejoin_ok=False)
    cluster.server(2).receive_lsn = parse_lsn("0/500")

    with pytest.raises(IncompleteError) as excinfo:
        make_orchestrator(cluster, 2, clock, server_control).switchover(SwitchoverOptions())

    assert excinfo.value.exit_code == 22
    assert "exit code 24" in excinfo.value.detail
    # the new leader stays in place
    assert cluster.registry.get_primary_node().node_id == 2
    assert cluster.server(2).recovery == RecoveryType.LEADER
    assert not any(cluster.control_state(node_id).is_paused() for node_id in cluster.nodes)
    event = cluster.registry.get_events()[0]
    assert event.event == "standby_switchover" and not event.successful


def test_switchover_unclean_leader_shutdown(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster, shutdown_state="UNCLEAN_SHUTDOWN")
    orchestrator = make_orchestrator(cluster, 2, clock, server_control, shutdown_check_timeout=3.0)

    with pytest.raises(SwitchoverError):
        orchestrator.switchover(SwitchoverOptions())

    # an unclean shutdown is reported once and not waited on
    assert clock.sleeps == []
    assert sum(1 for _, command in cluster.remote.calls if "--is-shutdown-cleanly" in command) == 1
    assert cluster.server(2).recovery == RecoveryType.STANDBY
    assert cluster.registry.get_primary_node().node_id == 1
    assert not any(cluster.control_state(node_id).is_paused() for node_id in cluster.nodes)


def test_unclean_leader_shutdown_with_force(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster, shutdown_state="UNCLEAN_SHUTDOWN")
    orchestrator = make_orchestrator(cluster, 2, clock, server_control)
    plan = SwitchoverPlan(leader=cluster.nodes[1], candidate=cluster.nodes[2], siblings=[cluster.nodes[3]])

    orchestrator.stop_leader(plan, SwitchoverOptions(force=True))

    assert plan.shutdown_checkpoint_lsn == parse_lsn("0/500")
    assert clock.sleeps == []


def test_switchover_candidate_not_catching_up(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    switchover_ready(cluster)
    cluster.server(2).receive_lsn = parse_lsn("0/480")
    orchestrator = make_orchestrator(cluster, 2, clock, server_control, wal_receive_check_timeout=4.0)

    with pytest.raises(SwitchoverError) as excinfo:
        orchestrator.switchover(SwitchoverOptions())

    assert "0/480" in excinfo.value.detail
    assert cluster.server(2).recovery == RecoveryType.STANDBY


def test_rejoin_unclean_shutdown_fails_before_network_access(
    three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock
) -> None:
    cluster = three_node_cluster
    orchestrator = make_orchestrator(cluster, 1, clock, server_control, control_data=UNCLEAN_CONTROL_DATA)

    with pytest.raises(RejoinError) as excinfo:
        orchestrator.rejoin(cluster.nodes[2].conninfo)

    assert "not shut down cleanly" in str(excinfo.value)
    assert excinfo.value.exit_code == 24
    assert cluster.connector.connects == []
    assert cluster.remote.calls == []
    server_control.run_pg_rewind.assert_not_called()
    server_control.start.assert_not_called()


def test_rejoin_refuses_running_server(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    server_control.is_running.return_value = True
    orchestrator = make_orchestrator(three_node_cluster, 1, clock, server_control)
    with pytest.raises(RejoinError):
        orchestrator.rejoin(three_node_cluster.nodes[2].conninfo)
    assert three_node_cluster.connector.connects == []


def failed_over_cluster(cluster: FakeCluster) -> FakeCluster:
    cluster.registry.promote_node(2, 1, old_leader_active=False)
    cluster.server(1).reachable = False
    cluster.server(2).recovery = RecoveryType.LEADER
    cluster.server(2).timeline = 2
    cluster.server(2).timeline_history = [(1, parse_lsn("0/480"))]
    return cluster


def test_rejoin_with_rewind(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = failed_over_cluster(three_node_cluster)
    cluster.server(2).downstream["node1"] = "streaming"
    orchestrator = make_orchestrator(cluster, 1, clock, server_control, control_data=UNCLEAN_CONTROL_DATA)

    node = orchestrator.rejoin(cluster.nodes[2].conninfo, force_rewind=True)

    server_control.run_pg_rewind.assert_called_once_with("host=node2 dbname=postgres")
    server_control.write_replication_config.assert_called_once_with(
        upstream_conninfo="host=node2 dbname=postgres", upstream_name="node2", slot_name=""
    )
    server_control.start.assert_called_once_with()
    assert node.active and node.upstream_node_id == 2 and node.role == NodeRole.STANDBY
    assert cluster.registry.get_events()[0].event == "node_rejoin"


def test_rejoin_diverged_timeline_needs_rewind(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = failed_over_cluster(three_node_cluster)
    orchestrator = make_orchestrator(cluster, 1, clock, server_control)

    with pytest.raises(RejoinError) as excinfo:
        orchestrator.rejoin(cluster.nodes[2].conninfo)

    assert "0/480" in excinfo.value.detail
    server_control.run_pg_rewind.assert_not_called()
    server_control.start.assert_not_called()


def test_rejoin_without_divergence(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = failed_over_cluster(three_node_cluster)
    cluster.server(2).timeline_history = [(1, parse_lsn("0/600"))]
    server_control.start.side_effect = lambda: cluster.server(2).downstream.update(node1="streaming") or True
    orchestrator = make_orchestrator(cluster, 1, clock, server_control, use_replication_slots=True)

    node = orchestrator.rejoin(cluster.nodes[2].conninfo)

    server_control.run_pg_rewind.assert_not_called()
    assert "pgwarden_slot_1" in cluster.server(2).slots
    assert node.slot_name == "pgwarden_slot_1"
    assert node.active


def test_promote(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    cluster.server(1).reachable = False
    node = make_orchestrator(cluster, 2, clock, server_control).promote()

    assert node.role == NodeRole.LEADER
    assert cluster.server(2).recovery == RecoveryType.LEADER
    assert not cluster.registry.get_node(1).active
    assert cluster.control_state(2).current_term() == 1
    assert cluster.registry.get_events()[0].event == "standby_promote"


def test_promote_refused_while_leader_runs(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    with pytest.raises(ConfigurationError):
        make_orchestrator(three_node_cluster, 2, clock, server_control).promote()
    assert three_node_cluster.server(2).recovery == RecoveryType.STANDBY


def test_promote_refused_with_paused_replay(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    cluster.server(1).reachable = False
    cluster.server(2).replay_paused = True
    cluster.server(2).replay_lsn = parse_lsn("0/200")
    with pytest.raises(PromotionError):
        make_orchestrator(cluster, 2, clock, server_control).promote()
    assert cluster.server(2).recovery == RecoveryType.STANDBY


def test_follow_new_leader(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = failed_over_cluster(three_node_cluster)
    server_control.restart.side_effect = lambda: cluster.server(2).downstream.update(node3="streaming") or True
    orchestrator = make_orchestrator(cluster, 3, clock, server_control, use_replication_slots=True)

    node = orchestrator.follow()

    assert node.upstream_node_id == 2
    assert "pgwarden_slot_3" in cluster.server(2).slots
    server_control.write_replication_config.assert_called_once_with(
        upstream_conninfo="host=node2 dbname=postgres", upstream_name="node2", slot_name="pgwarden_slot_3"
    )
    assert cluster.registry.get_events()[0].event == "standby_follow"


def test_follow_checks(three_node_cluster: FakeCluster, clock: FakeClock, server_control: Mock) -> None:
    cluster = three_node_cluster
    orchestrator = make_orchestrator(cluster, 3, clock, server_control)
    with pytest.raises(ConfigurationError):
        orchestrator.follow(3)
    with pytest.raises(FollowError):
        # node 2 is still a standby
        orchestrator.follow(2)

    # node 3 is not attached and both senders are in use
    cluster.server(1).max_wal_senders = 2
    cluster.server(1).downstream = {"node2": "streaming", "other": "streaming"}
    with pytest.raises(FollowError) as excinfo:
        orchestrator.follow()
    assert "deficit: 1" in excinfo.value.detail
    server_control.restart.assert_not_called()
