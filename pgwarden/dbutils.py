"""
pgwarden - database access

Copyright (c) 2015 Ohmu Ltd
Copyright (c) 2014 F-Secure

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pgwarden.common import INVALID_LSN, parse_lsn
from pgwarden.common_types import RecoveryType
from pgwarden.default import CONNECT_TIMEOUT
from pgwarden.errors import QueryError, TransientError
from pgwarden.pgutil import conninfo_with, mask_connection_info
from psycopg2.extras import PhysicalReplicationConnection, RealDictCursor
from typing import Any

import errno
import logging
import psycopg2
import psycopg2.extensions
import select
import time


class PgWardenTimeout(Exception):
    pass


def wait_select(conn: Any, timeout: float = CONNECT_TIMEOUT) -> None:
    end_time = time.monotonic() + timeout
    while time.monotonic() < end_time:
        time_left = end_time - time.monotonic()
        state = conn.poll()
        try:
            if state == psycopg2.extensions.POLL_OK:
                return
            if state == psycopg2.extensions.POLL_READ:
                select.select([conn.fileno()], [], [], min(timeout, time_left))
            elif state == psycopg2.extensions.POLL_WRITE:
                select.select([], [conn.fileno()], [], min(timeout, time_left))
            else:
                raise psycopg2.OperationalError(f"bad state from poll: {state}")
        except InterruptedError:
            continue
        except OSError as error:
            if error.errno != errno.EINTR:
                raise
    raise PgWardenTimeout("timed out in wait_select")


@dataclass
class ReplicationInfo:
    db_time: datetime | None
    in_recovery: bool
    last_wal_receive_lsn: int
    last_wal_replay_lsn: int
    last_xact_replay_timestamp: datetime | None
    wal_replay_paused: bool
    receiving_streamed_wal: bool

    @property
    def replication_lag_seconds(self) -> float | None:
        if not self.in_recovery or self.db_time is None or self.last_xact_replay_timestamp is None:
            return None
        # abs is for catching time travel (as in going from the future to the past)
        return abs(self.db_time - self.last_xact_replay_timestamp).total_seconds()


@dataclass
class SenderStats:
    max_wal_senders: int
    attached_wal_senders: int

    @property
    def free(self) -> int:
        return max(0, self.max_wal_senders - self.attached_wal_senders)


@dataclass
class SlotStats:
    max_replication_slots: int
    active_slots: int
    inactive_slots: int

    @property
    def free(self) -> int:
        return max(0, self.max_replication_slots - self.active_slots - self.inactive_slots)


class NodeConnection:
    """A non-blocking psycopg2 connection whose every round trip is bounded by ``timeout``."""

    def __init__(self, conn: Any, name: str, timeout: float = CONNECT_TIMEOUT) -> None:
        self.conn = conn
        self.name = name
        self.timeout = timeout
        self.log = logging.getLogger("NodeConnection")

    @classmethod
    def connect(cls, dsn: str, *, name: str | None = None, timeout: float = CONNECT_TIMEOUT) -> NodeConnection:
        name = name or mask_connection_info(dsn)
        try:
            conn = psycopg2.connect(dsn=dsn, async_=True)
            wait_select(conn, timeout)
        except (PgWardenTimeout, psycopg2.OperationalError) as ex:
            raise TransientError(f"unable to connect to {name}: {str(ex).strip()}") from ex
        return cls(conn, name, timeout)

    @property
    def server_version(self) -> int:
        return int(self.conn.server_version)

    @property
    def closed(self) -> bool:
        return bool(self.conn.closed)

    def close(self) -> None:
        if not self.conn.closed:
            self.conn.close()

    def query(self, query: str, params: Any = None) -> list[dict[str, Any]]:
        try:
            cursor = self.conn.cursor(cursor_factory=RealDictCursor)
            cursor.execute(query, params)
            wait_select(cursor.connection, self.timeout)
            if cursor.description is None:
                return []
            return [dict(row) for row in cursor.fetchall()]
        except (PgWardenTimeout, psycopg2.Error) as ex:
            raise QueryError(f"{ex.__class__.__name__} ({str(ex).strip()}) querying {self.name}") from ex

    def query_one(self, query: str, params: Any = None) -> dict[str, Any] | None:
        rows = self.query(query, params)
        return rows[0] if rows else None

    def execute(self, query: str, params: Any = None) -> int:
        try:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            wait_select(cursor.connection, self.timeout)
            return int(cursor.rowcount)
        except (PgWardenTimeout, psycopg2.Error) as ex:
            raise QueryError(f"{ex.__class__.__name__} ({str(ex).strip()}) executing on {self.name}") from ex

    def recovery_type(self) -> RecoveryType:
        try:
            row = self.query_one("SELECT pg_catalog.pg_is_in_recovery() AS in_recovery")
        except QueryError:
            return RecoveryType.UNKNOWN
        if row is None:
            return RecoveryType.UNKNOWN
        return RecoveryType.STANDBY if row["in_recovery"] else RecoveryType.LEADER

    def current_wal_lsn(self) -> int:
        row = self.query_one("SELECT pg_catalog.pg_current_wal_lsn()::text AS lsn")
        return parse_lsn(row["lsn"]) if row else INVALID_LSN

    def last_wal_receive_lsn(self) -> int:
        row = self.query_one("SELECT pg_catalog.pg_last_wal_receive_lsn()::text AS lsn")
        return parse_lsn(row["lsn"]) if row else INVALID_LSN

    def replication_info(self) -> ReplicationInfo:
        row = self.query_one(
            "SELECT now() AS db_time, in_recovery, "
            "       pg_catalog.pg_last_wal_receive_lsn()::text AS receive_lsn, "
            "       pg_catalog.pg_last_wal_replay_lsn()::text AS replay_lsn, "
            "       pg_catalog.pg_last_xact_replay_timestamp() AS last_xact_replay_timestamp, "
            "       CASE WHEN in_recovery THEN pg_catalog.pg_is_wal_replay_paused() ELSE FALSE END AS replay_paused, "
            "       EXISTS (SELECT 1 FROM pg_catalog.pg_stat_wal_receiver WHERE status = 'streaming') AS streaming "
            "  FROM pg_catalog.pg_is_in_recovery() AS in_recovery"
        )
        if row is None:
            raise QueryError(f"no replication information returned by {self.name}")
        return ReplicationInfo(
            db_time=row["db_time"],
            in_recovery=bool(row["in_recovery"]),
            last_wal_receive_lsn=parse_lsn(row["receive_lsn"]),
            last_wal_replay_lsn=parse_lsn(row["replay_lsn"]),
            last_xact_replay_timestamp=row["last_xact_replay_timestamp"],
            wal_replay_paused=bool(row["replay_paused"]),
            receiving_streamed_wal=bool(row["streaming"]),
        )

    def sender_stats(self) -> SenderStats:
        row = self.query_one(
            "SELECT pg_catalog.current_setting('max_wal_senders')::int AS max_wal_senders, "
            "       (SELECT count(*) FROM pg_catalog.pg_stat_replication)::int AS attached"
        )
        if row is None:
            raise QueryError(f"no WAL sender settings returned by {self.name}")
        return SenderStats(max_wal_senders=row["max_wal_senders"], attached_wal_senders=row["attached"])

    def slot_stats(self) -> SlotStats:
        row = self.query_one(
            "SELECT pg_catalog.current_setting('max_replication_slots')::int AS max_replication_slots, "
            "       count(*) FILTER (WHERE active)::int AS active, "
            "       count(*) FILTER (WHERE NOT active)::int AS inactive "
            "  FROM pg_catalog.pg_replication_slots"
        )
        if row is None:
            raise QueryError(f"no replication slot settings returned by {self.name}")
        return SlotStats(
            max_replication_slots=row["max_replication_slots"],
            active_slots=row["active"],
            inactive_slots=row["inactive"],
        )

    def is_superuser(self) -> bool:
        row = self.query_one("SELECT pg_catalog.current_setting('is_superuser') AS is_superuser")
        return bool(row and row["is_superuser"] == "on")

    def in_exclusive_backup(self) -> bool:
        if self.server_version >= 150000:
            # exclusive backups were removed in PostgreSQL 15
            return False
        row = self.query_one("SELECT pg_catalog.pg_is_in_backup() AS in_backup")
        return bool(row and row["in_backup"])

    def data_directory(self) -> str | None:
        try:
            row = self.query_one("SELECT pg_catalog.current_setting('data_directory') AS data_directory")
        except QueryError:
            self.log.warning("Unable to read data_directory from %s, insufficient privileges?", self.name)
            return None
        return row["data_directory"] if row else None

    def timeline_id(self) -> int | None:
        row = self.query_one("SELECT timeline_id FROM pg_catalog.pg_control_checkpoint()")
        return int(row["timeline_id"]) if row else None

    def checkpoint(self) -> None:
        self.execute("CHECKPOINT")

    def promote(self) -> bool:
        row = self.query_one("SELECT pg_catalog.pg_promote(wait := false) AS promoted")
        return bool(row and row["promoted"])

    def downstream_state(self, application_name: str) -> str | None:
        row = self.query_one(
            "SELECT state FROM pg_catalog.pg_stat_replication WHERE application_name = %s",
            (application_name,),
        )
        return row["state"] if row else None

    def attached_application_names(self) -> list[str]:
        rows = self.query("SELECT application_name FROM pg_catalog.pg_stat_replication")
        return [row["application_name"] for row in rows]

    def replication_slot(self, slot_name: str) -> dict[str, Any] | None:
        return self.query_one(
            "SELECT slot_name, slot_type, active FROM pg_catalog.pg_replication_slots WHERE slot_name = %s",
            (slot_name,),
        )

    def inactive_physical_slots(self) -> list[str]:
        rows = self.query(
            "SELECT slot_name FROM pg_catalog.pg_replication_slots WHERE slot_type = 'physical' AND NOT active"
        )
        return [row["slot_name"] for row in rows]

    def create_replication_slot(self, slot_name: str) -> None:
        if self.replication_slot(slot_name) is None:
            self.query("SELECT pg_catalog.pg_create_physical_replication_slot(%s)", (slot_name,))

    def drop_replication_slot(self, slot_name: str) -> bool:
        slot = self.replication_slot(slot_name)
        if slot is None:
            return False
        if slot["active"]:
            self.log.warning("Replication slot %r on %s is still active, not dropping", slot_name, self.name)
            return False
        self.query("SELECT pg_catalog.pg_drop_replication_slot(%s)", (slot_name,))
        return True

    def archive_ready_count(self) -> int | None:
        if self.server_version < 120000:
            return None
        try:
            row = self.query_one(
                "SELECT count(*)::int AS ready FROM pg_catalog.pg_ls_archive_statusdir() WHERE name LIKE '%%.ready'"
            )
        except QueryError:
            self.log.warning("Unable to list archive status directory on %s, insufficient privileges?", self.name)
            return None
        return row["ready"] if row else None


class Connector:
    """Opens connections to cluster nodes, returning ``None`` instead of raising when a node is unreachable."""

    def __init__(self, timeout: float = CONNECT_TIMEOUT) -> None:
        self.timeout = timeout
        self.log = logging.getLogger("Connector")

    def connect(self, dsn: str, name: str | None = None) -> NodeConnection | None:
        try:
            return NodeConnection.connect(dsn, name=name, timeout=self.timeout)
        except TransientError as ex:
            self.log.warning("%s", ex)
            return None

    def is_server_available(self, dsn: str) -> bool:
        conn = self.connect(dsn)
        if conn is None:
            return False
        conn.close()
        return True

    def timeline_history(self, dsn: str, timeline_id: int) -> list[tuple[int, int]]:
        """Fetch the history of ``timeline_id`` from the server at ``dsn``.

        Returns:
            A list of ``(parent_timeline_id, switchpoint_lsn)`` tuples, oldest first.
        """
        repl_dsn = conninfo_with(dsn, replication="true", dbname=None, connect_timeout=str(int(self.timeout)))
        try:
            conn = psycopg2.connect(repl_dsn, connection_factory=PhysicalReplicationConnection)
        except psycopg2.OperationalError as ex:
            raise TransientError(f"unable to open replication connection: {str(ex).strip()}") from ex
        try:
            cursor = conn.cursor()
            cursor.execute(f"TIMELINE_HISTORY {int(timeline_id)}")
            _, content = cursor.fetchone()
        except psycopg2.Error as ex:
            raise QueryError(f"unable to fetch history of timeline {timeline_id}: {str(ex).strip()}") from ex
        finally:
            conn.close()
        if isinstance(content, (bytes, memoryview)):
            content = bytes(content).decode("utf-8")
        return parse_timeline_history(content)


def parse_timeline_history(content: str) -> list[tuple[int, int]]:
    history = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        history.append((int(parts[0]), parse_lsn(parts[1])))
    return history
