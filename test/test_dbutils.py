"""
pgwarden tests

Copyright (c) 2016 Ohmu Ltd

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from pgwarden.dbutils import NodeConnection
from pgwarden.errors import QueryError
from unittest.mock import Mock, patch

import pytest


def test_sender_and_slot_stats() -> None:
    conn = NodeConnection(Mock(), "node2")
    with patch.object(conn, "query_one", return_value={"max_wal_senders": 10, "attached": 3}):
        senders = conn.sender_stats()
    assert senders.free == 7

    row = {"max_replication_slots": 4, "active": 2, "inactive": 1}
    with patch.object(conn, "query_one", return_value=row):
        slots = conn.slot_stats()
    assert slots.free == 1


def test_stats_without_a_row_are_query_errors() -> None:
    conn = NodeConnection(Mock(), "node2")
    with patch.object(conn, "query_one", return_value=None):
        with pytest.raises(QueryError, match="WAL sender settings"):
            conn.sender_stats()
        with pytest.raises(QueryError, match="replication slot settings"):
            conn.slot_stats()
