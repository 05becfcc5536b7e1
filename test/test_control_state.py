"""
pgwarden tests

Copyright (c) 2016 Ohmu Ltd

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from pathlib import Path
from pgwarden.common_types import VotingStatus
from pgwarden.control_state import (
    apply_control_patch,
    ControlState,
    default_control_state,
    HttpControlStore,
    JsonFileControlStore,
    MemoryControlStore,
)
from pgwarden.errors import TransientError
from unittest.mock import Mock

import json
import pytest
import requests


def test_apply_control_patch_does_not_modify_original() -> None:
    state = default_control_state()
    new_state = apply_control_patch(state, {"paused": True, "increment_term": True})
    assert state["paused"] is False
    assert state["term"] == 0
    assert new_state["paused"] is True
    assert new_state["term"] == 1
    assert new_state["updated"] is not None


def test_apply_control_patch_terms() -> None:
    state = apply_control_patch(default_control_state(), {"term_at_least": 5})
    assert state["term"] == 5
    state = apply_control_patch(state, {"term_at_least": 3})
    assert state["term"] == 5
    state = apply_control_patch(state, {"term_at_least": 7, "increment_term": True})
    assert state["term"] == 8


def test_apply_control_patch_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError):
        apply_control_patch(default_control_state(), {"no_such_key": 1})
    with pytest.raises(ValueError):
        apply_control_patch(default_control_state(), {"voting_status": "maybe"})


def test_follow_directive_from_older_term_is_ignored() -> None:
    control_state = ControlState(MemoryControlStore({"term_at_least": 4}))
    control_state.notify_follow(2, term=3)
    assert control_state.get_new_primary() is None
    assert control_state.current_term() == 4

    control_state.notify_follow(3, term=4)
    assert control_state.get_new_primary() == 3
    control_state.notify_follow(2, term=6)
    assert control_state.get_new_primary() == 2
    assert control_state.current_term() == 6


def test_election_lifecycle() -> None:
    control_state = ControlState(MemoryControlStore())
    control_state.notify_follow(7, term=0)
    term = control_state.start_election(at_least=3)
    assert term == 4
    assert control_state.voting_status() == VotingStatus.INITIATED
    # a new election forgets directives from earlier terms
    assert control_state.get_new_primary() is None

    control_state.set_voting_status(VotingStatus.WON, candidate_id=1)
    snapshot = control_state.snapshot()
    assert snapshot["voting_status"] == "won"
    assert snapshot["candidate_id"] == 1

    control_state.reset_voting_status()
    snapshot = control_state.snapshot()
    assert snapshot["voting_status"] == "no_vote"
    assert snapshot["candidate_id"] is None
    assert snapshot["term"] == 4


def test_election_keeps_directive_from_current_term() -> None:
    control_state = ControlState(MemoryControlStore())
    assert control_state.get_follow_directive() is None
    control_state.notify_follow(2, term=3)
    assert control_state.get_follow_directive() == (2, 3)

    assert control_state.start_election(at_least=3) == 4
    assert control_state.get_new_primary() == 2
    assert control_state.voting_status() == VotingStatus.INITIATED


def test_set_paused_returns_previous_value() -> None:
    control_state = ControlState(MemoryControlStore())
    assert control_state.set_paused(True) is False
    assert control_state.set_paused(True) is True
    assert control_state.is_paused()
    assert control_state.set_paused(False) is True
    assert not control_state.is_paused()


def test_json_file_control_store(tmp_path: Path) -> None:
    path = tmp_path / "control.json"
    store = JsonFileControlStore(path)
    assert store.load() == default_control_state()
    assert not path.exists()

    ControlState(store).set_paused(True)
    ControlState(store).increment_term()
    with path.open() as fp:
        stored = json.load(fp)
    assert stored["paused"] is True
    assert stored["term"] == 1
    assert not (tmp_path / "control.json.tmp").exists()

    # a fresh store on the same file sees the same state
    assert ControlState(JsonFileControlStore(path)).is_paused()


def test_json_file_control_store_broken_file(tmp_path: Path) -> None:
    path = tmp_path / "control.json"
    path.write_text("{broken")
    store = JsonFileControlStore(path)
    assert store.load() == default_control_state()
    store.apply({"paused": True})
    assert store.load()["paused"] is True


def test_http_control_store() -> None:
    session = Mock(spec=requests.Session)
    session.get.return_value.json.return_value = {"paused": True, "term": 3}
    session.post.return_value.json.return_value = {"paused": False, "term": 3}
    store = HttpControlStore("http://node2:15000/", session=session)

    control_state = ControlState(store)
    assert control_state.is_paused()
    assert control_state.current_term() == 3
    session.get.assert_called_with("http://node2:15000/control.json", timeout=5.0)

    control_state.notify_follow(1, term=3)
    session.post.assert_called_with(
        "http://node2:15000/control", json={"follow": {"node_id": 1, "term": 3}}, timeout=5.0
    )


def test_http_control_store_errors() -> None:
    session = Mock(spec=requests.Session)
    session.get.side_effect = requests.ConnectionError("connection refused")
    store = HttpControlStore("http://node2:15000", session=session)
    with pytest.raises(TransientError):
        store.load()

    # only the keys other nodes may change are sent at all
    with pytest.raises(ValueError):
        store.apply({"term_at_least": 10})
    session.post.assert_not_called()
