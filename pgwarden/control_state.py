# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - shared control state

Each node has one small piece of control state: whether its failover handling
is paused, the current election term and the voting status of the running
election, and the follow directive announced by an election winner. It is
owned by the node's daemon, mutated through patches so that every store
applies the same rules, and readable by other nodes over HTTP.
"""
from __future__ import annotations

from copy import deepcopy
from logging import getLogger
from pathlib import Path
from pgwarden.common import get_iso_timestamp
from pgwarden.common_types import VotingStatus
from pgwarden.default import CONTROL_STATE_FILE_PATH
from pgwarden.errors import TransientError
from typing import Any, TypedDict

import json
import requests
import threading


class ControlStateDict(TypedDict):
    paused: bool
    term: int
    voting_status: str
    candidate_id: int | None
    follow_directive: bool
    upstream_last_seen: str | None
    updated: str | None


def default_control_state() -> ControlStateDict:
    return {
        "paused": False,
        "term": 0,
        "voting_status": VotingStatus.NO_VOTE.value,
        "candidate_id": None,
        "follow_directive": False,
        "upstream_last_seen": None,
        "updated": None,
    }


# Keys other nodes are allowed to change through the HTTP endpoint
REMOTE_PATCH_KEYS = frozenset(["paused", "follow"])


def apply_control_patch(state: ControlStateDict, patch: dict[str, Any]) -> ControlStateDict:
    """Return a copy of ``state`` with ``patch`` applied.

    Besides plain keys a patch may contain ``increment_term``, ``term_at_least``
    and ``follow`` (``{"node_id": .., "term": ..}``). A follow directive from an
    older term than the current one is ignored.
    """
    new_state = deepcopy(state)
    for key, value in patch.items():
        if key == "increment_term":
            if value:
                new_state["term"] += 1
        elif key == "term_at_least":
            new_state["term"] = max(new_state["term"], int(value))
        elif key == "follow":
            term = int(value["term"])
            if term < new_state["term"]:
                getLogger("ControlState").warning(
                    "Ignoring follow directive for node %r from term %d, current term is %d",
                    value["node_id"],
                    term,
                    new_state["term"],
                )
                continue
            new_state["term"] = term
            new_state["candidate_id"] = int(value["node_id"])
            new_state["follow_directive"] = True
        elif key == "voting_status":
            new_state["voting_status"] = VotingStatus(value).value
        elif key in new_state:
            new_state[key] = value  # type: ignore[literal-required]
        else:
            raise ValueError(f"unknown control state key {key!r}")
    new_state["updated"] = get_iso_timestamp()
    return new_state


class ControlStore:
    def load(self) -> ControlStateDict:
        raise NotImplementedError

    def apply(self, patch: dict[str, Any]) -> ControlStateDict:
        raise NotImplementedError


class MemoryControlStore(ControlStore):
    def __init__(self, state: dict[str, Any] | None = None) -> None:
        self.lock = threading.Lock()
        self.state = apply_control_patch(default_control_state(), state or {})

    def load(self) -> ControlStateDict:
        with self.lock:
            return deepcopy(self.state)

    def apply(self, patch: dict[str, Any]) -> ControlStateDict:
        with self.lock:
            self.state = apply_control_patch(self.state, patch)
            return deepcopy(self.state)


class JsonFileControlStore(ControlStore):
    """Control state persisted in a JSON file, replaced atomically on every change."""

    def __init__(self, path: Path | str = CONTROL_STATE_FILE_PATH) -> None:
        self.path = Path(path)
        self.lock = threading.Lock()
        self.log = getLogger("JsonFileControlStore")

    def _read(self) -> ControlStateDict:
        state = default_control_state()
        try:
            with self.path.open() as fp:
                stored = json.load(fp)
        except FileNotFoundError:
            return state
        except (OSError, ValueError) as ex:
            self.log.warning("Unable to read control state from %r, using defaults: %s", str(self.path), ex)
            return state
        state.update({key: value for key, value in stored.items() if key in state})  # type: ignore[typeddict-item]
        return state

    def load(self) -> ControlStateDict:
        with self.lock:
            return self._read()

    def apply(self, patch: dict[str, Any]) -> ControlStateDict:
        with self.lock:
            state = apply_control_patch(self._read(), patch)
            path_tmp = self.path.with_name(f"{self.path.name}.tmp")
            path_tmp.write_text(json.dumps(state, indent=4))
            path_tmp.rename(self.path)
            return state


class HttpControlStore(ControlStore):
    """Control state of another node, reached through its daemon's HTTP endpoint."""

    def __init__(self, base_url: str, *, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def load(self) -> ControlStateDict:
        try:
            response = self.session.get(f"{self.base_url}/control.json", timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as ex:
            raise TransientError(f"unable to fetch control state from {self.base_url}: {ex}") from ex
        state = default_control_state()
        state.update(response.json())
        return state

    def apply(self, patch: dict[str, Any]) -> ControlStateDict:
        unknown = set(patch) - REMOTE_PATCH_KEYS
        if unknown:
            raise ValueError(f"control state keys {sorted(unknown)!r} can't be changed remotely")
        try:
            response = self.session.post(f"{self.base_url}/control", json=patch, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as ex:
            raise TransientError(f"unable to update control state on {self.base_url}: {ex}") from ex
        state = default_control_state()
        state.update(response.json())
        return state


class ControlState:
    def __init__(self, store: ControlStore) -> None:
        self.store = store
        self.log = getLogger("ControlState")

    def snapshot(self) -> ControlStateDict:
        return self.store.load()

    def is_paused(self) -> bool:
        return self.store.load()["paused"]

    def set_paused(self, paused: bool) -> bool:
        """Set the pause flag, returning its previous value."""
        previous = self.store.load()["paused"]
        self.store.apply({"paused": paused})
        return previous

    def current_term(self) -> int:
        return self.store.load()["term"]

    def voting_status(self) -> VotingStatus:
        return VotingStatus(self.store.load()["voting_status"])

    def start_election(self, at_least: int = 0) -> int:
        """Open a new term, above both our own term and ``at_least`` (the highest term seen on peers).

        A follow directive announced in a term not older than ``at_least`` is kept,
        the winner of that term may have notified us before we got here.
        """
        patch: dict[str, Any] = {
            "term_at_least": at_least,
            "increment_term": True,
            "voting_status": VotingStatus.INITIATED,
        }
        directive = self.get_follow_directive()
        if directive is None or directive[1] < at_least:
            patch.update({"candidate_id": None, "follow_directive": False})
        state = self.store.apply(patch)
        self.log.info("Starting election in term %d", state["term"])
        return state["term"]

    def set_voting_status(self, status: VotingStatus, candidate_id: int | None = None) -> None:
        patch: dict[str, Any] = {"voting_status": status}
        if candidate_id is not None:
            patch["candidate_id"] = candidate_id
        self.store.apply(patch)

    def increment_term(self) -> int:
        return self.store.apply({"increment_term": True})["term"]

    def notify_follow(self, node_id: int, term: int) -> None:
        self.store.apply({"follow": {"node_id": node_id, "term": term}})

    def get_new_primary(self) -> int | None:
        state = self.store.load()
        if state["follow_directive"]:
            return state["candidate_id"]
        return None

    def get_follow_directive(self) -> tuple[int, int] | None:
        """The announced new leader and the term it was announced in."""
        state = self.store.load()
        if state["follow_directive"] and state["candidate_id"] is not None:
            return state["candidate_id"], state["term"]
        return None

    def reset_voting_status(self) -> None:
        self.store.apply(
            {
                "voting_status": VotingStatus.NO_VOTE,
                "candidate_id": None,
                "follow_directive": False,
            }
        )

    def set_upstream_last_seen(self, timestamp: str | None = None) -> None:
        self.store.apply({"upstream_last_seen": timestamp or get_iso_timestamp()})
