# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - remote command channel

Runs ``pgwarden-ctl`` on other cluster hosts over ssh. The channel only moves
bytes; the replies are single lines of ``--key=value`` tokens which the callers
parse with :func:`pgwarden.common.parse_option_output`. Empty output always
means the host could not be reached or the command could not be run.
"""
from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from pathlib import PurePosixPath
from pgwarden.common import parse_lsn, parse_option_output
from pgwarden.common_types import CheckStatus, NodeRecord, ShutdownState
from pgwarden.default import REMOTE_COMMAND_TIMEOUT, SSH_OPTIONS

import shlex
import subprocess


@dataclass(frozen=True)
class RemoteResult:
    output: str
    returncode: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.error is None


def split_ssh_target(ssh_host: str) -> tuple[str | None, str]:
    if "@" in ssh_host:
        user, host = ssh_host.rsplit("@", 1)
        return user, host
    return None, ssh_host


class RemoteCommandChannel:
    def __init__(self, ssh_options: str = SSH_OPTIONS, timeout: float = REMOTE_COMMAND_TIMEOUT) -> None:
        self.ssh_options = ssh_options
        self.timeout = timeout
        self.log = getLogger("RemoteCommandChannel")

    def build_ssh_command(self, host: str, user: str | None, command: str) -> list[str]:
        target = f"{user}@{host}" if user else host
        return ["ssh", "-o", "BatchMode=yes", *shlex.split(self.ssh_options), target, command]

    def run(self, host: str, user: str | None, command: str) -> RemoteResult:
        ssh_command = self.build_ssh_command(host, user, command)
        self.log.debug("Executing remote command: %r", ssh_command)
        try:
            proc = subprocess.run(
                ssh_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            self.log.warning("Remote command %r on %r timed out after %.1fs", command, host, self.timeout)
            return RemoteResult(output="", returncode=-1, error="timeout")
        except OSError as ex:
            self.log.error("Unable to execute ssh: %s", ex)
            return RemoteResult(output="", returncode=-1, error=str(ex))
        output = proc.stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            self.log.warning("Remote command %r on %r exited with %d: %s", command, host, proc.returncode, stderr)
            return RemoteResult(output=output, returncode=proc.returncode, error=stderr or None)
        return RemoteResult(output=output, returncode=0)

    def run_on_node(self, node: NodeRecord, command: str) -> RemoteResult:
        user, host = split_ssh_target(node.ssh_host)
        return self.run(host, user, command)

    def test_connection(self, node: NodeRecord) -> bool:
        return self.run_on_node(node, "/bin/true").returncode == 0


def make_remote_command(node: NodeRecord, action: str, bindir: str = "") -> str:
    """Command line running ``pgwarden-ctl action`` with ``node``'s own configuration file."""
    executable = str(PurePosixPath(bindir) / "pgwarden-ctl") if bindir else "pgwarden-ctl"
    parts = [shlex.quote(executable)]
    if node.config_file:
        parts.extend(["-f", shlex.quote(node.config_file)])
    parts.append(action)
    return " ".join(parts)


def parse_shutdown_status(output: str | None) -> tuple[ShutdownState, int]:
    """Parse ``--state=... --last-checkpoint-lsn=X/X``; unreachable or garbled output is UNKNOWN."""
    options = parse_option_output(output)
    try:
        state = ShutdownState(options.get("state", ShutdownState.UNKNOWN.value))
    except ValueError:
        state = ShutdownState.UNKNOWN
    try:
        lsn = parse_lsn(options.get("last-checkpoint-lsn"))
    except ValueError:
        lsn = 0
    return state, lsn


def parse_check_status(output: str | None, key: str = "status") -> tuple[CheckStatus, dict[str, str]]:
    options = parse_option_output(output)
    try:
        status = CheckStatus(options.pop(key, CheckStatus.UNKNOWN.value))
    except ValueError:
        status = CheckStatus.UNKNOWN
    return status, options
