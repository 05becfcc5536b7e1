# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - error taxonomy

Lower level checks return typed results, orchestration steps raise one of the
exceptions below and only the top level entry points (``pgwarden.cli.main`` and
``pgwarden.pgwarden.main``) turn them into process exit codes.
"""
from __future__ import annotations

from typing import Final

SUCCESS: Final[int] = 0
ERR_BAD_CONFIG: Final[int] = 1
ERR_DB_CONN: Final[int] = 6
ERR_DB_QUERY: Final[int] = 7
ERR_PROMOTION_FAIL: Final[int] = 8
ERR_FAILOVER_FAIL: Final[int] = 11
ERR_BAD_SSH: Final[int] = 12
ERR_SYS_FAILURE: Final[int] = 13
ERR_MONITORING_FAIL: Final[int] = 15
ERR_MONITORING_TIMEOUT: Final[int] = 16
ERR_SWITCHOVER_FAIL: Final[int] = 18
ERR_SWITCHOVER_INCOMPLETE: Final[int] = 22
ERR_FOLLOW_FAIL: Final[int] = 23
ERR_REJOIN_FAIL: Final[int] = 24
ERR_NODE_STATUS: Final[int] = 25
ERR_REGISTRY_CONFLICT: Final[int] = 26


class PgWardenError(Exception):
    exit_code: int = ERR_SYS_FAILURE

    def __init__(self, message: str, *, detail: str | None = None, hint: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail
        self.hint = hint


class ConfigurationError(PgWardenError):
    """Bad or missing configuration or registry records, unreachable hosts at pre-flight."""

    exit_code = ERR_BAD_CONFIG


class TransientError(PgWardenError):
    """A check kept failing until its retry bound ran out."""

    exit_code = ERR_DB_CONN


class RemoteCommandError(PgWardenError):
    exit_code = ERR_BAD_SSH


class FatalError(PgWardenError):
    """Cluster state is ambiguous; acting on it risks data divergence."""

    exit_code = ERR_FAILOVER_FAIL


class PartitionError(FatalError):
    pass


class ElectionError(FatalError):
    pass


class PromotionError(FatalError):
    exit_code = ERR_PROMOTION_FAIL


class LocalNodeFailure(FatalError):
    exit_code = ERR_MONITORING_FAIL


class MonitoringTimeout(FatalError):
    exit_code = ERR_MONITORING_TIMEOUT


class SwitchoverError(FatalError):
    exit_code = ERR_SWITCHOVER_FAIL


class FollowError(FatalError):
    exit_code = ERR_FOLLOW_FAIL


class RejoinError(FatalError):
    exit_code = ERR_REJOIN_FAIL


class ConflictError(PgWardenError):
    """A conditional registry update found its precondition no longer holds."""

    exit_code = ERR_REGISTRY_CONFLICT


class IncompleteError(PgWardenError):
    """The operation succeeded in its essential part but could not be confirmed to completion."""

    exit_code = ERR_SWITCHOVER_INCOMPLETE


class QueryError(TransientError):
    exit_code = ERR_DB_QUERY
