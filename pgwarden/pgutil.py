# Copied from https://github.com/ohmu/ohmu_common_py ohmu_common_py/pgutil.py version 0.0.1-0-unknown-fa54b44
"""
pgwarden - postgresql connection string utility functions

Copyright (c) 2015 Ohmu Ltd
See LICENSE for details
"""
from __future__ import annotations

from typing import Dict, Final
from urllib.parse import parse_qs, urlparse  # pylint: disable=no-name-in-module, import-error

import psycopg2.extensions

ConnectionInfo = Dict[str, str]

# Parameters that only make sense for the connection they were written for
NON_REPLICATION_KEYS: Final[tuple[str, ...]] = ("dbname", "replication", "target_session_attrs", "options")


def create_connection_string(connection_info: ConnectionInfo) -> str:
    return str(psycopg2.extensions.make_dsn(**connection_info))


def mask_connection_info(info: str) -> str:
    masked_info = get_connection_info(info)
    password = masked_info.pop("password", None)
    connection_string = create_connection_string(masked_info)
    message = "no password" if password is None else "hidden password"
    return f"{connection_string}; {message}"


def get_connection_info(info: str | ConnectionInfo) -> ConnectionInfo:
    """Get a normalized connection info dict from a connection string or a dict.

    Supports both the traditional libpq format and the new url format.
    """
    if isinstance(info, dict):
        return parse_connection_string_libpq(create_connection_string(info))
    if info.startswith("postgres://") or info.startswith("postgresql://"):
        return parse_connection_string_url(info)
    return parse_connection_string_libpq(info)


def parse_connection_string_url(url: str) -> ConnectionInfo:
    # drop scheme from the url as some versions of urlparse don't handle
    # query and path properly for urls with a non-http scheme
    schemeless_url = url.split(":", 1)[1]
    p = urlparse(schemeless_url)
    fields: ConnectionInfo = {}
    if p.hostname:
        fields["host"] = p.hostname
    if p.port:
        fields["port"] = str(p.port)
    if p.username:
        fields["user"] = p.username
    if p.password is not None:
        fields["password"] = p.password
    if p.path and p.path != "/":
        fields["dbname"] = p.path[1:]
    for k, v in parse_qs(p.query).items():
        fields[k] = v[-1]
    return fields


def parse_connection_string_libpq(connection_string: str) -> ConnectionInfo:
    """Parse a postgresql connection string.

    See:
        http://www.postgresql.org/docs/current/static/libpq-connect.html#LIBPQ-CONNSTRING
    """
    fields: ConnectionInfo = {}
    while True:
        connection_string = connection_string.strip()
        if not connection_string:
            break
        if "=" not in connection_string:
            raise ValueError(f"expecting key=value format in connection_string fragment {connection_string!r}")
        key, rem = connection_string.split("=", 1)
        key = key.strip()
        rem = rem.lstrip()
        if rem.startswith("'"):
            value, connection_string = _read_quoted_value(rem)
        else:
            res = rem.split(None, 1)
            if len(res) > 1:
                value, connection_string = res
            else:
                value, connection_string = rem, ""
        if key == "replication":
            value = value.lower()
        fields[key] = value
    return fields


def _read_quoted_value(rem: str) -> tuple[str, str]:
    asis, value = False, ""
    for i in range(1, len(rem)):
        if asis:
            value += rem[i]
            asis = False
        elif rem[i] == "'":
            return value, rem[i + 1 :]
        elif rem[i] == "\\":
            asis = True
        else:
            value += rem[i]
    raise ValueError(f"invalid connection_string fragment {rem!r}")


def get_connection_info_from_config_line(line: str) -> ConnectionInfo:
    _, value = line.split("=", 1)
    value = value.strip()[1:-1].replace("''", "'")
    return get_connection_info(value)


def conninfo_with(info: str | ConnectionInfo, **overrides: str | None) -> str:
    """Return ``info`` as a connection string with some parameters replaced; ``None`` removes a parameter."""
    fields = get_connection_info(info)
    for key, value in overrides.items():
        if value is None:
            fields.pop(key, None)
        else:
            fields[key] = value
    return create_connection_string(fields)


def build_primary_conninfo(upstream_conninfo: str, *, application_name: str, replication_user: str | None = None) -> str:
    """Connection string a standby uses to stream from ``upstream_conninfo``."""
    fields = get_connection_info(upstream_conninfo)
    for key in NON_REPLICATION_KEYS:
        fields.pop(key, None)
    if replication_user:
        fields["user"] = replication_user
    fields["application_name"] = application_name
    return create_connection_string(fields)
