# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from typing import Final

CONFIG_FILE_PATH: Final[str] = "/etc/pgwarden/pgwarden.json"
CONTROL_STATE_FILE_PATH: Final[str] = "/var/lib/pgwarden/control_state.json"
JSON_STATE_FILE_PATH: Final[str] = "/tmp/pgwarden_state.json"
DB_POLL_INTERVAL: Final[float] = 2.0
RECONNECT_ATTEMPTS: Final[int] = 6
RECONNECT_INTERVAL: Final[float] = 10.0
CONNECT_TIMEOUT: Final[float] = 5.0
ELECTION_READY_TIMEOUT: Final[float] = 30.0
PRIMARY_NOTIFICATION_TIMEOUT: Final[float] = 60.0
DEGRADED_MONITORING_TIMEOUT: Final[float] = -1.0
LOG_STATUS_INTERVAL: Final[float] = 300.0
REPLICATION_LAG_WARNING: Final[float] = 300.0
REPLICATION_LAG_CRITICAL: Final[float] = 600.0
ARCHIVE_READY_WARNING: Final[int] = 16
ARCHIVE_READY_CRITICAL: Final[int] = 128
PROMOTE_CHECK_TIMEOUT: Final[float] = 60.0
PROMOTE_CHECK_INTERVAL: Final[float] = 1.0
SHUTDOWN_CHECK_TIMEOUT: Final[float] = 60.0
WAL_RECEIVE_CHECK_TIMEOUT: Final[float] = 30.0
STANDBY_RECONNECT_TIMEOUT: Final[float] = 60.0
NODE_REJOIN_TIMEOUT: Final[float] = 60.0
STANDBY_STARTUP_TIMEOUT: Final[float] = 60.0
PRIORITY: Final[int] = 100
LOCATION: Final[str] = "default"
HTTP_PORT: Final[int] = 15000
SSH_OPTIONS: Final[str] = "-q -o ConnectTimeout=10"
REMOTE_COMMAND_TIMEOUT: Final[float] = 60.0
CHECK_INTERVAL: Final[float] = 1.0
SLOT_NAME_TEMPLATE: Final[str] = "pgwarden_slot_{node_id}"
