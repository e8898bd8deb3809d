"""Defaults shared by the sync client and server."""

DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_PASSWORD = "1234"
DEFAULT_TIMEOUT_SECONDS = 30.0

DATABASE_FILENAME = "database.project_tracker"
PASSWORD_FILENAME = "password.txt"
LOG_FILENAME = "project_tracker_server.log"
BACKUP_FILENAME_FORMAT = "tmp_backup_database_%d_%m_%Y-%H_%M_%S.project_tracker"

PASSWORD_ENV_VAR = "PROJECT_TRACKER_PASSWORD"

# Per-subscriber queue size of the change broadcast.
BROADCAST_CAPACITY = 10
MAX_MESSAGE_BYTES = 64 * 1024 * 1024
RECV_CHUNK_SIZE = 64 * 1024
