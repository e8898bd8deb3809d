"""Client/server synchronization of the project tracker database."""

from .broadcast import ModifiedBroadcast, ModifiedEvent, Subscription
from .client import (
    ServerConfig,
    ServerConnection,
    SyncOutcome,
    SyncResult,
    synchronize,
    synchronize_in_background,
    watch_modified,
)
from .errors import (
    ConnectionFailedError,
    InvalidDatabaseBinaryError,
    InvalidPasswordError,
    InvalidResponseError,
    MessageParseError,
    ServerError,
)
from .rwlock import ReadWriteLock
from .server import SharedServerData, SyncServer

__all__ = [
    "ConnectionFailedError",
    "InvalidDatabaseBinaryError",
    "InvalidPasswordError",
    "InvalidResponseError",
    "MessageParseError",
    "ModifiedBroadcast",
    "ModifiedEvent",
    "ReadWriteLock",
    "ServerConfig",
    "ServerConnection",
    "ServerError",
    "SharedServerData",
    "Subscription",
    "SyncOutcome",
    "SyncResult",
    "SyncServer",
    "synchronize",
    "synchronize_in_background",
    "watch_modified",
]
