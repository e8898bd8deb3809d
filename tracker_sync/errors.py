"""Errors raised while talking to the sync server."""

from __future__ import annotations


class ServerError(Exception):
    """Base class for sync failures; ``label`` is a short user facing text."""

    label = "Server error"


class ConnectionFailedError(ServerError):
    label = "Connection failed"


class MessageParseError(ServerError):
    label = "Failed to parse message"


class InvalidPasswordError(ServerError):
    label = "Invalid password"


class InvalidResponseError(ServerError):
    label = "Invalid response"


class InvalidDatabaseBinaryError(ServerError):
    label = "Invalid database"


__all__ = [
    "ConnectionFailedError",
    "InvalidDatabaseBinaryError",
    "InvalidPasswordError",
    "InvalidResponseError",
    "MessageParseError",
    "ServerError",
]
