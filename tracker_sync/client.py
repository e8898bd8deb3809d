"""Client side of the sync protocol: last-writer-wins reconciliation."""

from __future__ import annotations

import logging
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Type, TypeVar, Union

from tracker_crypto import DecryptionError, EnvelopeFormatError, PayloadDecodeError
from tracker_database import Database, save_to

from .constants import (
    DEFAULT_HOSTNAME,
    DEFAULT_PASSWORD,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_SECONDS,
    RECV_CHUNK_SIZE,
)
from .errors import (
    ConnectionFailedError,
    InvalidDatabaseBinaryError,
    InvalidPasswordError,
    InvalidResponseError,
    MessageParseError,
)
from .protocol import (
    REQUEST_CODEC,
    RESPONSE_CODEC,
    DatabaseData,
    DatabaseModified,
    DatabaseUpdated,
    DownloadDatabase,
    GetModifiedDate,
    InvalidDatabaseBinary,
    InvalidPassword,
    JsonLineFramer,
    ModifiedDate,
    ProtocolError,
    Request,
    Response,
    UpdateDatabase,
    WatchModified,
    seal,
    unseal,
)

LOGGER = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class ServerConfig:
    hostname: str = DEFAULT_HOSTNAME
    port: int = DEFAULT_PORT
    password: str = DEFAULT_PASSWORD
    timeout: float = DEFAULT_TIMEOUT_SECONDS


class SyncOutcome(Enum):
    DOWNLOADED = "downloaded"
    UPLOADED = "uploaded"


@dataclass
class SyncResult:
    """Outcome of :func:`synchronize` and the database the caller should keep."""

    outcome: SyncOutcome
    database: Database
    last_modified: datetime


class ServerConnection:
    """A persistent, authenticated connection to the sync server."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self._sock: Optional[socket.socket] = None
        self._framer = JsonLineFramer()
        self._pending: List[dict] = []

    def connect(self) -> None:
        try:
            self._sock = socket.create_connection(
                (self.config.hostname, self.config.port), timeout=self.config.timeout
            )
        except OSError as exc:
            raise ConnectionFailedError(
                f"Failed to connect to {self.config.hostname}:{self.config.port}: {exc}"
            ) from exc
        LOGGER.debug("connected to %s:%s", self.config.hostname, self.config.port)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "ServerConnection":
        if self._sock is None:
            self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def send(self, request: Request) -> None:
        if self._sock is None:
            raise ConnectionFailedError("Not connected")
        data = seal(request, self.config.password, REQUEST_CODEC)
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise ConnectionFailedError(f"Failed to send request: {exc}") from exc

    def receive(self, timeout: Optional[float] = None) -> Response:
        """Wait for the next response frame.

        ``timeout`` overrides the configured socket timeout for this call and
        lets ``socket.timeout`` through on expiry, for polling callers.
        Without it a timeout is a :class:`ConnectionFailedError`.
        """
        if self._sock is None:
            raise ConnectionFailedError("Not connected")
        self._sock.settimeout(self.config.timeout if timeout is None else timeout)
        while not self._pending:
            try:
                chunk = self._sock.recv(RECV_CHUNK_SIZE)
            except socket.timeout as exc:
                if timeout is not None:
                    raise
                raise ConnectionFailedError(f"Timed out waiting for response: {exc}") from exc
            except OSError as exc:
                raise ConnectionFailedError(f"Failed to receive response: {exc}") from exc
            if not chunk:
                raise ConnectionFailedError("Server closed the connection")
            try:
                self._pending.extend(self._framer.feed(chunk))
            except ProtocolError as exc:
                raise MessageParseError(str(exc)) from exc
        frame = self._pending.pop(0)
        try:
            response = unseal(frame, self.config.password, RESPONSE_CODEC)
        except (DecryptionError, EnvelopeFormatError) as exc:
            raise InvalidPasswordError("Server response could not be decrypted") from exc
        except PayloadDecodeError as exc:
            raise MessageParseError(str(exc)) from exc
        if isinstance(response, InvalidPassword):
            raise InvalidPasswordError("Server rejected the password")
        return response

    def request(self, request: Request, expected: Type[R]) -> R:
        self.send(request)
        return expect_response(self.receive(), expected)


def expect_response(response: Response, expected: Type[R]) -> R:
    if isinstance(response, InvalidDatabaseBinary):
        raise InvalidDatabaseBinaryError("Server rejected the database")
    if not isinstance(response, expected):
        raise InvalidResponseError(f"Expected {expected.__name__}, got {type(response).__name__}")
    return response


def synchronize(
    config: ServerConfig,
    database: Database,
    filepath: Optional[Union[str, Path]] = None,
) -> SyncResult:
    """Reconcile ``database`` with the server.

    If the server copy is newer it is downloaded and returned; otherwise
    (equal timestamps included) the local copy is uploaded. When
    ``filepath`` is given the winning bytes are written there verbatim.
    """
    with ServerConnection(config) as connection:
        server_modified = connection.request(GetModifiedDate(), ModifiedDate).last_modified
        LOGGER.debug(
            "server modified %s, local modified %s",
            server_modified.isoformat(),
            database.last_changed_time.isoformat(),
        )

        if server_modified > database.last_changed_time:
            data = connection.request(DownloadDatabase(), DatabaseData)
            try:
                downloaded = Database.from_binary(data.database_binary)
            except ValueError as exc:
                raise InvalidDatabaseBinaryError(f"Downloaded database is invalid: {exc}") from exc
            downloaded.last_changed_time = data.last_modified
            if filepath is not None:
                save_to(filepath, data.database_binary)
                downloaded.saved()
            LOGGER.info("downloaded database (last modified %s)", data.last_modified.isoformat())
            return SyncResult(SyncOutcome.DOWNLOADED, downloaded, data.last_modified)

        database_binary = database.to_binary()
        last_modified = database.last_changed_time
        connection.request(UpdateDatabase(database_binary, last_modified), DatabaseUpdated)
        if filepath is not None:
            save_to(filepath, database_binary)
            database.saved()
        LOGGER.info("uploaded database (last modified %s)", last_modified.isoformat())
        return SyncResult(SyncOutcome.UPLOADED, database, last_modified)


def synchronize_in_background(
    config: ServerConfig,
    database: Database,
    filepath: Optional[Union[str, Path]] = None,
    executor: Optional[ThreadPoolExecutor] = None,
) -> "Future[SyncResult]":
    """Run :func:`synchronize` on a worker thread.

    The database must not be modified until the future completes.
    """
    if executor is not None:
        return executor.submit(synchronize, config, database, filepath)
    own_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tracker-sync")
    future = own_executor.submit(synchronize, config, database, filepath)
    own_executor.shutdown(wait=False)
    return future


def watch_modified(
    config: ServerConfig,
    on_modified: Callable[[datetime], Any],
    stop_event: threading.Event,
    poll_interval: float = 0.5,
) -> None:
    """Call ``on_modified`` for every change another client pushes to the server.

    Blocks until ``stop_event`` is set or the connection breaks (the error
    is raised).
    """
    with ServerConnection(config) as connection:
        connection.send(WatchModified())
        while not stop_event.is_set():
            try:
                response = connection.receive(timeout=poll_interval)
            except socket.timeout:
                continue
            modified = expect_response(response, DatabaseModified)
            LOGGER.debug("server database modified at %s", modified.last_modified.isoformat())
            on_modified(modified.last_modified)


__all__ = [
    "ServerConfig",
    "ServerConnection",
    "SyncOutcome",
    "SyncResult",
    "expect_response",
    "synchronize",
    "synchronize_in_background",
    "watch_modified",
]
