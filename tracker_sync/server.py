"""Threaded TCP sync server: one thread per connection, shared database state."""

from __future__ import annotations

import logging
import socket
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

from tracker_crypto import DecryptionError, EnvelopeFormatError, PayloadDecodeError
from tracker_database import (
    MIN_TIMESTAMP,
    Database,
    DatabaseParseError,
    SaveDatabaseError,
    read_file,
    save_to,
)

from .broadcast import ModifiedBroadcast, ModifiedEvent, Subscription
from .constants import BACKUP_FILENAME_FORMAT, BROADCAST_CAPACITY, RECV_CHUNK_SIZE
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
from .rwlock import ReadWriteLock

LOGGER = logging.getLogger(__name__)

Address = Tuple[str, int]
WATCH_POLL_SECONDS = 0.5


class SharedServerData:
    """State every connection handler works on.

    ``database_binary`` holds the exact bytes last persisted (or received),
    so downloads hand out byte-identical copies of the server file.
    ``last_modified`` is None until a database has been persisted once.
    """

    def __init__(
        self,
        database_filepath: Union[str, Path],
        password: str,
        database: Optional[Database] = None,
        database_binary: Optional[bytes] = None,
        last_modified: Optional[datetime] = None,
        broadcast_capacity: int = BROADCAST_CAPACITY,
    ) -> None:
        self.database_filepath = Path(database_filepath)
        self.password = password
        self.database = database if database is not None else Database()
        self.database_binary = database_binary
        self.last_modified = last_modified
        self.lock = ReadWriteLock()
        self.modified_broadcast = ModifiedBroadcast(broadcast_capacity)

    @classmethod
    def load(cls, database_filepath: Union[str, Path], password: str) -> "SharedServerData":
        """Load the database file; a missing file gives an empty, never persisted database.

        Raises :class:`DatabaseParseError` for a file that exists but is invalid.
        """
        path = Path(database_filepath)
        if not path.exists():
            LOGGER.info("no database at %s, starting with an empty one", path)
            return cls(path, password)
        data = read_file(path)
        try:
            database = Database.from_binary(data)
        except ValueError as exc:
            raise DatabaseParseError(path, str(exc)) from exc
        LOGGER.info(
            "loaded database from %s (%d projects, last modified %s)",
            path,
            len(database.projects),
            database.last_changed_time.isoformat(),
        )
        return cls(path, password, database, data, database.last_changed_time)

    def modified_date(self) -> datetime:
        with self.lock.read_locked():
            return self.last_modified or MIN_TIMESTAMP

    def snapshot(self) -> Tuple[bytes, datetime]:
        with self.lock.read_locked():
            binary = self.database_binary
            if binary is None:
                binary = self.database.to_binary()
            return binary, self.last_modified or MIN_TIMESTAMP

    def replace(
        self,
        database_binary: bytes,
        last_modified: datetime,
        sender: Optional[Address] = None,
    ) -> None:
        """Overwrite the database, persist it, then notify subscribers.

        The notification is published while the write lock is still held,
        so events reach subscribers in the order the updates were applied.
        Raises ``ValueError`` (and changes nothing) if the bytes are not a
        valid database.
        """
        database = Database.from_binary(database_binary)
        database.last_changed_time = last_modified
        with self.lock.write_locked():
            self.database = database
            self.database_binary = database_binary
            self.last_modified = last_modified
            self._persist(database_binary)
            self.modified_broadcast.publish(ModifiedEvent(last_modified, sender))

    def _persist(self, database_binary: bytes) -> None:
        try:
            save_to(self.database_filepath, database_binary)
            LOGGER.info("database saved to %s", self.database_filepath)
        except SaveDatabaseError as exc:
            backup_path = self.database_filepath.parent / datetime.now().strftime(BACKUP_FILENAME_FORMAT)
            LOGGER.error("%s, writing backup to %s", exc, backup_path)
            try:
                save_to(backup_path, database_binary)
            except SaveDatabaseError as backup_exc:
                LOGGER.error("backup failed as well: %s", backup_exc)


class Connection:
    """One accepted client socket; sends are serialized by a writer lock."""

    def __init__(self, sock: socket.socket, address: Address, password: str) -> None:
        self.socket = sock
        self.address = address
        self._password = password
        self._writer_lock = threading.Lock()
        self.alive = True

    def send(self, response: Response) -> None:
        data = seal(response, self._password, RESPONSE_CODEC)
        with self._writer_lock:
            if not self.alive:
                raise ConnectionError("connection closed")
            try:
                self.socket.sendall(data)
            except OSError as exc:
                self.alive = False
                raise ConnectionError("send failed") from exc

    def close(self) -> None:
        if not self.alive:
            return
        self.alive = False
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        finally:
            self.socket.close()


def handle_request(shared: SharedServerData, connection: Connection, request: Request) -> Optional[Response]:
    """Answer one request; returns None for requests without an immediate answer."""
    if isinstance(request, GetModifiedDate):
        return ModifiedDate(shared.modified_date())
    if isinstance(request, DownloadDatabase):
        binary, last_modified = shared.snapshot()
        return DatabaseData(binary, last_modified)
    if isinstance(request, UpdateDatabase):
        try:
            shared.replace(request.database_binary, request.last_modified, connection.address)
        except ValueError as exc:
            LOGGER.warning("rejected database from %s: %s", connection.address, exc)
            return InvalidDatabaseBinary()
        return DatabaseUpdated()
    raise ProtocolError(f"unhandled request: {request!r}")


def _watch_worker(connection: Connection, subscription: Subscription) -> None:
    try:
        while connection.alive:
            event = subscription.get(timeout=WATCH_POLL_SECONDS)
            if event is None or event.sender == connection.address:
                continue
            connection.send(DatabaseModified(event.last_modified))
    except ConnectionError:
        LOGGER.debug("watcher of %s stopped: connection closed", connection.address)
    finally:
        subscription.close()


def client_worker(shared: SharedServerData, connection: Connection) -> None:
    """Serve requests on ``connection`` until the peer disconnects."""
    framer = JsonLineFramer()
    watching = False
    try:
        while connection.alive:
            chunk = connection.socket.recv(RECV_CHUNK_SIZE)
            if not chunk:
                break
            try:
                frames = framer.feed(chunk)
            except ProtocolError as exc:
                LOGGER.warning("bad frame from %s: %s", connection.address, exc)
                break
            for frame in frames:
                try:
                    request = unseal(frame, shared.password, REQUEST_CODEC)
                except (DecryptionError, EnvelopeFormatError) as exc:
                    LOGGER.info("invalid password from %s: %s", connection.address, exc)
                    connection.send(InvalidPassword())
                    return
                except PayloadDecodeError as exc:
                    LOGGER.warning("unreadable request from %s: %s", connection.address, exc)
                    return
                LOGGER.debug("request from %s: %s", connection.address, request.kind)
                if isinstance(request, WatchModified):
                    if not watching:
                        watching = True
                        subscription = shared.modified_broadcast.subscribe()
                        threading.Thread(
                            target=_watch_worker, args=(connection, subscription), daemon=True
                        ).start()
                    continue
                response = handle_request(shared, connection, request)
                if response is not None:
                    connection.send(response)
    except (ConnectionError, OSError, ProtocolError) as exc:
        LOGGER.debug("connection %s ended: %s", connection.address, exc)
    finally:
        connection.close()
        LOGGER.info("connection closed: %s", connection.address)


class SyncServer:
    """Accept loop; each connection is served on its own daemon thread."""

    def __init__(self, shared: SharedServerData, host: str, port: int, *, backlog: int = 128) -> None:
        self.shared = shared
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self._sock.bind((host, port))
            self._sock.listen(backlog)
        except OSError:
            self._sock.close()
            raise
        self._sock.settimeout(WATCH_POLL_SECONDS)
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def server_address(self) -> Address:
        return self._sock.getsockname()[:2]

    def serve_forever(self) -> None:
        LOGGER.info("sync server listening on %s:%s", *self.server_address)
        try:
            while not self._stop_event.is_set():
                try:
                    conn, address = self._sock.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self._stop_event.is_set():
                        break
                    raise
                conn.settimeout(None)
                conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                LOGGER.info("connection from %s", address)
                connection = Connection(conn, address, self.shared.password)
                thread = threading.Thread(target=client_worker, args=(self.shared, connection), daemon=True)
                thread.start()
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
        finally:
            self._sock.close()

    def shutdown(self) -> None:
        self._stop_event.set()

    def __enter__(self) -> "SyncServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
        self._sock.close()


__all__ = [
    "Connection",
    "SharedServerData",
    "SyncServer",
    "client_worker",
    "handle_request",
]
