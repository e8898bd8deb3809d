"""Command line entry point of the project tracker sync server."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from tracker_database import DatabaseOpenError, DatabaseParseError

from .constants import (
    DATABASE_FILENAME,
    DEFAULT_BIND_HOST,
    DEFAULT_PASSWORD,
    DEFAULT_PORT,
    LOG_FILENAME,
    PASSWORD_ENV_VAR,
    PASSWORD_FILENAME,
)
from .server import SharedServerData, SyncServer

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SetupError(Exception):
    """A fatal problem while preparing the server."""


@dataclass
class ServerSettings:
    data_directory: Path
    database_filepath: Path
    password_filepath: Path
    host: str = DEFAULT_BIND_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    @property
    def log_filepath(self) -> Path:
        return self.data_directory / LOG_FILENAME


def parse_args(argv: Optional[List[str]] = None) -> ServerSettings:
    parser = argparse.ArgumentParser(
        prog="project-tracker-server",
        description="Synchronization server for the project tracker database",
    )
    parser.add_argument("data_directory", type=Path, help="Directory holding the database, password and log")
    parser.add_argument(
        "--database-filepath",
        type=Path,
        default=None,
        help=f"Database file (default: <data_directory>/{DATABASE_FILENAME})",
    )
    parser.add_argument(
        "--password-file",
        type=Path,
        default=None,
        help=f"Password file (default: <data_directory>/{PASSWORD_FILENAME})",
    )
    parser.add_argument("--host", default=DEFAULT_BIND_HOST, help=f"Bind host (default: {DEFAULT_BIND_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG/INFO/...)")
    args = parser.parse_args(argv)

    data_directory: Path = args.data_directory
    return ServerSettings(
        data_directory=data_directory,
        database_filepath=args.database_filepath or data_directory / DATABASE_FILENAME,
        password_filepath=args.password_file or data_directory / PASSWORD_FILENAME,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


def configure_logging(settings: ServerSettings) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    try:
        handlers.append(logging.FileHandler(settings.log_filepath, encoding="utf-8"))
    except OSError as exc:
        print(f"Failed to open log file {settings.log_filepath}: {exc}", file=sys.stderr)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def resolve_password(settings: ServerSettings) -> str:
    """Return the server password.

    The environment variable wins; otherwise the password file is read,
    and created with the default password if it does not exist yet.
    """
    from_env = os.environ.get(PASSWORD_ENV_VAR)
    if from_env:
        return from_env

    path = settings.password_filepath
    if not path.exists():
        LOGGER.warning(
            "no password file at %s, creating it with the default password; change it!", path
        )
        try:
            path.write_text(DEFAULT_PASSWORD, encoding="utf-8")
        except OSError as exc:
            raise SetupError(f"Failed to create password file {path}: {exc}") from exc
        return DEFAULT_PASSWORD
    try:
        return path.read_text(encoding="utf-8").rstrip("\r\n")
    except OSError as exc:
        raise SetupError(f"Failed to read password file {path}: {exc}") from exc


def prepare_server(settings: ServerSettings) -> SyncServer:
    if not settings.data_directory.is_dir():
        raise SetupError(f"Data directory does not exist: {settings.data_directory}")
    password = resolve_password(settings)
    try:
        shared = SharedServerData.load(settings.database_filepath, password)
    except (DatabaseOpenError, DatabaseParseError) as exc:
        raise SetupError(f"Failed to load database: {exc}") from exc
    try:
        return SyncServer(shared, settings.host, settings.port)
    except OSError as exc:
        raise SetupError(f"Failed to bind {settings.host}:{settings.port}: {exc}") from exc


def main(argv: Optional[List[str]] = None) -> int:
    settings = parse_args(argv)
    if not settings.data_directory.is_dir():
        print(f"Data directory does not exist: {settings.data_directory}", file=sys.stderr)
        return 1
    configure_logging(settings)

    try:
        server = prepare_server(settings)
    except SetupError as exc:
        LOGGER.error("%s", exc)
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("interrupted, shutting down")
    finally:
        server.shutdown()
    return 0


__all__ = [
    "ServerSettings",
    "SetupError",
    "configure_logging",
    "main",
    "parse_args",
    "prepare_server",
    "resolve_password",
]
