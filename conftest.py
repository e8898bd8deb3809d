"""Shared pytest fixtures: cheap KDF, sample documents and a live sync server."""

import threading

import pytest

import tracker_crypto
from task_model import TimeSpend
from tracker_database import Database
from tracker_sync.client import ServerConfig
from tracker_sync.server import SharedServerData, SyncServer

TEST_PASSWORD = "test-password"


@pytest.fixture
def fast_kdf(monkeypatch):
    """Shrink Argon2 cost so network tests do not spend seconds hashing."""
    monkeypatch.setitem(tracker_crypto.KDF_PARAMS, "time_cost", 1)
    monkeypatch.setitem(tracker_crypto.KDF_PARAMS, "memory_cost", 64)
    monkeypatch.setitem(tracker_crypto.KDF_PARAMS, "parallelism", 1)


def build_sample_database() -> Database:
    database = Database()
    database.create_project("p-work", "Work", "#ff0000")
    database.create_project("p-home", "Home", "#00ff00")
    database.create_task_tag("p-work", "t-urgent", "urgent", "#ff8800")
    database.create_task("p-work", "task-1", "Write report", description="quarterly", tags={"t-urgent"})
    database.create_task("p-work", "task-2", "Review code", needed_time_minutes=30)
    database.create_task(
        "p-home", "task-3", "Water plants", time_spend=TimeSpend(125.0)
    )
    database.set_task_done("p-work", "task-2")
    return database


def build_large_database(projects: int = 10, tasks: int = 100) -> Database:
    """``projects`` projects of ``tasks`` tasks each; every third task is done."""
    database = Database()
    for p in range(projects):
        project_id = f"project-{p}"
        database.create_project(project_id, f"Project {p}")
        for t in range(tasks):
            database.create_task(project_id, f"{project_id}-task-{t}", f"Task {t}", needed_time_minutes=t)
            if t % 3 == 0:
                database.set_task_done(project_id, f"{project_id}-task-{t}")
    return database


@pytest.fixture
def sample_database():
    return build_sample_database()


@pytest.fixture
def sync_server(tmp_path, fast_kdf):
    """A server on an ephemeral localhost port; yields (server, config)."""
    shared = SharedServerData.load(tmp_path / "server" / "database.project_tracker", TEST_PASSWORD)
    shared.database_filepath.parent.mkdir()
    server = SyncServer(shared, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    config = ServerConfig(hostname=host, port=port, password=TEST_PASSWORD, timeout=10.0)

    yield server, config

    server.shutdown()
    thread.join(timeout=5)
