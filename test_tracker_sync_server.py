"""End to end tests of the sync server and client over localhost TCP."""

import socket
import threading
import time
from datetime import datetime, timezone

import pytest

from conftest import TEST_PASSWORD, build_large_database, build_sample_database
from tracker_database import MIN_TIMESTAMP, Database, DatabaseParseError, SaveDatabaseError
from tracker_sync import main as server_main
from tracker_sync import server as server_module
from tracker_sync.client import (
    ServerConfig,
    ServerConnection,
    SyncOutcome,
    synchronize,
    synchronize_in_background,
    watch_modified,
)
from tracker_sync.errors import (
    ConnectionFailedError,
    InvalidDatabaseBinaryError,
    InvalidPasswordError,
)
from tracker_sync.protocol import (
    REQUEST_CODEC,
    RESPONSE_CODEC,
    DatabaseData,
    DatabaseUpdated,
    DownloadDatabase,
    GetModifiedDate,
    ModifiedDate,
    UpdateDatabase,
    encode_message,
    parse_json_line,
    seal,
)
from tracker_sync.server import SharedServerData

TS = datetime(2026, 5, 4, 3, 2, 1, tzinfo=timezone.utc)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _corrupted_frame(message, codec):
    """A sealed frame whose nonce is no longer valid base64."""
    frame = parse_json_line(seal(message, TEST_PASSWORD, codec).strip())
    frame["nonce_b64"] = "!" + frame["nonce_b64"]
    return encode_message(frame)


class TestSynchronize:
    """Last-writer-wins reconciliation."""

    def test_empty_server_reports_minimum_timestamp(self, sync_server):
        _server, config = sync_server
        with ServerConnection(config) as connection:
            assert connection.request(GetModifiedDate(), ModifiedDate).last_modified == MIN_TIMESTAMP

    def test_client_newer_uploads(self, sync_server, tmp_path):
        server, config = sync_server
        database = build_sample_database()
        client_file = tmp_path / "client.project_tracker"

        result = synchronize(config, database, client_file)

        assert result.outcome is SyncOutcome.UPLOADED
        assert result.database is database
        assert result.last_modified == database.last_changed_time
        assert not database.has_unsaved_changes()
        server_file = server.shared.database_filepath
        assert server_file.read_bytes() == client_file.read_bytes()
        assert server.shared.last_modified == database.last_changed_time
        assert server.shared.database.has_same_content_as(database)

    def test_server_newer_downloads(self, sync_server, tmp_path):
        server, config = sync_server
        uploaded = build_sample_database()
        synchronize(config, uploaded)

        stale = Database()
        client_file = tmp_path / "client.project_tracker"
        result = synchronize(config, stale, client_file)

        assert result.outcome is SyncOutcome.DOWNLOADED
        assert result.database.has_same_content_as(uploaded)
        assert result.database.last_changed_time == uploaded.last_changed_time
        assert client_file.read_bytes() == server.shared.database_filepath.read_bytes()
        assert not result.database.has_unsaved_changes()

    def test_equal_timestamps_upload(self, sync_server):
        _server, config = sync_server
        database = build_sample_database()
        synchronize(config, database)
        assert synchronize(config, database).outcome is SyncOutcome.UPLOADED

    def test_last_writer_wins_between_two_clients(self, sync_server):
        _server, config = sync_server
        first = build_sample_database()
        synchronize(config, first)

        second = synchronize(config, Database()).database
        second.rename_project("p-work", "Renamed by second")
        assert synchronize(config, second).outcome is SyncOutcome.UPLOADED

        result = synchronize(config, first)
        assert result.outcome is SyncOutcome.DOWNLOADED
        assert result.database.get_project("p-work").name == "Renamed by second"

    def test_several_requests_on_one_connection(self, sync_server):
        _server, config = sync_server
        database = build_sample_database()
        binary = database.to_binary()
        with ServerConnection(config) as connection:
            connection.request(UpdateDatabase(binary, TS), DatabaseUpdated)
            assert connection.request(GetModifiedDate(), ModifiedDate).last_modified == TS
            data = connection.request(DownloadDatabase(), DatabaseData)
        assert data.database_binary == binary
        assert data.last_modified == TS

    def test_background_sync(self, sync_server):
        _server, config = sync_server
        future = synchronize_in_background(config, build_sample_database())
        assert future.result(timeout=30).outcome is SyncOutcome.UPLOADED

    def test_scenario_download_then_upload(self, sync_server, tmp_path):
        server, config = sync_server
        server_file = server.shared.database_filepath
        assert synchronize(config, build_large_database()).outcome is SyncOutcome.UPLOADED

        client_file = tmp_path / "client.project_tracker"
        downloaded = synchronize(config, Database(), client_file)
        assert downloaded.outcome is SyncOutcome.DOWNLOADED
        assert client_file.read_bytes() == server_file.read_bytes()
        assert sum(project.total_tasks() for project in downloaded.database.projects.values()) == 1000

        database = downloaded.database
        database.create_project("project-new", "Added after download")
        uploaded = synchronize(config, database, client_file)
        assert uploaded.outcome is SyncOutcome.UPLOADED
        assert server_file.read_bytes() == client_file.read_bytes()
        assert server.shared.database.get_project("project-new") is not None


class TestFailures:
    """Errors surface as typed client exceptions."""

    def test_wrong_password(self, sync_server):
        _server, config = sync_server
        bad_config = ServerConfig(config.hostname, config.port, "not-the-password", config.timeout)
        with pytest.raises(InvalidPasswordError):
            synchronize(bad_config, Database())

    def test_invalid_database_binary_is_rejected(self, sync_server):
        server, config = sync_server
        with ServerConnection(config) as connection:
            with pytest.raises(InvalidDatabaseBinaryError):
                connection.request(UpdateDatabase(b"not a database", TS), DatabaseUpdated)
            assert connection.request(GetModifiedDate(), ModifiedDate).last_modified == MIN_TIMESTAMP
        assert not server.shared.database_filepath.exists()

    def test_connection_refused(self, fast_kdf):
        with socket.socket() as placeholder:
            placeholder.bind(("127.0.0.1", 0))
            port = placeholder.getsockname()[1]
        config = ServerConfig("127.0.0.1", port, TEST_PASSWORD, timeout=2.0)
        with pytest.raises(ConnectionFailedError, match="Failed to connect"):
            synchronize(config, Database())

    def test_silent_server_times_out_as_connection_failure(self, fast_kdf):
        with socket.socket() as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]
            config = ServerConfig("127.0.0.1", port, TEST_PASSWORD, timeout=0.5)
            with pytest.raises(ConnectionFailedError, match="Timed out"):
                synchronize(config, Database())

    def test_server_answers_malformed_envelope_with_invalid_password(self, sync_server):
        _server, config = sync_server
        with ServerConnection(config) as connection:
            connection._sock.sendall(_corrupted_frame(GetModifiedDate(), REQUEST_CODEC))
            with pytest.raises(InvalidPasswordError, match="rejected the password"):
                connection.receive()

    def test_client_treats_malformed_envelope_as_invalid_password(self, fast_kdf):
        config = ServerConfig("127.0.0.1", 0, TEST_PASSWORD, timeout=2.0)
        connection = ServerConnection(config)
        client_side, server_side = socket.socketpair()
        connection._sock = client_side
        with client_side, server_side:
            server_side.sendall(_corrupted_frame(ModifiedDate(TS), RESPONSE_CODEC))
            with pytest.raises(InvalidPasswordError, match="could not be decrypted"):
                connection.receive()


class TestWatch:
    """Change notifications for other connections."""

    def test_watcher_is_notified_of_uploads(self, sync_server):
        server, config = sync_server
        received = []
        notified = threading.Event()
        stop = threading.Event()

        def on_modified(last_modified):
            received.append(last_modified)
            notified.set()

        watcher = threading.Thread(
            target=watch_modified, args=(config, on_modified, stop, 0.1), daemon=True
        )
        watcher.start()
        assert _wait_for(lambda: server.shared.modified_broadcast.subscriber_count() == 1)

        database = build_sample_database()
        synchronize(config, database)

        assert notified.wait(timeout=10)
        assert received == [database.last_changed_time]
        stop.set()
        watcher.join(timeout=5)
        assert not watcher.is_alive()


class TestSharedServerData:
    """Server state outside the network loop."""

    def test_load_rejects_invalid_file(self, tmp_path):
        path = tmp_path / "database.project_tracker"
        path.write_bytes(b"garbage")
        with pytest.raises(DatabaseParseError):
            SharedServerData.load(path, "pw")

    def test_load_existing_file_keeps_bytes(self, tmp_path):
        path = tmp_path / "database.project_tracker"
        database = build_sample_database()
        database.save(path)
        shared = SharedServerData.load(path, "pw")
        assert shared.snapshot() == (path.read_bytes(), database.last_changed_time)
        assert shared.modified_date() == database.last_changed_time

    def test_failed_save_writes_backup_and_still_publishes(self, tmp_path, monkeypatch):
        shared = SharedServerData(tmp_path / "database.project_tracker", "pw")
        subscription = shared.modified_broadcast.subscribe()
        real_save_to = server_module.save_to

        def failing_save_to(filepath, data):
            if filepath == shared.database_filepath:
                raise SaveDatabaseError(filepath, "Failed to save database: disk full")
            real_save_to(filepath, data)

        monkeypatch.setattr(server_module, "save_to", failing_save_to)
        binary = build_sample_database().to_binary()
        shared.replace(binary, TS)

        backups = list(tmp_path.glob("tmp_backup_database_*.project_tracker"))
        assert len(backups) == 1
        assert backups[0].read_bytes() == binary
        assert subscription.get(timeout=1).last_modified == TS
        assert shared.last_modified == TS

    def test_replace_publishes_while_holding_the_write_lock(self, tmp_path, monkeypatch):
        shared = SharedServerData(tmp_path / "database.project_tracker", "pw")
        writer_held = []
        real_publish = shared.modified_broadcast.publish

        def recording_publish(event):
            writer_held.append(shared.lock._writer)
            return real_publish(event)

        monkeypatch.setattr(shared.modified_broadcast, "publish", recording_publish)
        shared.replace(build_sample_database().to_binary(), TS)
        assert writer_held == [True]
        assert not shared.lock._writer

    def test_replace_with_invalid_bytes_changes_nothing(self, tmp_path):
        shared = SharedServerData(tmp_path / "database.project_tracker", "pw")
        with pytest.raises(ValueError):
            shared.replace(b"nope", TS)
        assert shared.last_modified is None
        assert shared.modified_date() == MIN_TIMESTAMP


class TestMain:
    """Server bootstrap and configuration."""

    def test_parse_args_defaults(self, tmp_path):
        settings = server_main.parse_args([str(tmp_path)])
        assert settings.port == 8080
        assert settings.host == "0.0.0.0"
        assert settings.database_filepath == tmp_path / "database.project_tracker"
        assert settings.password_filepath == tmp_path / "password.txt"
        assert settings.log_filepath == tmp_path / "project_tracker_server.log"

    def test_password_file_created_with_default(self, tmp_path, monkeypatch, caplog):
        monkeypatch.delenv("PROJECT_TRACKER_PASSWORD", raising=False)
        settings = server_main.parse_args([str(tmp_path)])
        assert server_main.resolve_password(settings) == "1234"
        assert (tmp_path / "password.txt").read_text(encoding="utf-8") == "1234"
        assert "creating it with the default password" in caplog.text

    def test_password_file_trailing_newline_is_stripped(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PROJECT_TRACKER_PASSWORD", raising=False)
        (tmp_path / "password.txt").write_text("s3cret\r\n", encoding="utf-8")
        settings = server_main.parse_args([str(tmp_path)])
        assert server_main.resolve_password(settings) == "s3cret"

    def test_password_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROJECT_TRACKER_PASSWORD", "from-env")
        settings = server_main.parse_args([str(tmp_path)])
        assert server_main.resolve_password(settings) == "from-env"
        assert not (tmp_path / "password.txt").exists()

    def test_missing_data_directory_exits_with_error(self, tmp_path):
        assert server_main.main([str(tmp_path / "missing")]) == 1

    def test_unparsable_database_is_fatal(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROJECT_TRACKER_PASSWORD", "pw")
        (tmp_path / "database.project_tracker").write_bytes(b"garbage")
        settings = server_main.parse_args([str(tmp_path), "--port", "0"])
        with pytest.raises(server_main.SetupError, match="Failed to load database"):
            server_main.prepare_server(settings)

    def test_prepare_server_binds(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROJECT_TRACKER_PASSWORD", "pw")
        settings = server_main.parse_args([str(tmp_path), "--host", "127.0.0.1", "--port", "0"])
        server = server_main.prepare_server(settings)
        with server:
            assert server.server_address[0] == "127.0.0.1"
            assert server.shared.password == "pw"
            assert server.shared.last_modified is None
