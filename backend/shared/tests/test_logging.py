import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest
import structlog

from records.models import SyncStatus
from shared.logging import REDACTED, _redact_secrets, _serialize_enums, bind_record_context, setup_logging


@pytest.fixture(autouse=True)
def _cleanup_root_logger():
    """Close and remove all handlers from the root logger after each test."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)


@pytest.fixture(autouse=True)
def _allow_file_logging():
    """Disable the _is_test guard so logging tests can create real file handlers."""
    with patch("shared.logging._is_test", return_value=False):
        yield


class TestSetupLogging:
    def test_configures_stdout_handler(self):
        setup_logging("client")
        root = logging.getLogger()

        assert root.level == logging.INFO
        assert len(root.handlers) == 1

        handler = root.handlers[0]
        assert isinstance(handler, logging.StreamHandler)
        assert isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)

    def test_configures_file_handler_in_log_dir(self, tmp_path):
        log_dir = tmp_path / "client"
        setup_logging("client", log_dir=log_dir)
        root = logging.getLogger()

        assert len(root.handlers) == 2
        file_handler = root.handlers[1]
        assert isinstance(file_handler, logging.FileHandler)
        assert Path(file_handler.baseFilename).parent == log_dir

    def test_log_file_has_datetime_in_name(self, tmp_path):
        fixed_time = datetime(2025, 3, 15, 10, 30, 45, tzinfo=UTC)
        with patch("shared.logging.datetime") as mock_dt:
            mock_dt.now.return_value = fixed_time
            log_path = setup_logging("remote", log_dir=tmp_path / "remote")

        assert log_path is not None
        assert log_path.name == "remote-2025-03-15_10-30-45.log"

    def test_returns_none_without_log_dir(self):
        assert setup_logging("client") is None

    def test_no_file_handler_under_pytest(self, tmp_path):
        with patch("shared.logging._is_test", return_value=True):
            assert setup_logging("client", log_dir=tmp_path / "client") is None

        assert not (tmp_path / "client").exists()

    def test_writes_to_file_in_nested_directory(self, tmp_path):
        log_dir = tmp_path / "nested" / "dir"
        log_path = setup_logging("client", log_dir=str(log_dir))

        structlog.get_logger("test.writes_to_file").info("hello from test")

        assert log_path is not None
        assert log_dir.exists()
        assert "hello from test" in log_path.read_text()

    def test_clears_existing_handlers_on_repeated_calls(self):
        setup_logging("client")
        setup_logging("client")

        assert len(logging.getLogger().handlers) == 1

    def test_quiets_http_client_loggers(self):
        setup_logging("client", level=logging.DEBUG)

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_log_level_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        setup_logging("client")

        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_log_level_raises(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "bogus")
        with pytest.raises(ValueError, match="Invalid LOG_LEVEL"):
            setup_logging("client")

    def test_json_mode_includes_record_context(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        log_path = setup_logging("client", log_dir=tmp_path / "client")

        bind_record_context(record_id="game-1")
        structlog.get_logger("test.json").info("sync started", sync_status=SyncStatus.SYNCING)
        structlog.contextvars.clear_contextvars()

        assert log_path is not None
        parsed = json.loads(log_path.read_text().strip().splitlines()[0])
        assert parsed["event"] == "sync started"
        assert parsed["record_id"] == "game-1"
        assert parsed["sync_status"] == "syncing"
        assert parsed["component"] == "client"

    def test_invalid_log_format_raises(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "invalid_value")
        with pytest.raises(ValueError, match="Invalid LOG_FORMAT"):
            setup_logging("client")


class TestBindRecordContext:
    def test_binds_values(self):
        bind_record_context(record_id="game-1", remote_id="r-1")

        assert structlog.contextvars.get_contextvars() == {"record_id": "game-1", "remote_id": "r-1"}

    def test_none_unbinds_key(self):
        bind_record_context(record_id="game-1", remote_id="r-1")

        bind_record_context(remote_id=None)

        assert structlog.contextvars.get_contextvars() == {"record_id": "game-1"}


class TestSerializeEnums:
    def test_replaces_enum_with_value(self):
        event_dict = {"status": SyncStatus.SYNCED, "msg": "hello"}
        result = _serialize_enums(None, "", event_dict)
        assert result == {"status": "synced", "msg": "hello"}

    def test_replaces_enum_inside_dict_value(self):
        event_dict = {"data": {"status": SyncStatus.CONFLICT, "count": 3}}
        result = _serialize_enums(None, "", event_dict)
        assert result["data"] == {"status": "conflict", "count": 3}

    def test_leaves_non_enum_values_unchanged(self):
        event_dict = {"count": 42, "name": "test"}
        assert _serialize_enums(None, "", event_dict) == {"count": 42, "name": "test"}

    def test_replaces_enums_inside_lists(self):
        event_dict = {"statuses": [SyncStatus.UNSYNCED, SyncStatus.SYNCING]}
        assert _serialize_enums(None, "", event_dict) == {"statuses": ["unsynced", "syncing"]}


class TestRedactSecrets:
    def test_masks_token_keys(self):
        event_dict = {"event": "remote configured", "api_token": "s3cret", "Authorization": "Bearer s3cret"}

        result = _redact_secrets(None, "", event_dict)

        assert result == {"event": "remote configured", "api_token": REDACTED, "Authorization": REDACTED}

    def test_keeps_missing_token_visible(self):
        assert _redact_secrets(None, "", {"api_token": None}) == {"api_token": None}

    def test_token_never_reaches_log_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        log_path = setup_logging("remote", log_dir=tmp_path)

        structlog.get_logger("test.redact").info("auth configured", api_token="s3cret")

        assert log_path is not None
        assert "s3cret" not in log_path.read_text()
