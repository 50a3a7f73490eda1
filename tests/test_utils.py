"""Tests for logging, credential and database helpers."""

import logging
import logging.handlers
from unittest.mock import patch

import keyring.errors
import pytest

from andytab.core import storage, sync
from andytab.core.config import AppConfig
from andytab.sources import webdav
from andytab.utils.credentials import CredentialStore
from andytab.utils.db import KeyValueDB
from andytab.utils.logging import (
    CategoryLevelFilter,
    get_current_log_level,
    set_logging_level,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(level: int, category: str | None = None) -> logging.LogRecord:
    record = logging.LogRecord("andytab", level, __file__, 1, "msg", None, None)
    if category is not None:
        record.log_category = category
    return record


def flush_root_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


class TestLogging:
    def test_setup_logging_installs_handlers(self, tmp_path, restore_root_logger):
        config = AppConfig(general={"data_dir": str(tmp_path), "log_level": "WARNING"})

        log_path = setup_logging(config)

        root = logging.getLogger()
        assert log_path == tmp_path.resolve() / "logs" / "andytab.log"
        assert root.level == logging.WARNING
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in root.handlers)
        assert get_current_log_level() == "WARNING"

    def test_set_logging_level_keeps_file_handler(self, tmp_path, restore_root_logger):
        log_path = setup_logging(AppConfig(general={"data_dir": str(tmp_path)}))

        set_logging_level("debug")
        logging.getLogger("andytab.other").debug("now visible")
        flush_root_handlers()

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in root.handlers)
        assert get_current_log_level() == "DEBUG"
        assert "now visible" in log_path.read_text(encoding="utf-8")

    def test_category_override_raises_verbosity(self, tmp_path, restore_root_logger):
        config = AppConfig(
            general={
                "data_dir": str(tmp_path),
                "log_level": "WARNING",
                "log_overrides": {"webdav": "DEBUG"},
            }
        )
        log_path = setup_logging(config)

        webdav.logger.debug("webdav request detail")
        storage.logger.debug("storage detail")
        logging.getLogger("andytab.other").info("uncategorized detail")
        flush_root_handlers()

        contents = log_path.read_text(encoding="utf-8")
        assert "webdav request detail" in contents
        assert "storage detail" not in contents
        assert "uncategorized detail" not in contents

    def test_category_override_lowers_verbosity(self, tmp_path, restore_root_logger):
        config = AppConfig(
            general={
                "data_dir": str(tmp_path),
                "log_level": "INFO",
                "log_overrides": {"sync": "ERROR"},
            }
        )
        log_path = setup_logging(config)

        sync.logger.warning("sync warning")
        storage.logger.info("storage info")
        flush_root_handlers()

        contents = log_path.read_text(encoding="utf-8")
        assert "sync warning" not in contents
        assert "storage info" in contents

    def test_filter_thresholds(self):
        category_filter = CategoryLevelFilter("INFO", {"webdav": "debug", "sync": "ERROR"})

        assert category_filter.lowest_levelno == logging.DEBUG
        assert category_filter.filter(make_record(logging.DEBUG, "webdav"))
        assert not category_filter.filter(make_record(logging.WARNING, "sync"))
        assert not category_filter.filter(make_record(logging.DEBUG, "storage"))
        assert category_filter.filter(make_record(logging.INFO))

    def test_rejects_unknown_level(self):
        with pytest.raises(ValueError):
            set_logging_level("LOUD")

        with pytest.raises(ValueError):
            CategoryLevelFilter("INFO", {"webdav": "CHATTY"})


class TestCredentialStore:
    def test_round_trip(self):
        vault = {}
        with (
            patch("keyring.set_password", side_effect=lambda s, k, p: vault.__setitem__((s, k), p)),
            patch("keyring.get_password", side_effect=lambda s, k: vault.get((s, k))),
        ):
            store = CredentialStore()
            assert store.get_webdav_password("alice") is None

            store.set_webdav_password("alice", "secret")

            assert vault == {("AndyTab", "webdav:alice"): "secret"}
            assert store.get_webdav_password("alice") == "secret"

    def test_delete_missing_password(self):
        with patch("keyring.delete_password", side_effect=keyring.errors.PasswordDeleteError("missing")):
            assert CredentialStore().delete_webdav_password("alice") is False

    def test_get_swallows_backend_errors(self):
        with patch("keyring.get_password", side_effect=keyring.errors.KeyringError("locked")):
            assert CredentialStore().get_webdav_password("alice") is None


class TestKeyValueDB:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, tmp_path):
        db = KeyValueDB(tmp_path / "nested" / "store.db")
        await db.initialize()

        await db.set("a", '"one"')
        await db.set("a", '"two"')
        await db.set("b", "[]")

        assert await db.get("a") == '"two"'
        assert await db.get("b") == "[]"
        assert await db.get("missing") is None
