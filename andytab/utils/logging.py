"""Logging setup for the CLI and long-running hosts.

Package modules log through a ``LoggerAdapter`` that tags every record with a
``log_category`` (``webdav``, ``storage``, ``sync``). ``general.log_overrides``
maps a category to its own threshold, so e.g. ``{"webdav": "DEBUG"}`` shows
request details without turning on debug output everywhere else.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Mapping

from rich.logging import RichHandler

from andytab.core.config import AppConfig

_VALID_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _to_levelno(value: str | int) -> int:
    if isinstance(value, int):
        return value
    name = str(value).upper()
    if name not in _VALID_LEVELS:
        raise ValueError(f"Unsupported log level: {value}")
    return logging.getLevelName(name)


class CategoryLevelFilter(logging.Filter):
    """Drop records below the threshold of their category.

    Records without a category, or with one that has no override, are held to
    the default threshold.
    """

    def __init__(self, default_level: str | int, category_levels: Mapping[str, str] | None = None):
        super().__init__()
        self.default_levelno = _to_levelno(default_level)
        self.category_levels = {
            category: _to_levelno(level) for category, level in (category_levels or {}).items()
        }

    @property
    def lowest_levelno(self) -> int:
        return min([self.default_levelno, *self.category_levels.values()])

    def filter(self, record: logging.LogRecord) -> bool:
        category = getattr(record, "log_category", None)
        threshold = self.category_levels.get(category, self.default_levelno)
        return record.levelno >= threshold


def _category_filter() -> CategoryLevelFilter | None:
    for handler in logging.getLogger().handlers:
        for filter_ in handler.filters:
            if isinstance(filter_, CategoryLevelFilter):
                return filter_
    return None


def setup_logging(config: AppConfig, *, level_name: str | None = None) -> Path:
    """Install console and rotating file handlers on the root logger.

    Returns:
        Path of the log file
    """
    category_filter = CategoryLevelFilter(
        level_name or config.general.log_level,
        config.general.log_overrides,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    # Root must let the most verbose category through; the filter does the rest
    root.setLevel(category_filter.lowest_levelno)

    console = RichHandler(rich_tracebacks=True, show_time=False)
    console.setFormatter(logging.Formatter("%(message)s"))

    log_dir = config.general.data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / config.general.log_file_name
    log_file = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    log_file.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    for handler in (console, log_file):
        handler.addFilter(category_filter)
        root.addHandler(handler)

    logging.captureWarnings(True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(category_filter.default_levelno, logging.WARNING))

    return log_path


def set_logging_level(level_name: str) -> None:
    """Change the default threshold at runtime; category overrides stay."""
    levelno = _to_levelno(level_name)
    category_filter = _category_filter()
    root = logging.getLogger()
    if category_filter is None:
        root.setLevel(levelno)
        return
    category_filter.default_levelno = levelno
    root.setLevel(category_filter.lowest_levelno)


def get_current_log_level() -> str:
    category_filter = _category_filter()
    levelno = category_filter.default_levelno if category_filter else logging.getLogger().level
    return logging.getLevelName(levelno)
