from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path("logs/sipscope.log")
DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "QUERY",
    "DISCOVERY",
    "SIP",
    "QOS",
    "COLLECTOR",
    "EXPORT",
    "CONFIG",
    "ERRORS",
}
NOISY_LOGGERS = ("urllib3", "requests", "scapy", "scapy.runtime")

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")
_category_var: contextvars.ContextVar[str] = contextvars.ContextVar("category", default=DEFAULT_CATEGORY)


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_category() -> str:
    return _category_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[None]:
    token = _correlation_id_var.set(correlation_id or short_uuid())
    try:
        yield
    finally:
        _correlation_id_var.reset(token)


@contextlib.contextmanager
def category_context(category: str) -> Iterator[None]:
    token = _category_var.set(category if category in CATEGORIES else DEFAULT_CATEGORY)
    try:
        yield
    finally:
        _category_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = get_category()
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _level_from_env(name: str, default: str) -> int:
    level_name = os.environ.get(name, default).upper()
    return getattr(logging, level_name, getattr(logging, default))


def setup_logging(log_file: Optional[Path] = None, level_name: Optional[str] = None) -> None:
    """
    Central logging setup. An explicit `level_name` overrides SIPSCOPE_LOG_LEVEL.

    Format:
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s
    """
    if level_name:
        level = getattr(logging, level_name.upper(), logging.INFO)
    else:
        level = _level_from_env("SIPSCOPE_LOG_LEVEL", "INFO")
    external_level = _level_from_env("SIPSCOPE_EXTERNAL_LIB_LOG_LEVEL", "WARNING")
    root_logger = logging.getLogger()

    # Installed once per process; later calls only refresh levels.
    if getattr(root_logger, "_sipscope_logging_installed", False):
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return

    target = log_file or LOG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)

    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    formatter = logging.Formatter(fmt=fmt)
    enricher = ContextEnricherFilter()

    # Console goes to stderr so JSON output on stdout stays clean.
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)

    file_handler = RotatingFileHandler(
        target,
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(enricher)

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._sipscope_logging_installed = True  # type: ignore[attr-defined]
