from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any


def _parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default

    mapping: dict[str, int] = {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARN": logging.WARNING,
        "WARNING": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
        "NOTSET": logging.NOTSET,
    }
    if text in mapping:
        return mapping[text]

    try:
        return int(text)
    except ValueError:
        return default


def configure_logging(
    level: str | int | None = "INFO",
    *,
    log_file: str | None = None,
    log_format: str | None = None,
    console: bool = True,
) -> None:
    """Configure Python logging for the gateway.

    Safe to call more than once; previously installed root handlers are
    replaced.
    """

    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())

    if log_file and log_file.strip():
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    fmt = log_format.strip() if log_format and log_format.strip() else None
    formatter = logging.Formatter(fmt=fmt or "%(asctime)s %(levelname)s %(name)s: %(message)s")
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(_parse_level(level, logging.INFO))

    # Per-request access lines drown out presence and call logs.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    logging.captureWarnings(True)
