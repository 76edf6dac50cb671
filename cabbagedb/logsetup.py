"""Logging setup: console output in text form and a JSON log file per node."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime

LOGGER_NAME = "cabbagedb"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}

_LEVEL_NAMES = {"WARNING": "warn", "CRITICAL": "fatal"}


def logger_level(name: str) -> int:
    """Map a configured level name to a logging level; unknown names give INFO."""
    return _LEVELS.get(name, logging.INFO)


class _IsoFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        moment = datetime.fromtimestamp(record.created).astimezone()
        return moment.isoformat(timespec="milliseconds")


class _JsonFormatter(_IsoFormatter):
    def format(self, record):
        payload = {
            "level": _LEVEL_NAMES.get(record.levelname, record.levelname.lower()),
            "ts": self.formatTime(record),
            "caller": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def init_logger(node_id, level: str, log_dir="logs") -> logging.Logger:
    """Configure the package logger to write to stdout and to server_<id>.log."""
    os.makedirs(log_dir, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(
        _IsoFormatter("%(asctime)s\t%(levelname)s\t%(filename)s:%(lineno)d\t%(message)s")
    )
    file_handler = logging.FileHandler(
        os.path.join(log_dir, f"server_{node_id}.log"), mode="a", encoding="utf-8"
    )
    file_handler.setFormatter(_JsonFormatter())

    logger.addHandler(console)
    logger.addHandler(file_handler)
    logger.setLevel(logger_level(level))
    logger.propagate = False
    return logger