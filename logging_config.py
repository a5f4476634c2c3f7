from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Third-party loggers that are chatty at INFO (one line per request / job run).
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "apscheduler.scheduler")


def setup_logging(level_name: str | None = None, logger_name: str | None = None) -> logging.Logger:
    """Attach stream + rotating-file handlers to *logger_name* (root by default).

    Module loggers (``core.order_monitor``, ``database.circuit_breaker`` …)
    propagate to the root logger, so configuring the root once covers the
    whole monitor process.
    """
    level_name = str(level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = os.getenv("LOG_FILE", "logs/order_monitor.log")

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    if logger.handlers:
        return logger

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=5)
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)
    if logger_name is not None:
        logger.propagate = False

    return logger


def get_monitor_logger() -> logging.Logger:
    return logging.getLogger("order.monitor")
