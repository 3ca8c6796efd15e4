"""Logging setup for protech.

Two logs are written under ``<home>/logs``:

- ``local-YYYY-MM-DD.log``: the ``protech`` logger tree
- ``sync-events-YYYY-MM-DD.log``: one line per sync or migration event, for
  quick auditing of what was pushed and pulled
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from protech.config import get_protech_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    log_dir = get_protech_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_protech_logging(shop_id: str, level: str = "INFO") -> logging.Logger:
    """Configure the ``protech`` logger with a dated file handler.

    Calling this more than once does not add duplicate handlers. DEBUG also
    logs to the console. An unknown level falls back to INFO.
    """
    logger = logging.getLogger("protech")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir() / f"local-{_today()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved == logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    logger.debug(f"Logging configured for shop {shop_id}")
    return logger


def log_sync_event(event_type: str, details: str, shop_id: str = "default") -> None:
    """Append one line to the sync event log."""
    timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    event_file = _log_dir() / f"sync-events-{_today()}.log"
    with open(event_file, "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | shop={shop_id} | {details}\n")


def log_sync(shop_id: str, direction: str, count: int, errors: int = 0) -> None:
    log_sync_event("sync", f"direction={direction}, count={count}, errors={errors}", shop_id)


def log_queue(shop_id: str, processed: int, pending: int, failed: int) -> None:
    log_sync_event(
        "queue", f"processed={processed}, pending={pending}, failed={failed}", shop_id
    )


def log_migration(shop_id: str, phase: str, migrated: int, failed: int) -> None:
    log_sync_event("migration", f"phase={phase}, migrated={migrated}, failed={failed}", shop_id)
