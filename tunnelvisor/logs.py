"""Logging setup shared by the command line and the control API."""

import logging
from logging.handlers import RotatingFileHandler

from .config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(cfg: Config, console_level: int = logging.INFO):
    """Rotating file log in the data directory plus a console handler."""
    cfg.ensure_data_dir()
    log_formatter = logging.Formatter(LOG_FORMAT)

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        cfg.log_file,
        maxBytes=cfg.log_max_bytes,
        backupCount=cfg.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    console_handler.setLevel(console_level)

    logging.basicConfig(
        level=logging.INFO,
        handlers=[file_handler, console_handler],
    )
