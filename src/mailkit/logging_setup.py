"""Logging configuration for the mailkit CLI."""

import logging
from logging.handlers import RotatingFileHandler

from mailkit.config import MailKitConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(message)s"


def _parse_level(raw: str | int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return getattr(logging, str(raw).strip().upper(), logging.INFO)


def configure_logging(config: MailKitConfig) -> None:
    """Set the root level and attach the rotating audit log file.

    The CLI writes its own user-facing output through the formatter, so no
    console handler is installed here. A log file that cannot be opened
    (non-root runs, read-only /var/log) only costs the audit trail.
    """
    level = _parse_level(config.log_level)
    root = logging.getLogger()
    root.setLevel(level)

    if config.log_file is None:
        return

    path = config.log_file
    if any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == str(path.resolve())
        for h in root.handlers
    ):
        return

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(str(path), maxBytes=10 * 1024 * 1024, backupCount=5)
    except OSError as e:
        logging.getLogger(__name__).warning("Could not set up file logging at %s: %s", path, e)
        return

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    logging.getLogger(__name__).debug(
        "mailkit logging initialized (level=%s file=%s)", logging.getLevelName(level), path
    )
