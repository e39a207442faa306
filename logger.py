"""Logging for ollama-stream.

Library modules only ask for a logger::

    from logger import get_logger
    log = get_logger("stream")

Importing this module attaches a NullHandler to the ``ollamastream`` logger,
so using the client as a library writes nothing anywhere until the
application decides otherwise.  The CLI calls :func:`setup_logging` with a
file from :func:`default_log_file`; other callers pass their own path, ask
for stderr output, or leave logging alone.
"""

import logging
import sys
from datetime import date
from pathlib import Path

ROOT_LOGGER = "ollamastream"
DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "ollama-stream" / "logs"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.getLogger(ROOT_LOGGER).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def default_log_file(log_dir: Path | None = None) -> Path:
    """Path of today's log file, creating its directory if needed."""
    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"ollama-stream-{date.today():%Y%m%d}.log"


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    console: bool = False,
) -> logging.Logger:
    """Route ``ollamastream`` records to *log_file* and/or stderr.

    Handlers from a previous call are closed and replaced.  With neither a
    file nor *console* the logger goes back to its NullHandler.  Unknown
    level names fall back to INFO.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = []
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if not handlers:
        handlers.append(logging.NullHandler())

    formatter = logging.Formatter(_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.debug("Logging to %s at %s", log_file or ("stderr" if console else "nowhere"), level.upper())
    return root
