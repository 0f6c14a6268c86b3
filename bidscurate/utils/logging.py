"""
Package-level logging configuration.

* Rich console output for interactive runs.
* Rotating **JSON** log under ``<dataset>/code/logs/`` so every rebuild,
  rename, merge or shift leaves a trace next to the data it touched
  (``$BIDSCURATE_LOG_DIR`` takes precedence when set).
* Optional plain-text mirror requested with ``--save-logfile``.

:func:`setup_logging` is the only entry-point; library code merely calls
``structlog.get_logger()``.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

import structlog
from rich.logging import RichHandler
from structlog.dev import ConsoleRenderer
from structlog.stdlib import LoggerFactory

__all__ = ["setup_logging", "log_directory"]

_LOG_NAME = "bidscurate.log"


def log_directory(dataset_root: Path | None) -> Path:
    """Return the folder receiving the rotating JSON log.

    Args:
        dataset_root: Dataset root or *None* when the command runs outside a
            dataset.

    Returns:
        ``$BIDSCURATE_LOG_DIR`` when defined, else ``<root>/code/logs`` or a
        ``logs/`` folder next to the installed package.
    """
    env_dir = os.environ.get("BIDSCURATE_LOG_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    if dataset_root is not None:
        return dataset_root / "code" / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def _json_file_handler(dataset_root: Path | None, level: int) -> logging.Handler:
    """Return a rotating file handler placed by :func:`log_directory`."""
    logdir = log_directory(dataset_root)
    logdir.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        filename=logdir / _LOG_NAME,
        maxBytes=5_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def _plain_text_file_handler(
    path: Optional[Path], level: int
) -> logging.Handler | None:
    """Return a plain-text mirror handler, or *None* when *path* is *None*."""
    if path is None:
        return None

    path = path.expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding="utf-8", mode="a")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    atexit.register(handler.close)
    return handler


def setup_logging(
    *,
    dataset_root: Path | None = None,
    verbose: bool = False,
    debug: bool = False,
    extra_text_log: Optional[Path] = None,
) -> None:
    """Configure rich console logging and the file mirrors.

    Args:
        dataset_root: Dataset root used to place the JSON log.
        verbose: Emit INFO-level messages (planned changes, diffs) on the
            console.
        debug: Emit DEBUG-level messages and rich tracebacks with locals.
        extra_text_log: Optional path for a plain-text copy of console output.
    """
    console_lvl = (
        logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    )
    file_lvl = logging.DEBUG if debug else logging.INFO

    handlers: list[logging.Handler] = [
        RichHandler(
            level=console_lvl,
            rich_tracebacks=True,
            tracebacks_show_locals=debug,
            markup=False,
        ),
        _json_file_handler(dataset_root, file_lvl),
    ]
    txt_handler = _plain_text_file_handler(extra_text_log, console_lvl)
    if txt_handler:
        handlers.append(txt_handler)

    logging.basicConfig(
        level=logging.DEBUG,
        handlers=handlers,
        format="%(message)s",
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            ConsoleRenderer(colors=False)
            if verbose or debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            min(console_lvl, file_lvl)
        ),
        logger_factory=LoggerFactory(),
    )
