"""Logging setup for CLI invocations."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def default_log_file(logs_dir: Path, *, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    return logs_dir / f"test-run-{stamp}.log"


def configure_logging(log_file: Path | None, level: int = logging.INFO) -> Path | None:
    """Attach console and file handlers to the ``code_evals`` logger tree.

    Calling it again replaces the handlers installed by the previous call, so
    repeated CLI invocations in one process do not duplicate output.
    """

    root = logging.getLogger("code_evals")
    for handler in list(root.handlers):
        if getattr(handler, "_code_evals_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    _tag(console)
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        _tag(file_handler)
        root.addHandler(file_handler)

    root.setLevel(level)
    return log_file


def _tag(handler: logging.Handler) -> None:
    handler._code_evals_handler = True  # type: ignore[attr-defined]
