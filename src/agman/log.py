from __future__ import annotations

import logging
import os
from pathlib import Path

from agman.config import AgmanPaths

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
MAX_LOG_LINES = 1000
KEEP_LOG_LINES = 750


def rotate_log(path: Path, max_lines: int = MAX_LOG_LINES, keep_lines: int = KEEP_LOG_LINES) -> bool:
    """Trim the log file to its newest ``keep_lines`` once it exceeds ``max_lines``."""
    if not path.exists():
        return False
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return False
    if len(lines) <= max_lines:
        return False
    path.write_text("\n".join(lines[-keep_lines:]) + "\n", encoding="utf-8")
    return True


def setup_logging(paths: AgmanPaths, level: str | None = None) -> Path:
    """Send agman logs to ``<home>/agman.log``; stderr is left to the agent transcript."""
    paths.home.mkdir(parents=True, exist_ok=True)
    log_path = paths.log_path
    rotate_log(log_path)

    resolved = (level or os.environ.get("AGMAN_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger("agman")
    root.setLevel(getattr(logging, resolved, logging.INFO))
    root.propagate = False
    for handler in list(root.handlers):
        if not isinstance(handler, logging.FileHandler):
            continue
        if Path(handler.baseFilename) == log_path.absolute():
            return log_path
        # A different home was selected; only one log file is active at a time.
        root.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.debug("logging initialized, writing to %s", log_path)
    return log_path
