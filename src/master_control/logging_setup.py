"""Console logging for the CLI. Library modules never configure handlers."""

from __future__ import annotations

import logging
import sys


class _ConsoleNoiseFilter(logging.Filter):
    """Keep master_control logs; third-party libraries only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("master_control"):
            return True
        # alembic announces every migration step at INFO.
        return record.levelno >= logging.WARNING


def setup_logging(level: str | int = logging.INFO) -> None:
    """Install one stderr handler on the root logger. Call once, early."""

    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        level = resolved if isinstance(resolved, int) else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)
    logging.captureWarnings(True)
