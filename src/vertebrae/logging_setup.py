from __future__ import annotations

import logging
import sys
from pathlib import Path

_installed: list[logging.Handler] = []


class _ConsoleNoiseFilter(logging.Filter):
    """Keep vertebrae records; let third-party records through only at ERROR+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "vertebrae" or record.name.startswith("vertebrae."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    verbose: bool = False,
    log_file: str | Path | None = None,
) -> None:
    """
    Configure root logging:
    - stderr handler at WARNING, or DEBUG with verbose; third-party
      records reach it only at ERROR+
    - optional file handler with everything
    - warnings.warn() routed into logging

    Safe to call more than once; handlers from an earlier call are replaced,
    handlers installed by anyone else are left alone.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if verbose else logging.WARNING)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    _installed.append(ch)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_path), encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        _installed.append(fh)

    for handler in _installed:
        root.addHandler(handler)

    logging.captureWarnings(True)
