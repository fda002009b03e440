"""
Logging setup for cstepper front ends.

The library itself only creates module loggers (`logging.getLogger(__name__)`);
a front end calls setup_logging() once to attach handlers:

  - rich console handler at `console_level` (WARNING by default)
  - optional file handler capturing DEBUG+ as
    ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
"""

from __future__ import annotations
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


def setup_logging(
    name: str = "cstepper",
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Configure and return the package logger.

    Calling it again replaces the handlers it installed before, so the CLI
    and tests can reconfigure levels freely.
    """
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        if getattr(handler, "_cstepper", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.DEBUG)

    ch = RichHandler(
        level=console_level,
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    ch._cstepper = True
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"{name}_{ts}.log"
        fh = logging.FileHandler(str(log_file), encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        fh._cstepper = True
        logger.addHandler(fh)
        logger.info("Log file: %s", log_file)

    return logger
