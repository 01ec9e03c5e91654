"""logging setup shared by the api server, tui and core modules.

usage:
    from .logger import get_logger

    logger = get_logger(__name__)
    logger.info("found %d new iterations", count)
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

_configured = False


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """configure root logging. call once at startup; later calls are no-ops.

    log_file sends records to a file instead of stderr (the tui owns the terminal).
    """
    global _configured
    if _configured:
        return

    target = {"filename": str(log_file)} if log_file else {"stream": sys.stderr}
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,
        **target,
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """return a logger for a module (pass ``__name__``)."""
    return logging.getLogger(name)
