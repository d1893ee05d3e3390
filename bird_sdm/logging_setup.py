"""Logging setup for the covariate and validation runs."""
from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
QUIET_LOGGERS = ("rasterio", "fiona", "pyogrio", "libpysal", "esda")


def setup_logging(level: str = "INFO", fmt: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        return  # already configured
    fmt = fmt or DEFAULT_FORMAT
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=fmt, handlers=handlers)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
