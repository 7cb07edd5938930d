from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "info", log_file: str | None = None) -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=log_level, format=LOG_FORMAT, handlers=handlers, force=True)
    # aiohttp access logs drown out agent lifecycle lines at info level.
    logging.getLogger("aiohttp.access").setLevel(max(log_level, logging.WARNING))
