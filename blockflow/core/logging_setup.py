"""
Console (and optional rotating file) logging for the blockflow CLI.

Library modules only create module loggers; handlers are installed here,
once, by the entry point.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_CONSOLE_HANDLER = "blockflow-console"
_FILE_HANDLER = "blockflow-file"


def configure_logging(level: Union[int, str] = logging.WARNING,
                      log_file: Optional[str] = None,
                      max_bytes: int = 5 * 1024 * 1024,
                      backup_count: int = 3) -> None:
    """Configure root logging. Safe to call more than once."""
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")

    root = logging.getLogger()
    root.setLevel(level)
    names = {h.get_name() for h in root.handlers}

    # Console handler (only add if not present)
    if _CONSOLE_HANDLER not in names:
        console = logging.StreamHandler()
        console.set_name(_CONSOLE_HANDLER)
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(console)

    if log_file and _FILE_HANDLER not in names:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(path), maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.set_name(_FILE_HANDLER)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    for handler in root.handlers:
        if handler.get_name() in (_CONSOLE_HANDLER, _FILE_HANDLER):
            handler.setLevel(level)
