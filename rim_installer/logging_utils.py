from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .lib.env import user_data_dir

DEFAULT_LOG_FILENAME = "rim-installer.log"

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"


def default_log_path(install_dir: Optional[Path] = None) -> str:
    """Log location for the current mode.

    The manager logs inside the install dir it manages, the installer (which has
    no install dir yet) logs under the user's data dir.
    """

    if install_dir is not None:
        return str(install_dir / "log" / "rim.log")
    return str(user_data_dir() / "log" / DEFAULT_LOG_FILENAME)


def _file_handler(path: str) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    return handler


def configure_logging(
    log_path: Optional[str] = None,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure the root logger once per process.

    The requested file may not be writable (read-only media, an install dir
    owned by someone else). It is tried first, then `rim-installer.log` in the
    working directory.

    Returns the log file actually in use.
    """

    requested = log_path or default_log_path()
    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, "_rim_configured", False):
        return getattr(root, "_rim_log_path", requested)

    try:
        file_handler = _file_handler(requested)
        chosen = requested
    except OSError:
        chosen = str(Path.cwd() / DEFAULT_LOG_FILENAME)
        file_handler = _file_handler(chosen)
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT))
        console.setLevel(level)
        root.addHandler(console)

    # third-party request logs are too chatty at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    setattr(root, "_rim_configured", True)
    setattr(root, "_rim_log_path", chosen)

    logging.getLogger(__name__).debug("Logging initialized (requested=%s, actual=%s)", requested, chosen)
    return chosen
