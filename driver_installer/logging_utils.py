from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

DEFAULT_LOG_PATH = "/var/log/nvidia-installer.log"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_FILE_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)
# The console mirrors the installer's own messages, without timestamps.
_CONSOLE_FORMAT = logging.Formatter(fmt="%(levelname)s: %(message)s")

# Handlers installed by configure_logging, so a later call can replace them.
_installed: List[logging.Handler] = []
_requested_path: Optional[str] = None
_active_path: Optional[str] = None


def parse_log_level(name: str) -> int:
    """Map a config/CLI level name ("debug", "info", ...) to a logging level."""

    try:
        return LOG_LEVELS[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown log level '{name}' (expected one of: {', '.join(LOG_LEVELS)})"
        ) from None


def _open_log_file(log_path: str) -> Tuple[logging.Handler, str]:
    """FileHandler on ``log_path``, or on its basename in the working directory.

    Writing under /var/log needs root; a user running the tools for
    inspection still gets a log next to where they ran them.
    """

    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        fallback = str(Path.cwd() / Path(log_path).name)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    *,
    level: int = logging.INFO,
    console_level: Optional[int] = logging.INFO,
) -> str:
    """Send log records to ``log_path`` and, unless ``console_level`` is None, stderr.

    The file receives everything at ``level`` and above; the console only
    what reaches ``console_level``. Calling again with the same path only
    adjusts the levels; a different path replaces the handlers.

    Returns the log file actually in use.
    """

    global _requested_path, _active_path

    root = logging.getLogger()

    if _active_path is None or log_path != _requested_path:
        for h in _installed:
            root.removeHandler(h)
            h.close()
        _installed.clear()

        file_handler, _active_path = _open_log_file(log_path)
        _requested_path = log_path
        file_handler.setFormatter(_FILE_FORMAT)
        _installed.append(file_handler)
        root.addHandler(file_handler)

    file_handler = _installed[0]
    file_handler.setLevel(level)

    for h in _installed[1:]:
        root.removeHandler(h)
        h.close()
    del _installed[1:]

    if console_level is not None:
        console = logging.StreamHandler()
        console.setFormatter(_CONSOLE_FORMAT)
        console.setLevel(console_level)
        _installed.append(console)
        root.addHandler(console)

    root.setLevel(min([level] + ([console_level] if console_level is not None else [])))

    logging.getLogger(__name__).debug(
        "Logging to %s (requested %s) at %s", _active_path, log_path, logging.getLevelName(level)
    )
    return _active_path
