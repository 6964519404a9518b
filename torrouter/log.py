"""Logging setup shared by the agent's entry points."""

import logging
import logging.handlers
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level="INFO", log_file=None):
    """Configure the ``torrouter`` logger hierarchy.

    Always logs to stderr (journald picks it up under systemd); also writes a
    rotating file when ``log_file`` is given.
    """
    root = logging.getLogger("torrouter")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=1024 * 1024, backupCount=3,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.propagate = False
    return root
