"""Logging helpers shared by the API and the launcher."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILENAME = "chat_relay.log"


def setup_logging(log_dir: str, level: int = logging.INFO) -> logging.Logger:
    """Configure console and file logging for the relay.

    Handlers are attached to the root logger once; repeated calls only adjust
    the level so the app factory can be invoked more than once (e.g. in tests).
    """
    root = logging.getLogger()
    root.setLevel(level)
    if getattr(root, "_chat_relay_configured", False):
        return root

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    file_handler = logging.FileHandler(log_path / LOG_FILENAME, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    root._chat_relay_configured = True  # type: ignore[attr-defined]
    logging.getLogger(__name__).debug("Logging initialised in %s", log_path)
    return root
