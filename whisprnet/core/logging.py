from __future__ import annotations

import logging
import sys

from whisprnet.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; later calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    # Keep driver chatter out of application logs unless explicitly debugging.
    for noisy in ("sqlalchemy.engine", "httpx", "arq.worker"):
        logging.getLogger(noisy).setLevel(max(logging.getLevelName(resolved), logging.WARNING))
    _configured = True
