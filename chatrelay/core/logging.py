from __future__ import annotations

import logging
import sys

from chatrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process so API, workers, and scripts share one format.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)
    # Keep per-request HTTP client chatter out of delivery logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
