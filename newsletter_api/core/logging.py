from __future__ import annotations

import logging
import sys

from newsletter_api.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once; API and worker entrypoints both call this.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # SQLAlchemy echoes every statement at INFO; keep it quiet unless asked for.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
