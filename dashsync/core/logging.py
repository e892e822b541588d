from __future__ import annotations

import logging
import sys

from dashsync.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install a single stream handler; repeated calls only adjust the level.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_dashsync", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._dashsync = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
