"""Process-wide logging setup, applied once from the application lifespan."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger.

    Calling this more than once replaces the handler instead of stacking
    duplicates (uvicorn reloads re-run the lifespan).
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_spm_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._spm_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())

    # Stripe's SDK logs every request at INFO; keep it at WARNING.
    logging.getLogger("stripe").setLevel(logging.WARNING)
