from __future__ import annotations

import logging
import os


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for a process entrypoint (server or CLI)."""
    name = (level or os.getenv("HOMER_LOG_LEVEL") or "info").strip().upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)
