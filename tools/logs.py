from __future__ import annotations

import logging
import os

logger = logging.getLogger("livedev")


# ------------------------------------------------------------
# Logging categories (coarse grained, opt-in / opt-out)
#   Set LOG_ALL=0 to disable all unless explicitly enabled.
#   Per-category env vars override: LOG_HTTP, LOG_WS, LOG_WATCHER, LOG_TSC, LOG_NODE
#   Values: 1 enable, 0 disable. Default: follow LOG_ALL (which defaults to 1).
# ------------------------------------------------------------
def _log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def _log(cat: str, msg: str, level: int = logging.INFO) -> None:
    """Emit an application log line for a given category."""
    if not _log_enabled(cat):
        return
    logger.log(level, "%s", msg)


def configure_logging(level: str | None = None) -> None:
    """Attach a plain console handler; uvicorn configures only its own loggers."""
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, name, logging.INFO))
    if not any(getattr(h, "_livedev", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._livedev = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.propagate = False
