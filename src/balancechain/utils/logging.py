from __future__ import annotations

import logging
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    if not name.startswith("balancechain"):
        name = f"balancechain.{name}"
    return logging.getLogger(name)


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure the root handler once. The level falls back to the
    runtime settings (BALANCECHAIN_LOG_LEVEL).
    """
    if level is None:
        from balancechain.config import get_settings

        level = get_settings().runtime.log_level

    logging.basicConfig(level=level.upper(), format=_FORMAT)
    # websockets is chatty at DEBUG; keep it one notch above ours
    if level.upper() == "DEBUG":
        logging.getLogger("websockets").setLevel(logging.INFO)
