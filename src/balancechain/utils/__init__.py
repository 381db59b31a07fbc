from .json import json_dumps, json_loads, safe_json_loads
from .timestamps import now_ms
from .logging import get_logger, configure_logging

__all__ = [
    "json_dumps",
    "json_loads",
    "safe_json_loads",
    "now_ms",
    "get_logger",
    "configure_logging",
]
