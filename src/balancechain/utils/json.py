import json
from typing import Any, Optional


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def json_loads(s: str | bytes) -> Any:
    return json.loads(s)


def safe_json_loads(s: str | bytes) -> Optional[Any]:
    """Parse JSON, returning None for anything that is not valid JSON."""
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return None
