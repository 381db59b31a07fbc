"""
Canonical value serialization, digests and random identifiers.

The output of `canonicalize` is part of the chain format: two conforming
implementations MUST produce byte-identical text for the same logical value,
otherwise body hashes, signatures and heads diverge between peers.

Rules:
- null / bool / string: JSON literal (non-ASCII kept as-is, control
  characters escaped the way every JSON encoder does, lone surrogates
  written as lowercase \\uXXXX like JSON.stringify).
- numbers: shortest round-trip form, formatted like ECMAScript
  Number::toString (1.0 -> "1", 1e21 -> "1e+21", 1e-7 -> "1e-7").
  Integers at or beyond 1e21 take the same exponent form.
  NaN and infinities serialize as "null".
- arrays: "[" + elements in original order joined by "," + "]".
- objects: keys sorted lexicographically (by UTF-16 code units),
  '{"k":v,...}' with no whitespace.
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import re
from typing import Any, Mapping

# DO NOT MODIFY: locked for cross-runtime determinism

# integers above this lose precision as IEEE doubles, which is what a JS peer holds
_MAX_SAFE_INTEGER = 2**53 - 1

_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def canonicalize(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return json.dumps(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, int):
        if abs(value) <= _MAX_SAFE_INTEGER:
            return str(value)
        try:
            return _format_number(float(value))
        except OverflowError:
            return "null"
    if isinstance(value, float):
        return _format_number(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonicalize(v) for v in value) + "]"
    if isinstance(value, Mapping):
        keys = sorted((str(k) for k in value.keys()), key=_utf16_key)
        lookup = {str(k): v for k, v in value.items()}
        return "{" + ",".join(
            _quote(k) + ":" + canonicalize(lookup[k]) for k in keys
        ) + "}"
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def _quote(s: str) -> str:
    text = json.dumps(s, ensure_ascii=False)
    return _LONE_SURROGATE.sub(lambda m: "\\u%04x" % ord(m.group()), text)


def _utf16_key(s: str) -> bytes:
    # JS sorts object keys by UTF-16 code units, not code points
    return s.encode("utf-16-be", "surrogatepass")


def _format_number(x: float) -> str:
    if math.isnan(x) or math.isinf(x):
        return "null"
    if x == 0:
        return "0"
    if x < 0:
        return "-" + _format_number(-x)

    # repr() yields the shortest digits that round-trip, same as ECMAScript
    mantissa, _, exp = repr(x).partition("e")
    int_part, _, frac_part = mantissa.partition(".")
    if frac_part == "0":
        frac_part = ""
    digits = (int_part + frac_part).lstrip("0")
    # n: position of the decimal point relative to the digit string
    n = len(int_part) + (int(exp) if exp else 0)
    if int_part == "0":
        leading = len(frac_part) - len(frac_part.lstrip("0"))
        n = -leading + (int(exp) if exp else 0)
    digits = digits.rstrip("0") or "0"
    k = len(digits)

    if k <= n <= 21:
        return digits + "0" * (n - k)
    if 0 < n <= 21:
        return digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return "0." + "0" * (-n) + digits

    e = n - 1
    sign = "+" if e >= 0 else "-"
    if k == 1:
        return f"{digits}e{sign}{abs(e)}"
    return f"{digits[0]}.{digits[1:]}e{sign}{abs(e)}"


def digest(data: bytes | str) -> str:
    """SHA-256 of `data` (UTF-8 for text), lowercase hex."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def random_id(n_bytes: int = 16) -> str:
    """Hex string of `n_bytes` bytes from the OS CSPRNG."""
    return os.urandom(n_bytes).hex()
