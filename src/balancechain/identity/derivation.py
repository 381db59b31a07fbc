"""
Public identifier derivation.

Both functions are pure: two peers that never talked to each other compute
the same HID for a key and the same channel id for a pair of HIDs.
"""

from __future__ import annotations

from typing import Any, Dict

from balancechain.codec import canonicalize, digest

HID_PREFIX = "HID-"
CHANNEL_PREFIX = "CH-"
ID_HEX_LENGTH = 32


def compute_hid(public_jwk: Dict[str, Any]) -> str:
    """HID-<hex> from the {kty,crv,x,y} members of a public JWK."""
    core = {
        "kty": public_jwk.get("kty"),
        "crv": public_jwk.get("crv"),
        "x": public_jwk.get("x"),
        "y": public_jwk.get("y"),
    }
    return HID_PREFIX + digest(canonicalize(core))[:ID_HEX_LENGTH]


def derive_channel_id(hid_a: str, hid_b: str) -> str:
    """Order-independent channel id for a pair of HIDs."""
    low, high = sorted((hid_a, hid_b))
    return CHANNEL_PREFIX + digest(f"{low}|{high}")[:ID_HEX_LENGTH]
