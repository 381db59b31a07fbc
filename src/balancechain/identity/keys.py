"""
Identity key material.

Every participant holds two independent P-256 keypairs:
- a signing keypair (ECDSA / SHA-256) that signs chain entries
- an agreement keypair (ECDH) that derives per-session payload keys

The two roles are separate classes and are persisted under separate labels,
so a key can never be used in the other role by accident.

Public keys travel as JWK objects ({kty, crv, x, y}); signatures are the
base64 of the raw 64-byte r||s form, which is what browser WebCrypto emits.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from balancechain.codec import random_id
from balancechain.errors import IdentityError

from .derivation import compute_hid

_CURVE = ec.SECP256R1()
_COORD_BYTES = 32


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64url(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _int_to_b64url(n: int) -> str:
    return _b64url(n.to_bytes(_COORD_BYTES, "big"))


def _b64url_to_int(s: str) -> int:
    raw = _unb64url(s)
    if len(raw) != _COORD_BYTES:
        raise IdentityError(f"JWK coordinate must be {_COORD_BYTES} bytes, got {len(raw)}")
    return int.from_bytes(raw, "big")


def export_public(key: ec.EllipticCurvePublicKey) -> Dict[str, str]:
    """Portable JWK form of a P-256 public key."""
    numbers = key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": _int_to_b64url(numbers.x),
        "y": _int_to_b64url(numbers.y),
    }


def import_public(jwk: Dict[str, Any]) -> ec.EllipticCurvePublicKey:
    if not isinstance(jwk, dict) or jwk.get("kty") != "EC" or jwk.get("crv") != "P-256":
        raise IdentityError("Expected a P-256 EC public JWK")
    try:
        numbers = ec.EllipticCurvePublicNumbers(
            _b64url_to_int(jwk["x"]), _b64url_to_int(jwk["y"]), _CURVE
        )
        return numbers.public_key()
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise IdentityError(f"Invalid public JWK: {e}")


def _export_private(key: ec.EllipticCurvePrivateKey) -> Dict[str, str]:
    jwk = export_public(key.public_key())
    jwk["d"] = _int_to_b64url(key.private_numbers().private_value)
    return jwk


def _import_private(jwk: Dict[str, Any]) -> ec.EllipticCurvePrivateKey:
    try:
        key = ec.derive_private_key(_b64url_to_int(jwk["d"]), _CURVE)
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise IdentityError(f"Invalid private JWK: {e}")
    if export_public(key.public_key()) != {k: jwk.get(k) for k in ("kty", "crv", "x", "y")}:
        raise IdentityError("Private JWK does not match its public coordinates")
    return key


class SigningKeypair:
    """
    ECDSA P-256 signer for chain entries.

    Usage:
        signer = SigningKeypair.generate()
        sig = signer.sign(body_hash)
        assert verify(signer.public_jwk, body_hash, sig)
    """

    role = "signing"

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self._private_key = private_key
        self._public_jwk = export_public(private_key.public_key())

    @classmethod
    def generate(cls) -> "SigningKeypair":
        return cls(ec.generate_private_key(_CURVE))

    @classmethod
    def from_private_jwk(cls, jwk: Dict[str, Any]) -> "SigningKeypair":
        return cls(_import_private(jwk))

    @property
    def public_jwk(self) -> Dict[str, str]:
        return dict(self._public_jwk)

    def private_jwk(self) -> Dict[str, str]:
        return _export_private(self._private_key)

    def sign(self, text: str) -> str:
        """Sign UTF-8 `text`. Returns base64 of the raw r||s signature."""
        der = self._private_key.sign(text.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        raw = r.to_bytes(_COORD_BYTES, "big") + s.to_bytes(_COORD_BYTES, "big")
        return base64.b64encode(raw).decode("ascii")


class AgreementKeypair:
    """ECDH P-256 keypair used only to derive session keys."""

    role = "agreement"

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self._private_key = private_key
        self._public_jwk = export_public(private_key.public_key())

    @classmethod
    def generate(cls) -> "AgreementKeypair":
        return cls(ec.generate_private_key(_CURVE))

    @classmethod
    def from_private_jwk(cls, jwk: Dict[str, Any]) -> "AgreementKeypair":
        return cls(_import_private(jwk))

    @property
    def public_jwk(self) -> Dict[str, str]:
        return dict(self._public_jwk)

    def private_jwk(self) -> Dict[str, str]:
        return _export_private(self._private_key)

    def derive_shared_secret(self, peer_public_jwk: Dict[str, Any]) -> bytes:
        """32-byte ECDH shared secret with the peer's agreement key."""
        peer_key = import_public(peer_public_jwk)
        return self._private_key.exchange(ec.ECDH(), peer_key)


def verify(public_jwk: Dict[str, Any], text: str, signature: str) -> bool:
    """
    Verify a base64 r||s signature over UTF-8 `text`.

    Never raises: malformed keys, encodings or signatures all yield False.
    """
    try:
        public_key = import_public(public_jwk)
        raw = base64.b64decode(signature, validate=True)
        if len(raw) != 2 * _COORD_BYTES:
            return False
        der = encode_dss_signature(
            int.from_bytes(raw[:_COORD_BYTES], "big"),
            int.from_bytes(raw[_COORD_BYTES:], "big"),
        )
        public_key.verify(der, text.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, IdentityError, TypeError, ValueError, binascii.Error):
        return False


@dataclass
class Identity:
    """
    A local participant.

    Attributes:
        hik: locally chosen label, not derived from key material
        signing: keypair that signs chain entries
        agreement: keypair used for session key agreement
    """

    hik: str
    signing: SigningKeypair
    agreement: AgreementKeypair

    @classmethod
    def generate(cls, hik: Optional[str] = None) -> "Identity":
        return cls(
            hik=hik or f"HIK-{random_id(8)}",
            signing=SigningKeypair.generate(),
            agreement=AgreementKeypair.generate(),
        )

    @property
    def pub_key(self) -> Dict[str, str]:
        """Public signing key as carried in entry authors."""
        return self.signing.public_jwk

    @property
    def hid(self) -> str:
        return compute_hid(self.signing.public_jwk)

    def sign(self, text: str) -> str:
        return self.signing.sign(text)

    def to_record(self) -> Dict[str, Any]:
        """Private, persistable form. Keep it out of anything that leaves the device."""
        return {
            "hik": self.hik,
            "signing": self.signing.private_jwk(),
            "agreement": self.agreement.private_jwk(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Identity":
        try:
            return cls(
                hik=record["hik"],
                signing=SigningKeypair.from_private_jwk(record["signing"]),
                agreement=AgreementKeypair.from_private_jwk(record["agreement"]),
            )
        except KeyError as e:
            raise IdentityError(f"Identity record missing field {e}")
