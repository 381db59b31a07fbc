"""
Per-session payload encryption.

Once both peers have exchanged agreement keys ("k" frames) each derives the
same ECDH secret and uses it directly as an AES-256-GCM key. Batch items
are encrypted one by one:

    {"seq", "msgId", "ts", "iv": b64(12 random bytes), "ct": b64(AES-GCM(json(item)))}

seq, msgId and ts are also kept in the clear; after decryption the
authenticated inner copy wins. No associated data is used, matching what
a browser peer produces with WebCrypto.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from balancechain.errors import DecryptError, FrameError
from balancechain.identity import AgreementKeypair
from balancechain.utils.json import json_dumps, safe_json_loads

from .frames import BatchItem

IV_BYTES = 12
KEY_BYTES = 32


class SessionCipher:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError("Session key must be exactly 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def derive(cls, agreement: AgreementKeypair, peer_pub: Dict[str, Any]) -> "SessionCipher":
        """Raises IdentityError when the peer key cannot be imported."""
        return cls(agreement.derive_shared_secret(peer_pub))

    def encrypt_item(self, item: BatchItem) -> Dict[str, Any]:
        iv = os.urandom(IV_BYTES)
        plaintext = json_dumps(item.to_wire()).encode("utf-8")
        ct = self._aesgcm.encrypt(iv, plaintext, None)
        return {
            "seq": item.seq,
            "msgId": item.msg_id,
            "ts": item.ts,
            "iv": base64.b64encode(iv).decode("ascii"),
            "ct": base64.b64encode(ct).decode("ascii"),
        }

    def decrypt_item(self, item: Dict[str, Any]) -> BatchItem:
        try:
            iv = base64.b64decode(item["iv"], validate=True)
            ct = base64.b64decode(item["ct"], validate=True)
        except (KeyError, TypeError, ValueError, binascii.Error):
            raise DecryptError("Invalid base64 in encrypted item")
        if len(iv) != IV_BYTES:
            raise DecryptError("Invalid IV length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ct, None)
        except InvalidTag:
            raise DecryptError("AES-GCM authentication failed")

        body = safe_json_loads(plaintext.decode("utf-8", errors="replace"))
        if not isinstance(body, dict) or not isinstance(body.get("text"), str):
            raise DecryptError("Decrypted item is not a text payload")
        merged = dict(item)
        merged.update(body)
        try:
            return BatchItem.from_wire(merged)
        except FrameError as e:
            raise DecryptError(str(e))
