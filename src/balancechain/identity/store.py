from __future__ import annotations

import logging
from typing import Optional

from balancechain.storage import Storage, StoreName

from .keys import Identity

logger = logging.getLogger(__name__)

_IDENTITY_KEY = "identity"


def load_identity(storage: Storage) -> Optional[Identity]:
    record = storage.get(StoreName.KEYS, _IDENTITY_KEY)
    if not record:
        return None
    return Identity.from_record(record)


def save_identity(storage: Storage, identity: Identity) -> None:
    storage.put(StoreName.KEYS, _IDENTITY_KEY, identity.to_record())


def load_or_create_identity(storage: Storage, hik: Optional[str] = None) -> Identity:
    identity = load_identity(storage)
    if identity is not None:
        return identity
    identity = Identity.generate(hik)
    save_identity(storage, identity)
    logger.info("Created identity %s (%s)", identity.hik, identity.hid)
    return identity
