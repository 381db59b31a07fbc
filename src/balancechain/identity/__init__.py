from .derivation import compute_hid, derive_channel_id
from .keys import (
    AgreementKeypair,
    Identity,
    SigningKeypair,
    export_public,
    import_public,
    verify,
)
from .store import load_identity, load_or_create_identity, save_identity

__all__ = [
    "compute_hid",
    "derive_channel_id",
    "AgreementKeypair",
    "Identity",
    "SigningKeypair",
    "export_public",
    "import_public",
    "verify",
    "load_identity",
    "load_or_create_identity",
    "save_identity",
]
