from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    STORAGE_ERROR = "storage_error"
    IDENTITY_ERROR = "identity_error"
    FRAME_ERROR = "frame_error"
    DECRYPT_ERROR = "decrypt_error"
    INTERNAL_ERROR = "internal_error"


class RejectReason(str, Enum):
    """
    Why an append (local or externally validated) was refused.

    None of these mutate the log.
    """

    REPLAY = "replay"
    BAD_PREV_HASH = "bad_prev_hash"
    BAD_SIGNATURE = "bad_signature"
    BAD_SEQ = "bad_seq"
    TX_ABORT = "tx_abort"
    TX_ERROR = "tx_error"


class BalanceChainError(Exception):
    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.code = code or ErrorCode.INTERNAL_ERROR


class StorageError(BalanceChainError):
    """Raised by a storage backend when a read, write or commit fails."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.STORAGE_ERROR)


class IdentityError(BalanceChainError):
    """Raised when key material cannot be imported or is used in the wrong role."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.IDENTITY_ERROR)


class FrameError(BalanceChainError):
    """Raised when a wire frame cannot be decoded."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.FRAME_ERROR)


class DecryptError(BalanceChainError):
    """Raised when an encrypted batch item fails authentication or decoding."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.DECRYPT_ERROR)
