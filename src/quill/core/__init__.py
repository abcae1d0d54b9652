"""
Quill core: signer session management, request lifecycle and backend drivers.
"""

from quill.core.signer_exceptions import (
    AccountMismatchError,
    BackendError,
    BackendNotFoundError,
    DeviceErrorKind,
    NoActiveSignerError,
    PinUnsupportedError,
    SignerError,
)
from quill.core.signer_session import SignerSession, get_signer_session

__all__ = [
    "AccountMismatchError",
    "BackendError",
    "BackendNotFoundError",
    "DeviceErrorKind",
    "NoActiveSignerError",
    "PinUnsupportedError",
    "SignerError",
    "SignerSession",
    "get_signer_session",
]
