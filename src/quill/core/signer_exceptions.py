"""
Signer exception hierarchy for Quill.

Session operations that have a direct caller raise one of these. Failures that
arrive through backend callbacks are folded into request state instead and
never raised (see ``SignerSession.set_request_error``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class DeviceErrorKind(str, Enum):
    """Structured failure kinds reported by backend drivers."""

    CONTRACT_DATA_DISABLED = "contract_data_disabled"
    USER_DENIED = "user_denied"
    UNKNOWN = "unknown"


class SignerError(Exception):
    """Base exception for all signer-related errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


class NoActiveSignerError(SignerError):
    """Raised when an operation requires a current signer and none is set."""

    def __init__(self, message: str = "No Account Selected", **kwargs: Any) -> None:
        super().__init__(message, recoverable=True, **kwargs)


class AccountMismatchError(SignerError):
    """Raised when sign_personal targets an address other than the selected one."""

    def __init__(
        self,
        message: str = "signPersonal: Wrong Account Selected",
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.expected = expected
        self.received = received


class BackendNotFoundError(SignerError):
    """Raised when a signer id is not present in the registry."""

    def __init__(self, signer_id: str, **kwargs: Any) -> None:
        super().__init__(f"Unknown signer: {signer_id}", **kwargs)
        self.signer_id = signer_id


class PinUnsupportedError(SignerError):
    """Raised when PIN entry is requested from a signer without a PIN pad."""

    def __init__(self, signer_id: str, **kwargs: Any) -> None:
        super().__init__("Set pin not avaliable...", **kwargs)
        self.signer_id = signer_id


class BackendError(SignerError):
    """Opaque failure surfaced by a signer backend during signing or selection.

    Drivers set ``kind`` when they can recognise the failure; everything else
    stays ``DeviceErrorKind.UNKNOWN`` and is reported by its message.
    """

    def __init__(
        self,
        message: str,
        kind: DeviceErrorKind = DeviceErrorKind.UNKNOWN,
        signer_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.kind = kind
        self.signer_id = signer_id
