"""
Signer backend contract for Quill.

Provides:
- Protocol interfaces every signer driver implements, plus optional
  capability protocols probed with ``isinstance``
- ``SignRequest`` records queued on a signer while the user decides
- ``Signer`` base class holding the shared bookkeeping (request queue,
  observers, account selection)

Drivers (see ``hot_signer.py`` and ``ledger_signer.py``) only implement the
device-specific parts: loading accounts and producing signatures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from quill.core.signer_exceptions import BackendError

logger = logging.getLogger(__name__)

# Backends reporting one of these are hidden from callers
NOT_READY_STATUSES = frozenset({"initial", "Invalid sequence"})


class SignerType(str, Enum):
    LEDGER = "ledger"
    TREZOR = "trezor"
    HOT = "hot"


class RequestStatus(str, Enum):
    PENDING = "pending"
    DECLINED = "declined"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True)
class SignerSummary:
    """Snapshot of a signer handed out to callers and UI observers."""

    id: str
    type: str
    status: str
    accounts: tuple[str, ...] = ()
    index: int = 0

    @classmethod
    def placeholder(cls) -> "SignerSummary":
        return cls(id="", type="", status="", accounts=(), index=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "accounts": list(self.accounts),
            "index": self.index,
        }


@dataclass
class SignRequest:
    """
    A caller's pending ask to sign something.

    Attributes:
        handler_id: Caller-supplied id correlating the request over its lifecycle
        method: RPC method that produced it (e.g. ``personal_sign``)
        payload: Method parameters as received from the caller
        origin: Origin of the untrusted caller, if known
        status: ``None`` until the session files it, then a ``RequestStatus``
        notice: Human-readable status text for the UI
    """

    handler_id: str
    method: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    origin: Optional[str] = None
    status: Optional[RequestStatus] = None
    notice: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignRequest":
        """Build a request from the camelCase mapping RPC handlers submit."""
        return cls(
            handler_id=data["handlerId"],
            method=data.get("method", ""),
            payload=dict(data.get("payload") or {}),
            origin=data.get("origin"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "handlerId": self.handler_id,
            "method": self.method,
            "payload": self.payload,
            "origin": self.origin,
            "status": self.status.value if self.status else None,
            "notice": self.notice,
        }


SignerListener = Callable[[SignerSummary, dict, Optional[str]], None]


@runtime_checkable
class SignerBackend(Protocol):
    """
    Protocol every signer driver implements.

    Signing and account calls are coroutines; they complete once the device
    (or keystore) answers and raise ``BackendError`` on failure.
    """

    id: str
    type: SignerType
    index: int
    accounts: list[str]
    status: str
    requests: dict[str, SignRequest]

    def summary(self) -> SignerSummary:
        ...

    async def get_accounts(self) -> list[str]:
        ...

    async def get_coinbase(self) -> str:
        ...

    async def sign_personal(self, message: str) -> str:
        ...

    async def sign_transaction(self, raw_tx: dict[str, Any]) -> str:
        ...

    async def set_index(self, index: int) -> None:
        ...

    def update(self, set_view: Optional[str] = None) -> None:
        ...


@runtime_checkable
class PinEntry(Protocol):
    """Signers whose device asks for a PIN before unlocking."""

    def set_pin(self, pin: str) -> None:
        ...


@runtime_checkable
class AddressVerifier(Protocol):
    """Signers able to show the selected address on the device screen."""

    def verify_address(self, display: bool = True) -> None:
        ...


@runtime_checkable
class AccountSelection(Protocol):
    def get_selected_accounts(self) -> list[str]:
        ...

    def get_selected_account(self) -> Optional[str]:
        ...


class Signer:
    """
    Shared bookkeeping for signer drivers.

    Subclasses fill ``accounts`` and implement the signing coroutines. The
    ``requests`` mapping belongs to the session: drivers never touch it.
    """

    type: SignerType

    def __init__(self, signer_id: str, status: str = "initial"):
        self.id = signer_id
        self.index = 0
        self.accounts: list[str] = []
        self.status = status
        self.requests: dict[str, SignRequest] = {}
        self._listeners: list[SignerListener] = []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, status={self.status!r})"

    def summary(self) -> SignerSummary:
        return SignerSummary(
            id=self.id,
            type=self.type.value,
            status=self.status,
            accounts=tuple(self.accounts),
            index=self.index,
        )

    def subscribe(self, listener: SignerListener) -> Callable[[], None]:
        """
        Register an observer called on every ``update``.

        Returns:
            Function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, set_view: Optional[str] = None) -> None:
        """Tell observers that the signer (or its request queue) changed."""
        summary = self.summary()
        requests = {handler_id: req.to_dict() for handler_id, req in self.requests.items()}
        for listener in list(self._listeners):
            try:
                listener(summary, requests, set_view)
            except Exception as exc:  # listeners belong to the UI layer
                logger.error(
                    "Signer listener failed: %s",
                    exc,
                    exc_info=True,
                    extra={"event": "signer.listener_failed", "signer_id": self.id},
                )

    def get_selected_accounts(self) -> list[str]:
        if not 0 <= self.index < len(self.accounts):
            return []
        return [self.accounts[self.index]]

    def get_selected_account(self) -> Optional[str]:
        selected = self.get_selected_accounts()
        return selected[0] if selected else None

    async def get_accounts(self) -> list[str]:
        return self.get_selected_accounts()

    async def get_coinbase(self) -> str:
        account = self.get_selected_account()
        if account is None:
            raise BackendError("No accounts loaded", signer_id=self.id)
        return account

    async def set_index(self, index: int) -> None:
        if index < 0 or index >= len(self.accounts):
            raise BackendError(
                f"Account index {index} out of range",
                signer_id=self.id,
                details={"index": index, "accounts": len(self.accounts)},
            )
        self.index = index
        self.update()

    async def sign_personal(self, message: str) -> str:
        raise NotImplementedError

    async def sign_transaction(self, raw_tx: dict[str, Any]) -> str:
        raise NotImplementedError
