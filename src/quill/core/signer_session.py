"""
Signer session manager.

Tracks which signer backend is current, routes account and signing calls to
it, and moves queued sign requests through their lifecycle:

    (none) --add_request--> pending
    pending --decline_request--> declined --(decline grace)--> removed
    pending --set_request_error--> error --(error grace)--> removed
    pending --set_request_success--> success --(success grace)--> removed
    (any) --remove_request--> removed

Everything runs on one control thread. Operations on a request that no longer
exists (already removed, another signer became current) are silent no-ops:
backend callbacks racing a signer swap are expected.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Mapping, Optional, TypeVar, Union

from quill.core import config
from quill.core.notifications import (
    MAIN_ACTION_CHANNEL,
    NotificationSink,
    NullSink,
    TrayPresenter,
)
from quill.core.scheduler import LoopScheduler, Scheduler, TimerHandle
from quill.core.signer_backend import (
    NOT_READY_STATUSES,
    AccountSelection,
    AddressVerifier,
    PinEntry,
    RequestStatus,
    SignerBackend,
    SignerSummary,
    SignRequest,
)
from quill.core.signer_exceptions import (
    AccountMismatchError,
    BackendError,
    BackendNotFoundError,
    DeviceErrorKind,
    NoActiveSignerError,
    PinUnsupportedError,
    SignerError,
)
from quill.core.signer_registry import SignerRegistry, get_signer_registry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_VIEW = "default"

NOTICE_DECLINED = "Signature Declined"
NOTICE_PENDING = "Signature Pending"
NOTICE_SUCCESS = "Signature Succesful"
NOTICE_UNKNOWN = "Unknown Error"

_KIND_NOTICES = {
    DeviceErrorKind.CONTRACT_DATA_DISABLED: "Ledger Contract Data = No",
    DeviceErrorKind.USER_DENIED: "Ledger Signature Declined",
}

# Exact firmware strings from older drivers that do not report a kind.
# Kept for compatibility only; new drivers set BackendError.kind instead.
_LEGACY_MESSAGE_KINDS = {
    "Ledger device: Invalid data received (0x6a80)": DeviceErrorKind.CONTRACT_DATA_DISABLED,
    "Ledger device: Condition of use not satisfied (denied by the user?) (0x6985)": DeviceErrorKind.USER_DENIED,
}

RequestRef = Union[SignRequest, Mapping[str, Any], str]


def request_error_notice(err: Any) -> str:
    """Friendly notice text for a failed request."""
    kind = getattr(err, "kind", None)
    if kind in _KIND_NOTICES:
        return _KIND_NOTICES[kind]

    if isinstance(err, str):
        message = err
    else:
        message = getattr(err, "message", None)
        if not isinstance(message, str) and isinstance(err, BaseException):
            message = str(err)
    if not isinstance(message, str) or not message:
        return NOTICE_UNKNOWN

    legacy_kind = _LEGACY_MESSAGE_KINDS.get(message)
    if legacy_kind is not None:
        return _KIND_NOTICES[legacy_kind]
    return message


def _handler_id_of(request: RequestRef) -> Optional[str]:
    if isinstance(request, SignRequest):
        return request.handler_id
    if isinstance(request, Mapping):
        return request.get("handlerId")
    return request


class SignerSession:
    """
    Single choke point for everything that touches the current signer.

    At most one backend is current at any time. ``current`` only changes in
    ``select_signer`` (after the backend accepted re-selection) and
    ``clear_signer``.
    """

    def __init__(
        self,
        registry: Optional[SignerRegistry] = None,
        sink: Optional[NotificationSink] = None,
        scheduler: Optional[Scheduler] = None,
        decline_grace: Optional[float] = None,
        success_grace: Optional[float] = None,
        error_grace: Optional[float] = None,
    ):
        self.registry = registry if registry is not None else SignerRegistry()
        self.sink = sink if sink is not None else NullSink()
        self.scheduler = scheduler if scheduler is not None else LoopScheduler()
        self.decline_grace = config.DECLINE_GRACE_SECONDS if decline_grace is None else decline_grace
        self.success_grace = config.SUCCESS_GRACE_SECONDS if success_grace is None else success_grace
        self.error_grace = config.ERROR_GRACE_SECONDS if error_grace is None else error_grace

        self._current: Optional[str] = None
        self._removal_timers: dict[tuple[Optional[str], str], TimerHandle] = {}

    # ==================== Selection ====================

    @property
    def current(self) -> Optional[str]:
        return self._current

    @property
    def current_signer(self) -> Optional[SignerBackend]:
        return self.registry.get(self._current)

    def list_signers(self) -> dict[str, SignerSummary]:
        """Summaries of every registered signer that is ready for use."""
        summaries = {}
        for signer in self.registry:
            summary = signer.summary()
            if summary.status in NOT_READY_STATUSES:
                continue
            summaries[signer.id] = summary
        return summaries

    async def select_signer(self, signer_id: str) -> SignerSummary:
        """
        Make ``signer_id`` the current signer.

        The backend first re-applies its selected account index; only if that
        succeeds does the selection change.

        Raises:
            BackendNotFoundError: If the id is not registered
            BackendError: If the backend rejects re-selection
        """
        signer = self.registry.get(signer_id)
        if signer is None:
            raise BackendNotFoundError(signer_id)

        try:
            await signer.set_index(signer.index)
        except Exception as exc:
            logger.warning(
                "Signer rejected selection: %s",
                exc,
                extra={"event": "session.select_rejected", "signer_id": signer_id},
            )
            error = self._as_backend_error(exc, signer_id)
            if error is exc:
                raise
            raise error from exc

        if self.registry.get(signer_id) is not signer:
            raise BackendNotFoundError(signer_id)

        self._current = signer_id
        summary = signer.summary()
        logger.info(
            "Signer selected",
            extra={"event": "session.select", "signer_id": signer_id, "type": summary.type},
        )
        self.sink.broadcast(MAIN_ACTION_CHANNEL, "setSigner", summary.to_dict())
        return summary

    def clear_signer(self) -> SignerSummary:
        """
        Unset the current signer.

        The previous signer's queued requests are dropped one scheduling turn
        later, so synchronous reactions to ``unsetSigner`` still see them.
        """
        previous = self.current_signer
        self._current = None
        summary = SignerSummary.placeholder()
        logger.info(
            "Signer cleared",
            extra={"event": "session.clear", "signer_id": previous.id if previous else None},
        )
        self.sink.broadcast(MAIN_ACTION_CHANNEL, "unsetSigner", summary.to_dict())

        if previous is not None:
            stale = list(previous.requests)
            self.scheduler.call_soon(lambda: self._drop_requests(previous, stale))
        return summary

    def _drop_requests(self, signer: SignerBackend, handler_ids: list[str]) -> None:
        for handler_id in handler_ids:
            signer.requests.pop(handler_id, None)
            self._cancel_removal(signer.id, handler_id)
        signer.update()

    def close(self) -> None:
        self.registry.close()

    # ==================== Routed operations ====================

    def _require_current(self) -> SignerBackend:
        signer = self.current_signer
        if signer is None:
            raise NoActiveSignerError()
        return signer

    @staticmethod
    def _as_backend_error(exc: Exception, signer_id: str) -> SignerError:
        if isinstance(exc, SignerError):
            return exc
        return BackendError(str(exc) or type(exc).__name__, signer_id=signer_id)

    async def _delegate(self, signer: SignerBackend, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as exc:
            logger.warning(
                "Signer %s failed: %s",
                operation,
                exc,
                extra={"event": "session.backend_failed", "signer_id": signer.id, "operation": operation},
            )
            error = self._as_backend_error(exc, signer.id)
            if error is exc:
                raise
            raise error from exc

    @staticmethod
    def _selected_accounts_of(signer: SignerBackend) -> list[str]:
        if isinstance(signer, AccountSelection):
            return signer.get_selected_accounts()
        if 0 <= signer.index < len(signer.accounts):
            return [signer.accounts[signer.index]]
        return []

    def get_selected_accounts(self) -> list[str]:
        signer = self.current_signer
        return self._selected_accounts_of(signer) if signer is not None else []

    def get_selected_account(self) -> Optional[str]:
        selected = self.get_selected_accounts()
        return selected[0] if selected else None

    def verify_address(self, display: bool = True) -> None:
        signer = self.current_signer
        if isinstance(signer, AddressVerifier):
            signer.verify_address(display)

    async def get_accounts(self) -> list[str]:
        signer = self._require_current()
        return await self._delegate(signer, "get_accounts", signer.get_accounts())

    async def get_coinbase(self) -> str:
        signer = self._require_current()
        return await self._delegate(signer, "get_coinbase", signer.get_coinbase())

    async def sign_personal(self, message: str, address: str) -> str:
        signer = self._require_current()
        selected = self._selected_accounts_of(signer)
        if not selected or address.lower() != selected[0].lower():
            raise AccountMismatchError(expected=selected[0] if selected else None, received=address)
        return await self._delegate(signer, "sign_personal", signer.sign_personal(message))

    async def sign_transaction(self, raw_tx: dict[str, Any]) -> str:
        signer = self._require_current()
        return await self._delegate(signer, "sign_transaction", signer.sign_transaction(raw_tx))

    async def set_account_index(self, index: int) -> None:
        signer = self._require_current()
        await self._delegate(signer, "set_index", signer.set_index(index))

    def set_pin(self, signer_id: str, pin: str) -> dict[str, str]:
        """
        Forward a PIN to ``signer_id``; it need not be current yet.

        Raises:
            BackendNotFoundError: If the id is not registered
            PinUnsupportedError: If the signer has no PIN entry
        """
        signer = self.registry.get(signer_id)
        if signer is None:
            raise BackendNotFoundError(signer_id)
        if not isinstance(signer, PinEntry):
            raise PinUnsupportedError(signer_id)
        signer.set_pin(pin)
        return {"status": "ok"}

    # ==================== Request lifecycle ====================

    def get_request(self, handler_id: str) -> Optional[SignRequest]:
        signer = self.current_signer
        return signer.requests.get(handler_id) if signer is not None else None

    def _find_request(self, handler_id: str) -> tuple[Optional[SignerBackend], Optional[SignRequest]]:
        signer = self.current_signer
        if signer is None:
            return None, None
        return signer, signer.requests.get(handler_id)

    def _schedule_removal(self, signer_id: Optional[str], handler_id: str, delay: float) -> None:
        # timers are owned by the signer that was current when they were set
        self._cancel_removal(signer_id, handler_id)
        self._removal_timers[(signer_id, handler_id)] = self.scheduler.call_later(
            delay, lambda: self._expire_request(signer_id, handler_id)
        )

    def _cancel_removal(self, signer_id: Optional[str], handler_id: str) -> None:
        timer = self._removal_timers.pop((signer_id, handler_id), None)
        if timer is not None:
            timer.cancel()

    def _expire_request(self, signer_id: Optional[str], handler_id: str) -> None:
        self._removal_timers.pop((signer_id, handler_id), None)
        signer = self.registry.get(signer_id)
        if signer is None or handler_id not in signer.requests:
            return
        del signer.requests[handler_id]
        signer.update()

    def add_request(self, request: Union[SignRequest, Mapping[str, Any]]) -> bool:
        """
        Queue a sign request on the current signer.

        Returns:
            True if queued, False if there is no current signer or the
            handler id is already queued
        """
        if not isinstance(request, SignRequest):
            request = SignRequest.from_dict(request)
        logger.info(
            "addRequest %s",
            request.handler_id,
            extra={"event": "session.add_request", "handler_id": request.handler_id},
        )
        signer = self.current_signer
        if signer is None or request.handler_id in signer.requests:
            return False

        self._cancel_removal(signer.id, request.handler_id)
        request.status = RequestStatus.PENDING
        signer.requests[request.handler_id] = request
        signer.update(set_view=DEFAULT_VIEW)
        if isinstance(self.sink, TrayPresenter):
            self.sink.show_tray()
        self.sink.broadcast(MAIN_ACTION_CHANNEL, "setSignerView", DEFAULT_VIEW)
        return True

    def remove_request(self, handler_id: str) -> bool:
        self._cancel_removal(self._current, handler_id)
        signer, request = self._find_request(handler_id)
        if request is None:
            return False
        del signer.requests[handler_id]
        signer.update()
        return True

    def decline_request(self, handler_id: str) -> None:
        logger.info(
            "declineRequest %s",
            handler_id,
            extra={"event": "session.decline_request", "handler_id": handler_id},
        )
        signer, request = self._find_request(handler_id)
        if request is not None:
            request.status = RequestStatus.DECLINED
            request.notice = NOTICE_DECLINED
            signer.update()
        self._schedule_removal(self._current, handler_id, self.decline_grace)

    def set_request_pending(self, request: RequestRef) -> None:
        handler_id = _handler_id_of(request)
        if handler_id is None:
            return
        logger.info(
            "setRequestPending %s",
            handler_id,
            extra={"event": "session.request_pending", "handler_id": handler_id},
        )
        signer, existing = self._find_request(handler_id)
        if existing is None:
            return
        self._cancel_removal(signer.id, handler_id)
        existing.status = RequestStatus.PENDING
        existing.notice = NOTICE_PENDING
        signer.update()

    def set_request_error(self, handler_id: str, err: Any) -> None:
        logger.info(
            "setRequestError %s",
            handler_id,
            extra={"event": "session.request_error", "handler_id": handler_id},
        )
        signer, request = self._find_request(handler_id)
        if request is None:
            return
        request.status = RequestStatus.ERROR
        request.notice = request_error_notice(err)
        signer.update()
        self._schedule_removal(signer.id, handler_id, self.error_grace)

    def set_request_success(self, handler_id: str) -> None:
        logger.info(
            "setRequestSuccess %s",
            handler_id,
            extra={"event": "session.request_success", "handler_id": handler_id},
        )
        signer, request = self._find_request(handler_id)
        if request is None:
            return
        request.status = RequestStatus.SUCCESS
        request.notice = NOTICE_SUCCESS
        signer.update()
        self._schedule_removal(signer.id, handler_id, self.success_grace)


_global_session: Optional[SignerSession] = None


def get_signer_session() -> SignerSession:
    global _global_session
    if _global_session is None:
        from quill.core.notifications import EventBus

        _global_session = SignerSession(registry=get_signer_registry(), sink=EventBus())
    return _global_session
