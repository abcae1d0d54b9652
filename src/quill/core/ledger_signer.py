"""
Ledger hardware signer for Quill.

Talks to the Ledger Ethereum app over HID using its standard APDUs. Private
keys never leave the device: only addresses and signatures come back.

Dependencies:
- ledgerblue (for HID/APDU), imported when the device is first opened
- eth_account for transaction serialization
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from eth_account._utils.legacy_transactions import (
    encode_transaction,
    serializable_unsigned_transaction_from_dict,
)
from eth_utils import to_checksum_address
import rlp

from quill.core import config
from quill.core.signer_backend import Signer, SignerType
from quill.core.signer_exceptions import BackendError, DeviceErrorKind

logger = logging.getLogger(__name__)

# Ethereum app instructions
_CLA = 0xE0
_INS_GET_ADDRESS = 0x02
_INS_SIGN_TX = 0x04
_INS_SIGN_PERSONAL = 0x08
_MAX_CHUNK = 255

_STATUS_TEXT = {
    0x6985: "Condition of use not satisfied (denied by the user?)",
    0x6A80: "Invalid data received",
    0x6B0C: "Locked device",
    0x6D00: "INS not supported",
    0x6E00: "CLA not supported",
}

_STATUS_KIND = {
    0x6985: DeviceErrorKind.USER_DENIED,
    0x6A80: DeviceErrorKind.CONTRACT_DATA_DISABLED,
}


def parse_bip32_path(path: str) -> bytes:
    if not path.startswith("m/"):
        raise ValueError("BIP32 path must start with m/")
    elements = path[2:].split("/")
    result = len(elements).to_bytes(1, "big")
    for elt in elements:
        hardened = elt.endswith("'")
        index = int(elt[:-1] if hardened else elt)
        if index < 0 or index >= 0x80000000:
            raise ValueError("Invalid index in BIP32 path")
        if hardened:
            index |= 0x80000000
        result += index.to_bytes(4, "big")
    return result


def classify_device_error(exc: Exception, signer_id: Optional[str] = None) -> BackendError:
    """
    Turn a transport exception into a ``BackendError`` with a structured kind.

    ledgerblue raises ``CommException`` carrying the APDU status word in ``sw``.
    """
    if isinstance(exc, BackendError):
        return exc
    sw = getattr(exc, "sw", None)
    if sw is None:
        return BackendError(str(exc) or type(exc).__name__, signer_id=signer_id)
    text = _STATUS_TEXT.get(sw, "Unknown error")
    return BackendError(
        f"Ledger device: {text} (0x{sw:04x})",
        kind=_STATUS_KIND.get(sw, DeviceErrorKind.UNKNOWN),
        signer_id=signer_id,
        details={"sw": sw},
    )


def _apdu(ins: int, p1: int, p2: int, data: bytes) -> bytes:
    return bytes([_CLA, ins, p1, p2, len(data)]) + data


def _split_vrs(result: bytes) -> tuple[int, int, int]:
    return result[0], int.from_bytes(result[1:33], "big"), int.from_bytes(result[33:65], "big")


class LedgerSigner(Signer):
    """Signer driving a Ledger device running the Ethereum app."""

    type = SignerType.LEDGER

    def __init__(
        self,
        signer_id: str,
        dongle: object | None = None,
        derivation_path: str | None = None,
        account_count: int | None = None,
    ):
        super().__init__(signer_id)
        self.derivation_path = (derivation_path or config.LEDGER_DERIVATION_PATH).rstrip("/")
        self.account_count = account_count or config.LEDGER_ACCOUNTS
        self._dongle = dongle
        self._background: set[asyncio.Task] = set()

    def connect(self) -> object:
        if self._dongle is None:
            try:
                from ledgerblue.comm import getDongle
            except ImportError as exc:  # pragma: no cover - optional dependency
                raise ImportError("Ledger support requires ledgerblue. pip install ledgerblue") from exc
            self._dongle = getDongle(False)
        return self._dongle

    def close(self) -> None:
        if self._dongle is not None and hasattr(self._dongle, "close"):
            self._dongle.close()
        self._dongle = None

    def _account_path(self, index: int) -> bytes:
        return parse_bip32_path(f"{self.derivation_path}/{index}")

    def _exchange(self, apdu: bytes) -> bytes:
        try:
            return bytes(self.connect().exchange(apdu))
        except Exception as exc:
            raise classify_device_error(exc, self.id) from exc

    def _read_address(self, index: int, display: bool = False) -> str:
        path = self._account_path(index)
        result = self._exchange(_apdu(_INS_GET_ADDRESS, 0x01 if display else 0x00, 0x00, path))
        pub_len = result[0]
        addr_len = result[1 + pub_len]
        address = result[2 + pub_len : 2 + pub_len + addr_len].decode("ascii")
        return to_checksum_address("0x" + address)

    def _sign_chunked(self, ins: int, first: bytes, rest: bytes) -> bytes:
        """Send ``first + rest`` split into APDU-sized chunks; return the final response."""
        data = first + rest
        chunks = [data[i : i + _MAX_CHUNK] for i in range(0, len(data), _MAX_CHUNK)] or [b""]
        result = b""
        for position, chunk in enumerate(chunks):
            result = self._exchange(_apdu(ins, 0x00 if position == 0 else 0x80, 0x00, chunk))
        return result

    def read_accounts(self) -> list[str]:
        """Read ``account_count`` addresses from the device; blocking."""
        return [self._read_address(i) for i in range(self.account_count)]

    async def open(self) -> list[str]:
        """Load accounts from the device and mark the signer ready."""
        try:
            accounts = await asyncio.to_thread(self.read_accounts)
        except BackendError as exc:
            self.status = "Invalid sequence"
            logger.warning(
                "Ledger account load failed: %s",
                exc.message,
                extra={"event": "ledger.load_failed", "signer_id": self.id},
            )
            self.update()
            raise
        self.accounts = accounts
        if self.index >= len(accounts):
            self.index = 0
        self.status = "ok"
        logger.info(
            "Ledger accounts loaded",
            extra={"event": "ledger.loaded", "signer_id": self.id, "accounts": len(accounts)},
        )
        self.update()
        return accounts

    def verify_address(self, display: bool = True) -> None:
        """Show the selected address on the device; result is only logged."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._verify(display)
            return
        task = loop.create_task(asyncio.to_thread(self._verify, display))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _verify(self, display: bool) -> None:
        try:
            address = self._read_address(self.index, display=display)
        except BackendError as exc:
            logger.warning(
                "Ledger address verification failed: %s",
                exc.message,
                extra={"event": "ledger.verify_failed", "signer_id": self.id},
            )
            return
        matched = bool(self.accounts) and address.lower() == self.accounts[self.index].lower()
        logger.info(
            "Ledger address verification finished",
            extra={"event": "ledger.verify", "signer_id": self.id, "matched": matched},
        )

    async def sign_personal(self, message: str) -> str:
        if message.startswith("0x"):
            payload = bytes.fromhex(message[2:])
        else:
            payload = message.encode("utf-8")
        path = self._account_path(self.index)
        first = path + len(payload).to_bytes(4, "big")
        result = await asyncio.to_thread(self._sign_chunked, _INS_SIGN_PERSONAL, first, payload)
        v, r, s = _split_vrs(result)
        return "0x" + r.to_bytes(32, "big").hex() + s.to_bytes(32, "big").hex() + f"{v:02x}"

    async def sign_transaction(self, raw_tx: dict[str, Any]) -> str:
        tx = dict(raw_tx)
        tx.pop("from", None)
        if tx.get("type") not in (None, 0, "0x0"):
            raise BackendError("Ledger signer only supports legacy transactions", signer_id=self.id)
        tx.pop("type", None)
        try:
            unsigned = serializable_unsigned_transaction_from_dict(tx)
        except (ValueError, TypeError, KeyError) as exc:
            raise BackendError(f"Invalid transaction: {exc}", signer_id=self.id) from exc
        encoded = rlp.encode(unsigned)
        result = await asyncio.to_thread(
            self._sign_chunked, _INS_SIGN_TX, self._account_path(self.index), encoded
        )
        v, r, s = _split_vrs(result)
        chain_id = tx.get("chainId")
        if chain_id:
            base = chain_id * 2 + 35
            # the device only returns the low byte of v
            if base + 1 > 255:
                v = base + ((v - base % 256) % 256)
        signed = encode_transaction(unsigned, vrs=(v, r, s))
        return "0x" + bytes(signed).hex()
