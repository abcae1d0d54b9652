"""
Software ("hot") signer for development.

Security Note:
    HotSigner keeps private keys in process memory, which defeats the point of
    a hardware signer. It is only registered when ``QUILL_ALLOW_HOT_SIGNER`` is
    set or ``QUILL_ENV=development``.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from eth_account import Account
from eth_account.messages import encode_defunct

from quill.core import config
from quill.core.signer_backend import Signer, SignerType
from quill.core.signer_exceptions import BackendError

logger = logging.getLogger(__name__)

# secp256k1 group order
_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)


def _normalize_private_value(value: int) -> int:
    """Normalize private key value to valid range."""
    normalized = value % _CURVE_ORDER
    if normalized == 0:
        normalized = 1
    return normalized


def derive_private_key(seed: bytes, index: int) -> bytes:
    """Derive the 32-byte private key for account ``index`` from ``seed``."""
    material = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"quill-hot-signer",
        info=f"account/{index}".encode(),
    ).derive(seed)
    value = _normalize_private_value(int.from_bytes(material, "big"))
    return value.to_bytes(32, "big")


def _encode_message(message: str):
    if message.startswith("0x"):
        return encode_defunct(hexstr=message)
    return encode_defunct(text=message)


class HotSigner(Signer):
    """Signer backed by deterministic in-memory keys."""

    type = SignerType.HOT

    def __init__(
        self,
        seed: str | bytes | None = None,
        account_count: int | None = None,
        signer_id: str | None = None,
    ):
        seed = config.HOT_SIGNER_SEED if seed is None else seed
        seed_bytes = seed.encode() if isinstance(seed, str) else seed
        count = account_count or config.HOT_SIGNER_ACCOUNTS
        if signer_id is None:
            signer_id = "hot-" + hashlib.sha256(seed_bytes).hexdigest()[:12]
        super().__init__(signer_id)

        self._keys: list[bytes] = [derive_private_key(seed_bytes, i) for i in range(count)]
        self.accounts = [Account.from_key(key).address for key in self._keys]
        self.status = "ok"

        logger.warning(
            "HotSigner initialized - keys held in memory",
            extra={"event": "hot_signer.init", "signer_id": self.id, "accounts": count},
        )

    def _selected_key(self) -> bytes:
        return self._keys[self.index]

    async def sign_personal(self, message: str) -> str:
        try:
            signed = Account.sign_message(_encode_message(message), private_key=self._selected_key())
        except (ValueError, TypeError) as exc:
            raise BackendError(str(exc), signer_id=self.id) from exc
        logger.debug(
            "Hot signer signed personal message",
            extra={"event": "hot_signer.sign_personal", "signer_id": self.id},
        )
        return "0x" + bytes(signed.signature).hex()

    async def sign_transaction(self, raw_tx: dict[str, Any]) -> str:
        tx = dict(raw_tx)
        tx.pop("from", None)
        try:
            signed = Account.sign_transaction(tx, self._selected_key())
        except (ValueError, TypeError, KeyError) as exc:
            raise BackendError(f"Invalid transaction: {exc}", signer_id=self.id) from exc
        logger.debug(
            "Hot signer signed transaction",
            extra={"event": "hot_signer.sign_transaction", "signer_id": self.id},
        )
        return "0x" + bytes(signed.raw_transaction).hex()
