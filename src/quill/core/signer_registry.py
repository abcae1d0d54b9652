"""
Registry of connected signer backends.

Discovery collaborators (USB watchers, the development hot signer) register
and unregister backends here; the session looks them up by id.
"""

from __future__ import annotations

import logging
from typing import Iterator, Protocol, runtime_checkable

from quill.core import config
from quill.core.signer_backend import SignerBackend

logger = logging.getLogger(__name__)


@runtime_checkable
class SignerDiscovery(Protocol):
    """Something that finds signers and keeps the registry in sync."""

    def start(self, registry: "SignerRegistry") -> None:
        ...

    def stop(self) -> None:
        ...


class SignerRegistry:
    """Mapping from signer id to backend instance."""

    def __init__(self):
        self._signers: dict[str, SignerBackend] = {}
        self._discoveries: list[SignerDiscovery] = []
        self._started = False

    def register(self, signer: SignerBackend) -> None:
        if signer.id in self._signers and self._signers[signer.id] is not signer:
            logger.info(
                "Replacing registered signer",
                extra={"event": "registry.replace", "signer_id": signer.id},
            )
        self._signers[signer.id] = signer
        logger.info(
            "Signer registered",
            extra={"event": "registry.register", "signer_id": signer.id, "type": signer.type.value},
        )

    def unregister(self, signer_id: str) -> SignerBackend | None:
        signer = self._signers.pop(signer_id, None)
        if signer is not None:
            logger.info(
                "Signer unregistered",
                extra={"event": "registry.unregister", "signer_id": signer_id},
            )
        return signer

    def get(self, signer_id: str | None) -> SignerBackend | None:
        if signer_id is None:
            return None
        return self._signers.get(signer_id)

    def ids(self) -> list[str]:
        return list(self._signers.keys())

    def __contains__(self, signer_id: object) -> bool:
        return signer_id in self._signers

    def __iter__(self) -> Iterator[SignerBackend]:
        return iter(list(self._signers.values()))

    def __len__(self) -> int:
        return len(self._signers)

    def add_discovery(self, discovery: SignerDiscovery) -> None:
        self._discoveries.append(discovery)
        if self._started:
            discovery.start(self)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for discovery in self._discoveries:
            discovery.start(self)

    def close(self) -> None:
        """Stop every discovery collaborator."""
        for discovery in self._discoveries:
            try:
                discovery.stop()
            except Exception as exc:
                logger.error(
                    "Failed to stop signer discovery: %s",
                    exc,
                    exc_info=True,
                    extra={"event": "registry.discovery_stop_failed"},
                )
        self._started = False


class HotSignerDiscovery:
    """Registers the in-memory development signer when it is allowed."""

    def __init__(self, enabled: bool | None = None, seed: str | None = None, account_count: int | None = None):
        self.enabled = config.ALLOW_HOT_SIGNER if enabled is None else enabled
        self.seed = seed
        self.account_count = account_count
        self._signer_id: str | None = None
        self._registry: SignerRegistry | None = None

    def start(self, registry: SignerRegistry) -> None:
        if not self.enabled:
            return
        from quill.core.hot_signer import HotSigner

        signer = HotSigner(seed=self.seed, account_count=self.account_count)
        registry.register(signer)
        self._signer_id = signer.id
        self._registry = registry

    def stop(self) -> None:
        if self._registry is not None and self._signer_id is not None:
            self._registry.unregister(self._signer_id)
        self._signer_id = None
        self._registry = None


_global_registry: SignerRegistry | None = None


def get_signer_registry() -> SignerRegistry:
    global _global_registry
    if _global_registry is None:
        _global_registry = SignerRegistry()
        _global_registry.add_discovery(HotSignerDiscovery())
    return _global_registry
