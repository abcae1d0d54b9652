import pytest

from quill.core.notifications import EventBus
from quill.core.scheduler import ManualScheduler
from quill.core.signer_registry import SignerRegistry
from quill.core.signer_session import SignerSession
from quill_tests.fakes import FakeSigner


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry():
    return SignerRegistry()


@pytest.fixture
def signer_a(registry):
    signer = FakeSigner("A")
    registry.register(signer)
    return signer


@pytest.fixture
def session(registry, bus, scheduler):
    return SignerSession(
        registry=registry,
        sink=bus,
        scheduler=scheduler,
        decline_grace=1.8,
        success_grace=1.8,
        error_grace=3.3,
    )
