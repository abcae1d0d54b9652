"""
Tests for the sign request lifecycle driven by SignerSession.

Time is simulated with ManualScheduler; grace periods are 1.8s for declined
and successful requests and 3.3s for failed ones.
"""

import asyncio

import pytest

from quill.core.scheduler import LoopScheduler
from quill.core.signer_backend import RequestStatus, SignRequest
from quill.core.signer_exceptions import BackendError, DeviceErrorKind
from quill.core.signer_session import SignerSession, request_error_notice
from quill_tests.fakes import FakeSigner


@pytest.fixture
def selected(session, signer_a):
    """Session with signer A current (set_index on FakeSigner never suspends)."""
    asyncio.run(session.select_signer("A"))
    signer_a.updates.clear()
    return session


class TestAddRequest:
    def test_add_without_current_signer_is_noop(self, session, signer_a, bus):
        assert session.add_request(SignRequest("r1")) is False
        assert signer_a.requests == {}
        assert bus.events() == []

    def test_add_marks_pending_and_switches_view(self, selected, signer_a, bus):
        assert selected.add_request(SignRequest("r1", method="personal_sign")) is True

        request = signer_a.requests["r1"]
        assert request.status == RequestStatus.PENDING
        assert signer_a.updates[-1][1] == "default"
        assert bus.tray_requests == 1
        last = bus.events("main:action")[-1]
        assert (last.event, last.payload) == ("setSignerView", "default")

    def test_add_is_idempotent(self, selected, signer_a):
        first = SignRequest("r1", payload={"n": 1})
        assert selected.add_request(first) is True
        assert selected.add_request(SignRequest("r1", payload={"n": 2})) is False

        assert len(signer_a.requests) == 1
        assert signer_a.requests["r1"] is first

    def test_add_accepts_rpc_mapping(self, selected, signer_a):
        selected.add_request({"handlerId": "r9", "method": "eth_sendTransaction", "origin": "dapp.example"})

        request = selected.get_request("r9")
        assert request.method == "eth_sendTransaction"
        assert request.origin == "dapp.example"
        assert request.to_dict()["status"] == "pending"


class TestDecline:
    def test_decline_then_removed_after_grace(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))

        selected.decline_request("r1")

        request = signer_a.requests["r1"]
        assert request.status == RequestStatus.DECLINED
        assert request.notice == "Signature Declined"
        scheduler.advance(1.79)
        assert "r1" in signer_a.requests
        scheduler.advance(0.02)
        assert "r1" not in signer_a.requests

    def test_decline_unknown_request_schedules_harmless_removal(self, selected, scheduler):
        selected.decline_request("ghost")
        assert scheduler.pending() == 1
        scheduler.advance(2)
        assert scheduler.pending() == 0

    def test_decline_without_current_signer(self, session, scheduler):
        session.decline_request("r1")
        scheduler.advance(2)


class TestSuccess:
    def test_success_visible_until_grace_elapses(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))

        selected.set_request_success("r1")

        assert signer_a.requests["r1"].status == RequestStatus.SUCCESS
        assert signer_a.requests["r1"].notice == "Signature Succesful"
        scheduler.advance(1.0)
        assert selected.get_request("r1").status == RequestStatus.SUCCESS
        scheduler.advance(0.79)
        assert "r1" in signer_a.requests
        scheduler.advance(0.02)
        assert "r1" not in signer_a.requests

    def test_success_replaces_earlier_removal_timer(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))
        selected.decline_request("r1")
        scheduler.advance(1.0)

        selected.set_request_success("r1")
        scheduler.advance(1.0)

        assert "r1" in signer_a.requests
        scheduler.advance(0.81)
        assert "r1" not in signer_a.requests

    def test_success_for_missing_request_is_noop(self, selected, scheduler):
        selected.set_request_success("ghost")
        assert scheduler.pending() == 0


class TestError:
    def test_error_uses_longer_grace(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))

        selected.set_request_error("r1", ValueError("nonce too low"))

        request = signer_a.requests["r1"]
        assert request.status == RequestStatus.ERROR
        assert request.notice == "nonce too low"
        scheduler.advance(3.29)
        assert "r1" in signer_a.requests
        scheduler.advance(0.02)
        assert "r1" not in signer_a.requests

    def test_ledger_contract_data_message(self, selected, signer_a):
        selected.add_request(SignRequest("r1"))
        selected.set_request_error("r1", Exception("Ledger device: Invalid data received (0x6a80)"))
        assert signer_a.requests["r1"].notice == "Ledger Contract Data = No"

    def test_error_for_missing_request_is_noop(self, selected, scheduler):
        selected.set_request_error("ghost", Exception("boom"))
        assert scheduler.pending() == 0


class TestErrorNotice:
    def test_structured_kind_wins(self):
        err = BackendError("firmware said something new", kind=DeviceErrorKind.USER_DENIED)
        assert request_error_notice(err) == "Ledger Signature Declined"

    def test_contract_data_kind(self):
        err = BackendError("whatever", kind=DeviceErrorKind.CONTRACT_DATA_DISABLED)
        assert request_error_notice(err) == "Ledger Contract Data = No"

    def test_legacy_denied_message(self):
        err = Exception("Ledger device: Condition of use not satisfied (denied by the user?) (0x6985)")
        assert request_error_notice(err) == "Ledger Signature Declined"

    def test_arbitrary_message(self):
        assert request_error_notice(BackendError("gas required exceeds allowance")) == "gas required exceeds allowance"

    def test_plain_string(self):
        assert request_error_notice("rejected by policy") == "rejected by policy"

    @pytest.mark.parametrize("err", [None, Exception(), 42, object()])
    def test_unknown(self, err):
        assert request_error_notice(err) == "Unknown Error"


class TestPendingAndRemove:
    def test_pending_resets_status_and_notice(self, selected, signer_a):
        selected.add_request(SignRequest("r1"))
        selected.set_request_error("r1", "device busy")

        selected.set_request_pending(SignRequest("r1"))

        assert signer_a.requests["r1"].status == RequestStatus.PENDING
        assert signer_a.requests["r1"].notice == "Signature Pending"

    def test_pending_cancels_scheduled_removal(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))
        selected.set_request_error("r1", "device busy")
        selected.set_request_pending("r1")

        scheduler.advance(10)

        assert "r1" in signer_a.requests

    def test_pending_for_missing_request_is_noop(self, selected, signer_a):
        selected.set_request_pending({"handlerId": "ghost"})
        assert signer_a.requests == {}

    def test_pending_without_handler_id_is_noop(self, selected, signer_a):
        selected.add_request(SignRequest("r1"))
        selected.set_request_error("r1", "device busy")

        selected.set_request_pending({"method": "personal_sign"})

        assert signer_a.requests["r1"].status == RequestStatus.ERROR

    def test_remove_is_immediate(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))
        selected.set_request_success("r1")

        assert selected.remove_request("r1") is True

        assert "r1" not in signer_a.requests
        assert scheduler.pending() == 0

    def test_remove_missing_request(self, selected):
        assert selected.remove_request("ghost") is False

    def test_transitions_observed_in_order(self, selected, signer_a):
        selected.add_request(SignRequest("r1"))
        selected.set_request_pending("r1")
        selected.set_request_success("r1")
        selected.remove_request("r1")

        statuses = [requests.get("r1", {}).get("status") for requests, _ in signer_a.updates]
        assert statuses == ["pending", "pending", "success", None]


class TestClearSigner:
    def test_requests_cleared_one_turn_later(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))
        selected.add_request(SignRequest("r2"))

        selected.clear_signer()

        assert set(signer_a.requests) == {"r1", "r2"}
        scheduler.advance(0)
        assert signer_a.requests == {}
        assert signer_a.updates[-1] == ({}, None)

    def test_unset_listeners_see_old_requests(self, selected, signer_a, bus, scheduler):
        seen = []
        bus.subscribe("main:action", lambda event, payload: seen.append((event, set(signer_a.requests))))
        selected.add_request(SignRequest("r1"))

        selected.clear_signer()
        scheduler.advance(0)

        assert seen[-1] == ("unsetSigner", {"r1"})

    def test_clear_cancels_pending_removals(self, selected, signer_a, scheduler):
        selected.add_request(SignRequest("r1"))
        selected.set_request_success("r1")

        selected.clear_signer()
        scheduler.advance(0)

        assert scheduler.pending() == 0

    def test_lifecycle_calls_after_clear_are_noops(self, selected, signer_a):
        selected.add_request(SignRequest("r1"))
        selected.clear_signer()

        selected.set_request_success("r1")
        selected.set_request_error("r1", "late")

        assert signer_a.requests["r1"].status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_loop_scheduler_defers_clear(self, registry, bus):
        signer = FakeSigner("L")
        registry.register(signer)
        session = SignerSession(registry=registry, sink=bus, scheduler=LoopScheduler())
        await session.select_signer("L")
        session.add_request(SignRequest("r1"))

        session.clear_signer()
        assert "r1" in signer.requests

        await asyncio.sleep(0)
        assert signer.requests == {}


def test_decline_scenario(session, registry, scheduler):
    signer = FakeSigner("A", accounts=["0xAA00000000000000000000000000000000000000", "0xBB00000000000000000000000000000000000000"])
    registry.register(signer)

    summary = asyncio.run(session.select_signer("A"))
    assert summary.id == "A"

    session.add_request({"handlerId": "r1"})
    assert list(session.list_signers()) == ["A"]
    assert session.get_request("r1").status == RequestStatus.PENDING

    session.decline_request("r1")
    assert session.get_request("r1").notice == "Signature Declined"

    scheduler.advance(1.81)
    assert session.get_request("r1") is None


class TestSignerSwitch:
    @pytest.fixture
    def signer_b(self, registry):
        signer = FakeSigner("B")
        registry.register(signer)
        return signer

    def test_old_timer_spares_same_id_on_new_signer(self, selected, signer_a, signer_b, scheduler):
        selected.add_request({"handlerId": "h"})
        selected.set_request_success("h")
        asyncio.run(selected.select_signer("B"))
        selected.add_request({"handlerId": "h"})

        scheduler.advance(1.9)

        assert "h" not in signer_a.requests
        assert signer_b.requests["h"].status == RequestStatus.PENDING

    def test_new_signer_success_uses_its_own_timer(self, selected, signer_a, signer_b, scheduler):
        selected.add_request({"handlerId": "h"})
        selected.set_request_success("h")
        scheduler.advance(1.0)
        asyncio.run(selected.select_signer("B"))
        selected.add_request({"handlerId": "h"})
        selected.set_request_success("h")

        scheduler.advance(1.0)
        assert "h" in signer_b.requests
        scheduler.advance(0.81)
        assert "h" not in signer_b.requests

    def test_readded_request_is_not_removed_by_stale_decline(self, selected, signer_a, scheduler):
        selected.decline_request("h")
        selected.add_request({"handlerId": "h"})

        scheduler.advance(1.9)

        assert signer_a.requests["h"].status == RequestStatus.PENDING
