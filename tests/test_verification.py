"""
Tests for the verification state machine: accept/ready/start/confirm flow,
idempotent transitions, cancellation and bot-initiated requests.
"""

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from conftest import FakeRequest, wait_until
from parley.e2ee.types import DeviceInfo, VerificationPhase
from parley.e2ee.verification import (
    VerificationCallbacks,
    VerificationStateMachine,
    format_emojis,
)

OWN_USER = "@parley:example.org"
OWN_DEVICE = "BOTDEVICE"
PEER = "@alice:example.org"


@pytest.fixture
def callbacks():
    return VerificationCallbacks(
        on_show_sas=MagicMock(return_value=None),
        on_complete=MagicMock(return_value=None),
        on_cancel=MagicMock(return_value=None),
        on_error=MagicMock(return_value=None),
    )


@pytest.fixture
def machine(backend, fast_timings, callbacks):
    sm = VerificationStateMachine(backend, OWN_USER, OWN_DEVICE, fast_timings, callbacks)
    yield sm


class TestPeerInitiatedFlow:

    @pytest.mark.asyncio
    async def test_full_flow_accept_ready_start_confirm_done(self, machine, backend, callbacks, fast_timings):
        req = FakeRequest(PEER, "D1")
        order: list[str] = []

        original_devices = backend.get_user_devices

        async def tracking_devices(user_id, download=False):
            order.append("devices")
            return await original_devices(user_id, download)

        original_start = req.start_verification

        async def tracking_start(method):
            order.append(f"start:{method}")
            return await original_start(method)

        backend.get_user_devices = tracking_devices
        req.start_verification = tracking_start

        machine.handle_verification_request(req)
        await wait_until(lambda: req.verifier is not None and req.verifier.verify_calls == 1)

        assert req.accept_calls == 1
        assert order == ["devices", "start:m.sas.v1"]
        session = machine.get_session(PEER, "D1")
        assert session is not None and session.phase is VerificationPhase.STARTED

        shown_at = time.monotonic()
        req.verifier.show()
        callbacks.on_show_sas.assert_called_once()
        emojis = callbacks.on_show_sas.call_args[0][1]
        assert len(emojis) == 7
        assert emojis[0] == "🐶 Dog"

        assert req.verifier.confirm_calls == 0
        await wait_until(lambda: req.verifier.confirm_calls == 1)
        assert req.verifier.confirmed_at - shown_at >= fast_timings.auto_confirm_seconds * 0.9

        req.set_phase(VerificationPhase.DONE)
        assert machine.get_session(PEER, "D1") is None
        callbacks.on_complete.assert_called_once_with(session)

        # A repeated Done notification is a no-op.
        req.set_phase(VerificationPhase.DONE)
        callbacks.on_complete.assert_called_once()
        await asyncio.sleep(fast_timings.auto_confirm_seconds)
        assert req.verifier.confirm_calls == 1

    @pytest.mark.asyncio
    async def test_ready_via_poll_then_late_notification_starts_sas_once(self, backend, fast_timings, callbacks):
        fast_timings.device_keys_settle_seconds = 0.05
        machine = VerificationStateMachine(backend, OWN_USER, OWN_DEVICE, fast_timings, callbacks)
        req = FakeRequest(PEER, "D1", notify_ready=False)

        machine.handle_verification_request(req)
        session = machine.get_session(PEER, "D1")
        await wait_until(lambda: session.ready_handled)

        # The change notification shows up after the poll already acted.
        assert req.phase is VerificationPhase.READY
        req.notify()
        req.notify()

        await wait_until(lambda: req.start_calls >= 1)
        await asyncio.sleep(0.05)
        assert req.start_calls == 1
        assert backend.names().count("get_user_devices") == 1

    @pytest.mark.asyncio
    async def test_duplicate_ready_notifications_start_sas_once(self, machine, backend):
        req = FakeRequest(PEER, "D1", ready_on_accept=False)
        machine.handle_verification_request(req)
        await wait_until(lambda: req.accept_calls == 1)

        req.set_phase(VerificationPhase.READY)
        req.notify()
        await wait_until(lambda: req.start_calls == 1)
        await asyncio.sleep(0.05)
        assert req.start_calls == 1

    @pytest.mark.asyncio
    async def test_existing_peer_verifier_is_attached_not_restarted(self, machine):
        req = FakeRequest(PEER, "D1")
        verifier = req.attach_peer_verifier()
        machine.handle_verification_request(req)

        await wait_until(lambda: verifier.verify_calls == 1)
        assert req.start_calls == 0
        assert machine.get_session(PEER, "D1").verifier is verifier

    @pytest.mark.asyncio
    async def test_request_already_started_is_attached(self, machine):
        req = FakeRequest(PEER, "D1", phase=VerificationPhase.STARTED)
        verifier = req.attach_peer_verifier()
        machine.handle_verification_request(req)

        await wait_until(lambda: verifier.verify_calls == 1)
        assert req.accept_calls == 0

    @pytest.mark.asyncio
    async def test_terminal_request_is_ignored(self, machine):
        req = FakeRequest(PEER, "D1", phase=VerificationPhase.CANCELLED)
        machine.handle_verification_request(req)
        assert machine.get_session(PEER, "D1") is None
        assert req.listener_count == 0


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_before_confirm_skips_confirm(self, machine, callbacks, fast_timings):
        req = FakeRequest(PEER, "D1")
        machine.handle_verification_request(req)
        await wait_until(lambda: req.verifier is not None and req.verifier.verify_calls == 1)
        session = machine.get_session(PEER, "D1")

        req.verifier.show()
        req.verifier.fire_cancel("m.mismatched_sas")
        req.set_phase(VerificationPhase.CANCELLED, "m.mismatched_sas")

        await asyncio.sleep(fast_timings.auto_confirm_seconds * 2)
        assert req.verifier.confirm_calls == 0
        callbacks.on_cancel.assert_called_once_with(session, "m.mismatched_sas")
        callbacks.on_complete.assert_not_called()
        assert machine.get_session(PEER, "D1") is None

    @pytest.mark.asyncio
    async def test_cancel_frees_key_for_new_request(self, machine):
        first = FakeRequest(PEER, "D1", ready_on_accept=False, transaction_id="a")
        machine.handle_verification_request(first)
        first.set_phase(VerificationPhase.CANCELLED, "m.timeout")
        assert machine.get_session(PEER, "D1") is None

        second = FakeRequest(PEER, "D1", ready_on_accept=False, transaction_id="b")
        machine.handle_verification_request(second)
        assert machine.get_session(PEER, "D1").request is second
        assert machine.active_count == 1

    @pytest.mark.asyncio
    async def test_new_request_replaces_active_session(self, machine, callbacks):
        first = FakeRequest(PEER, "D1", ready_on_accept=False, transaction_id="a")
        machine.handle_verification_request(first)
        await wait_until(lambda: first.accept_calls == 1)

        second = FakeRequest(PEER, "D1", ready_on_accept=False, transaction_id="b")
        machine.handle_verification_request(second)
        assert machine.active_count == 1
        assert machine.get_verification_requests(PEER) == [second]
        assert first.listener_count == 0

        # A stale Done for the replaced request must not remove the new one.
        first.set_phase(VerificationPhase.DONE)
        assert machine.get_session(PEER, "D1").request is second
        callbacks.on_complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_replaced_session_does_not_auto_confirm(self, machine, fast_timings):
        first = FakeRequest(PEER, "D1", transaction_id="a")
        machine.handle_verification_request(first)
        await wait_until(lambda: first.verifier is not None)
        first.verifier.show()

        second = FakeRequest(PEER, "D1", ready_on_accept=False, transaction_id="b")
        machine.handle_verification_request(second)
        await asyncio.sleep(fast_timings.auto_confirm_seconds * 3)

        assert first.verifier.confirm_calls == 0
        assert machine.get_session(PEER, "D1").request is second

    @pytest.mark.asyncio
    async def test_accept_failure_is_reported(self, machine, callbacks):
        req = FakeRequest(PEER, "D1")
        req.accept_error = RuntimeError("network down")
        machine.handle_verification_request(req)

        await wait_until(lambda: callbacks.on_error.called)
        session, exc = callbacks.on_error.call_args[0]
        assert session.device_id == "D1"
        assert isinstance(exc, RuntimeError)

    @pytest.mark.asyncio
    async def test_confirm_failure_is_reported(self, machine, callbacks):
        req = FakeRequest(PEER, "D1")
        machine.handle_verification_request(req)
        await wait_until(lambda: req.verifier is not None)
        req.verifier.confirm_error = RuntimeError("mac send failed")
        req.verifier.show()

        await wait_until(lambda: callbacks.on_error.called)
        assert req.verifier.confirm_calls == 1


class TestBotInitiated:

    @pytest.mark.asyncio
    async def test_discovery_retries_until_devices_appear(self, machine, backend):
        devices = {
            "D1": DeviceInfo(PEER, "D1"),
            "D2": DeviceInfo(PEER, "D2"),
            OWN_DEVICE: DeviceInfo(PEER, OWN_DEVICE),
        }
        backend.device_responses = [{}, {}, {}, {}, devices]

        requests = await machine.verify_user_devices(PEER)

        assert backend.names().count("get_user_devices") == 5
        assert sorted(r.other_device_id for r in requests) == ["D1", "D2"]
        assert ("request_device_verification", PEER, OWN_DEVICE) not in backend.calls

    @pytest.mark.asyncio
    async def test_discovery_gives_up_after_attempts(self, machine, backend):
        requests = await machine.verify_user_devices(PEER)
        assert requests == []
        assert backend.names().count("get_user_devices") == 5
        assert "request_device_verification" not in backend.names()

    @pytest.mark.asyncio
    async def test_verified_devices_are_skipped(self, machine, backend):
        backend.devices[PEER] = {
            "D1": DeviceInfo(PEER, "D1", verified=True),
            "D2": DeviceInfo(PEER, "D2"),
        }
        requests = await machine.verify_user_devices(PEER)
        assert [r.other_device_id for r in requests] == ["D2"]

    @pytest.mark.asyncio
    async def test_direct_device_skips_discovery(self, machine, backend):
        requests = await machine.verify_user_devices(PEER, "D9")
        assert [r.other_device_id for r in requests] == ["D9"]
        assert "get_user_devices" not in backend.names()

    @pytest.mark.asyncio
    async def test_direct_own_device_is_noop(self, machine, backend):
        assert await machine.verify_user_devices(OWN_USER, OWN_DEVICE) == []
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_request_verification_returns_existing_handle(self, machine, backend):
        first = await machine.request_verification(PEER, "D1")
        second = await machine.request_verification(PEER, "D1")
        assert first is second
        assert backend.names().count("request_device_verification") == 1

    @pytest.mark.asyncio
    async def test_peer_ready_drives_sas(self, machine, backend, callbacks):
        request = await machine.request_verification(PEER, "D1")
        assert machine.get_session(PEER, "D1").initiated_by_us

        request.set_phase(VerificationPhase.READY)
        await wait_until(lambda: request.verifier is not None)
        request.verifier.show()
        await wait_until(lambda: request.verifier.confirm_calls == 1)
        request.set_phase(VerificationPhase.DONE)
        callbacks.on_complete.assert_called_once()

    @pytest.mark.asyncio
    async def test_get_verification_requests_filters_by_user(self, machine):
        await machine.request_verification(PEER, "D1")
        await machine.request_verification("@bob:example.org", "B1")
        assert [r.other_device_id for r in machine.get_verification_requests(PEER)] == ["D1"]


def test_format_emojis():
    assert format_emojis([("🐶", "Dog"), ("🔑", "Key")]) == ["🐶 Dog", "🔑 Key"]
