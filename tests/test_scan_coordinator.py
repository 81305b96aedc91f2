import asyncio

import httpx
import pytest

from app.schemas.scanner import ScanMode, ScanOutcomeKind, ScanState
from app.schemas.transaction import BorrowTransaction, ProductRef
from app.services.platform_client import PlatformAPIError, PlatformNetworkError
from app.services.resolver import (
    TransactionIdNotAllowedError,
    TransactionNotFoundError,
    TransactionResolver,
    extract_token,
)
from app.services.return_protocol import ReturnFlow
from app.services.scan_coordinator import ScanCoordinator, ScannerPermissionError
from tests.conftest import FakeDevice, PENDING_TXN_ID, RETURNED_TXN_ID, make_transaction


def borrow_transaction(serial="SN-001"):
    return BorrowTransaction(
        id=PENDING_TXN_ID,
        borrowTransactionType="borrow",
        status="pending",
        product=ProductRef(serialNumber=serial),
    )


class StubResolver:
    """Resolver double; `gate` holds a lookup open until the test releases it."""

    def __init__(self, borrow=None, error=None, gate=None):
        self.borrow = borrow or borrow_transaction()
        self.error = error
        self.gate = gate
        self.lookups = []

    def extract_token(self, raw):
        return extract_token(raw)

    async def find_pending_borrow(self, token):
        self.lookups.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.borrow

    async def resolve_return_serial(self, token):
        self.lookups.append(token)
        if self.error is not None:
            raise self.error
        return token


@pytest.fixture
def return_flow(platform_client):
    return ReturnFlow(platform_client)


def make_coordinator(resolver, return_flow, device):
    coordinator = ScanCoordinator(resolver, return_flow, device)
    coordinator.open(ScanMode.BORROW)
    return coordinator


class TestLifecycle:

    def test_open_starts_camera(self, return_flow, device):
        coordinator = ScanCoordinator(StubResolver(), return_flow, device)

        status = coordinator.open(ScanMode.RETURN)

        assert status.state == ScanState.OPEN
        assert status.mode == ScanMode.RETURN
        assert device.calls == ["start"]

    def test_permission_denied(self, return_flow):
        coordinator = ScanCoordinator(StubResolver(), return_flow, FakeDevice(permission=False))

        with pytest.raises(ScannerPermissionError):
            coordinator.open(ScanMode.BORROW)
        assert coordinator.state == ScanState.CLOSED

    def test_permission_refused_by_client(self, return_flow, device):
        coordinator = ScanCoordinator(StubResolver(), return_flow, device)

        with pytest.raises(ScannerPermissionError):
            coordinator.open(ScanMode.BORROW, permission_granted=False)
        assert device.calls == []

    def test_auto_open_suppressed_after_user_close(self, return_flow, device):
        coordinator = make_coordinator(StubResolver(), return_flow, device)
        coordinator.close()

        assert coordinator.open(ScanMode.BORROW, auto=True).state == ScanState.DISMISSED
        assert coordinator.open(ScanMode.BORROW).state == ScanState.OPEN

    def test_close_turns_torch_off_before_stopping(self, return_flow, device):
        coordinator = make_coordinator(StubResolver(), return_flow, device)
        coordinator.set_torch(True)

        status = coordinator.close()

        assert status.state == ScanState.DISMISSED
        assert status.torchOn is False
        assert device.calls == ["start", "torch_on", "torch_off", "stop"]

    def test_torch_ignored_when_closed(self, return_flow, device):
        coordinator = ScanCoordinator(StubResolver(), return_flow, device)

        assert coordinator.set_torch(True).torchOn is False
        assert device.calls == []


class TestDecode:

    def test_borrow_scan_closes_scanner_and_keeps_request(self, return_flow, device):
        coordinator = make_coordinator(StubResolver(), return_flow, device)
        coordinator.set_torch(True)

        outcome = asyncio.run(coordinator.handle_decode("back2use://item/SN-001"))

        assert outcome.kind == ScanOutcomeKind.BORROW_REQUEST
        assert outcome.token == "SN-001"
        assert coordinator.state == ScanState.CLOSED
        assert coordinator.pending_borrow.id == PENDING_TXN_ID
        # feedback first, camera released before the request is shown
        assert device.calls == ["start", "torch_on", "feedback", "torch_off", "stop"]

    def test_second_decode_while_processing_is_dropped(self, return_flow, device):
        async def scenario():
            gate = asyncio.Event()
            resolver = StubResolver(gate=gate)
            coordinator = make_coordinator(resolver, return_flow, device)

            first = asyncio.ensure_future(coordinator.handle_decode("SN-001"))
            await asyncio.sleep(0)
            assert coordinator.state == ScanState.PROCESSING

            second = await coordinator.handle_decode("SN-001")
            gate.set()
            return resolver, coordinator, await first, second

        resolver, coordinator, first, second = asyncio.run(scenario())

        assert second is None
        assert first.kind == ScanOutcomeKind.BORROW_REQUEST
        assert resolver.lookups == ["SN-001"]
        assert device.calls.count("feedback") == 1

    def test_decode_ignored_when_not_open(self, return_flow, device):
        resolver = StubResolver()
        coordinator = ScanCoordinator(resolver, return_flow, device)

        assert asyncio.run(coordinator.handle_decode("SN-001")) is None
        assert resolver.lookups == []

    def test_blank_decode_keeps_scanner_open(self, return_flow, device):
        resolver = StubResolver()
        coordinator = make_coordinator(resolver, return_flow, device)

        outcome = asyncio.run(coordinator.handle_decode("   "))

        assert outcome.kind == ScanOutcomeKind.INVALID
        assert coordinator.state == ScanState.OPEN
        assert resolver.lookups == []

    def test_not_found_releases_lock(self, return_flow, device):
        resolver = StubResolver(error=TransactionNotFoundError("This item has no pending borrow request.", "SN-404"))
        coordinator = make_coordinator(resolver, return_flow, device)

        outcome = asyncio.run(coordinator.handle_decode("SN-404"))

        assert outcome.kind == ScanOutcomeKind.NOT_FOUND
        assert outcome.message == "This item has no pending borrow request."
        assert coordinator.state == ScanState.CLOSED
        assert coordinator.pending_borrow is None

        coordinator.open(ScanMode.BORROW)
        assert asyncio.run(coordinator.handle_decode("SN-404")) is not None

    def test_network_failure_is_reported(self, return_flow, device):
        coordinator = make_coordinator(StubResolver(error=PlatformNetworkError(timed_out=True)), return_flow, device)

        outcome = asyncio.run(coordinator.handle_decode("SN-001"))

        assert outcome.kind == ScanOutcomeKind.ERROR
        assert "Unstable connection" in outcome.message
        assert coordinator.state == ScanState.CLOSED

    def test_unexpected_failure_still_leaves_processing(self, return_flow, device):
        coordinator = make_coordinator(StubResolver(error=RuntimeError("boom")), return_flow, device)

        with pytest.raises(RuntimeError):
            asyncio.run(coordinator.handle_decode("SN-001"))

        assert coordinator.state == ScanState.CLOSED
        assert device.calls[-1] == "stop"

    def test_result_discarded_when_user_closes_during_processing(self, return_flow, device):
        async def scenario():
            gate = asyncio.Event()
            coordinator = make_coordinator(StubResolver(gate=gate), return_flow, device)

            pending = asyncio.ensure_future(coordinator.handle_decode("SN-001"))
            await asyncio.sleep(0)
            coordinator.close()
            gate.set()
            await pending
            return coordinator

        coordinator = asyncio.run(scenario())

        assert coordinator.state == ScanState.DISMISSED
        assert coordinator.pending_borrow is None
        assert coordinator.status().lastOutcome is None

    def test_mode_change_does_not_affect_inflight_decode(self, return_flow, device):
        async def scenario():
            gate = asyncio.Event()
            coordinator = make_coordinator(StubResolver(gate=gate), return_flow, device)

            pending = asyncio.ensure_future(coordinator.handle_decode("SN-001"))
            await asyncio.sleep(0)
            coordinator.set_mode(ScanMode.RETURN)
            gate.set()
            return await pending

        outcome = asyncio.run(scenario())

        assert outcome.mode == ScanMode.BORROW
        assert outcome.kind == ScanOutcomeKind.BORROW_REQUEST


class TestReturnMode:

    def test_serial_starts_return_session(self, return_flow, device):
        coordinator = ScanCoordinator(StubResolver(), return_flow, device)
        coordinator.open(ScanMode.RETURN)

        outcome = asyncio.run(coordinator.handle_decode("SN-001"))

        assert outcome.kind == ScanOutcomeKind.RETURN_STARTED
        assert return_flow.session.serial_number == "SN-001"

    def test_transaction_id_is_rederived_to_serial(self, platform, platform_client, device):
        platform.add("GET", f"/borrow-transactions/business/{RETURNED_TXN_ID}",
                     json={"data": make_transaction(txn_id=RETURNED_TXN_ID, serial="SN-777", status="borrowing")})
        return_flow = ReturnFlow(platform_client)
        coordinator = ScanCoordinator(TransactionResolver(platform_client), return_flow, device)
        coordinator.open(ScanMode.RETURN)

        outcome = asyncio.run(coordinator.handle_decode(RETURNED_TXN_ID))

        assert outcome.kind == ScanOutcomeKind.RETURN_STARTED
        assert outcome.serialNumber == "SN-777"
        assert return_flow.session.serial_number == "SN-777"

    def test_unknown_transaction_id_is_rejected_with_guidance(self, platform_client, device):
        return_flow = ReturnFlow(platform_client)
        coordinator = ScanCoordinator(TransactionResolver(platform_client), return_flow, device)
        coordinator.open(ScanMode.RETURN)

        outcome = asyncio.run(coordinator.handle_decode(RETURNED_TXN_ID))

        assert outcome.kind == ScanOutcomeKind.REJECTED
        assert "serial number" in outcome.message
        assert return_flow.session is None

    def test_guidance_error_from_stub(self, return_flow, device):
        error = TransactionIdNotAllowedError("Scan the QR code on the item itself.", RETURNED_TXN_ID)
        coordinator = ScanCoordinator(StubResolver(error=error), return_flow, device)
        coordinator.open(ScanMode.RETURN)

        outcome = asyncio.run(coordinator.handle_decode(RETURNED_TXN_ID))

        assert outcome.kind == ScanOutcomeKind.REJECTED
        assert coordinator.state == ScanState.CLOSED


class TestBorrowConfirmation:

    CONFIRM = f"/borrow-transactions/confirm/{PENDING_TXN_ID}"

    def test_claim_is_taken_once(self, return_flow, device):
        coordinator = ScanCoordinator(StubResolver(), return_flow, device)
        coordinator.restore_pending_borrow(borrow_transaction())

        assert coordinator.take_pending_borrow().id == PENDING_TXN_ID
        assert coordinator.take_pending_borrow() is None

    def test_double_confirm_reaches_platform_once(self, platform, station):
        async def slow_confirm(request):
            await asyncio.sleep(0.01)
            return httpx.Response(200, json={"statusCode": 200})

        platform.add("PATCH", self.CONFIRM, slow_confirm)
        station.coordinator.restore_pending_borrow(borrow_transaction())

        async def scenario():
            return await asyncio.gather(station.confirm_pending_borrow(), station.confirm_pending_borrow())

        first, second = asyncio.run(scenario())

        assert first.id == PENDING_TXN_ID
        assert second is None
        assert len(platform.calls("PATCH", self.CONFIRM)) == 1
        assert station.coordinator.pending_borrow is None

    def test_failed_confirm_puts_request_back(self, platform, station):
        platform.add("PATCH", self.CONFIRM, status_code=400, json={"message": "Transaction is not pending"})
        station.coordinator.restore_pending_borrow(borrow_transaction())

        with pytest.raises(PlatformAPIError):
            asyncio.run(station.confirm_pending_borrow())

        assert station.coordinator.pending_borrow.id == PENDING_TXN_ID
