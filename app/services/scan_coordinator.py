import logging
import threading
from typing import Optional

from app.schemas.scanner import (
    ScanMode,
    ScanOutcome,
    ScanOutcomeKind,
    ScanSessionStatus,
    ScanState,
)
from app.schemas.transaction import BorrowTransaction
from app.services.platform_client import PlatformError, PlatformNetworkError, UNSTABLE_CONNECTION_MESSAGE
from app.services.resolver import (
    ResolutionError,
    TransactionIdNotAllowedError,
    TransactionNotFoundError,
    TransactionResolver,
)
from app.services.return_protocol import ReturnFlow

logger = logging.getLogger(__name__)


class ScannerPermissionError(Exception):
    pass


class ScannerDevice:
    """Camera-side hooks the coordinator drives.

    This default is for clients that run the camera themselves and post decoded
    payloads; the MQTT bridge overrides it for a fixed scanner device.
    """

    def has_permission(self) -> bool:
        return True

    def start_scanning(self):
        logger.debug("Scanner started")

    def stop_scanning(self):
        logger.debug("Scanner stopped")

    def set_torch(self, on: bool):
        logger.debug(f"Torch {'on' if on else 'off'}")

    def feedback(self):
        logger.debug("Scan feedback")


class ScanCoordinator:
    """Owns the scanner lifecycle for borrow confirmation and return intake.

    States: closed -> open -> processing -> closed, plus dismissed (closed by
    the user) which blocks automatic reopening. Only a decode arriving in the
    open state is processed; anything arriving while processing is dropped.
    """

    def __init__(self, resolver: TransactionResolver, return_flow: ReturnFlow, device: Optional[ScannerDevice] = None):
        self._resolver = resolver
        self._return_flow = return_flow
        self._device = device or ScannerDevice()
        self._lock = threading.Lock()
        self._state = ScanState.CLOSED
        self._mode = ScanMode.BORROW
        self._torch_on = False
        self._pending_borrow: Optional[BorrowTransaction] = None
        self._last_outcome: Optional[ScanOutcome] = None

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def mode(self) -> ScanMode:
        return self._mode

    @property
    def pending_borrow(self) -> Optional[BorrowTransaction]:
        return self._pending_borrow

    def use_device(self, device: ScannerDevice):
        with self._lock:
            self._device = device

    def status(self) -> ScanSessionStatus:
        with self._lock:
            return self._status_locked()

    def open(self, mode: Optional[ScanMode] = None, auto: bool = False, permission_granted: bool = True) -> ScanSessionStatus:
        with self._lock:
            if auto and self._state == ScanState.DISMISSED:
                logger.info("Auto-open suppressed: scanner was closed by the user")
                return self._status_locked()
            if self._state in (ScanState.OPEN, ScanState.PROCESSING):
                if mode and self._state == ScanState.OPEN:
                    self._mode = mode
                return self._status_locked()
            if not permission_granted or not self._device.has_permission():
                raise ScannerPermissionError("Camera access is needed to scan QR codes. Allow it in the device settings.")

            self._mode = mode or self._mode
            self._torch_on = False
            self._last_outcome = None
            self._device.start_scanning()
            self._state = ScanState.OPEN
            logger.info(f"Scanner opened in {self._mode.value} mode")
            return self._status_locked()

    def close(self) -> ScanSessionStatus:
        with self._lock:
            if self._state in (ScanState.OPEN, ScanState.PROCESSING):
                self._teardown_locked()
            self._state = ScanState.DISMISSED
            logger.info("Scanner closed by user")
            return self._status_locked()

    def set_mode(self, mode: ScanMode) -> ScanSessionStatus:
        with self._lock:
            # an in-flight decode keeps the mode it was accepted with
            self._mode = mode
            return self._status_locked()

    def set_torch(self, on: bool) -> ScanSessionStatus:
        with self._lock:
            if self._state != ScanState.OPEN:
                logger.warning(f"Torch change ignored while scanner is {self._state.value}")
                return self._status_locked()
            self._device.set_torch(on)
            self._torch_on = on
            return self._status_locked()

    def clear_pending_borrow(self):
        with self._lock:
            self._pending_borrow = None

    def take_pending_borrow(self) -> Optional[BorrowTransaction]:
        """Claim the pending borrow for confirmation; a second claim gets None."""
        with self._lock:
            transaction, self._pending_borrow = self._pending_borrow, None
            return transaction

    def restore_pending_borrow(self, transaction: BorrowTransaction):
        with self._lock:
            # a newer scan wins over the one that failed to confirm
            if self._pending_borrow is None:
                self._pending_borrow = transaction

    async def handle_decode(self, raw: Optional[str]) -> Optional[ScanOutcome]:
        """Process one decoded payload. Returns None when the decode was dropped."""
        with self._lock:
            if self._state != ScanState.OPEN:
                logger.debug(f"Decode dropped while scanner is {self._state.value}")
                return None
            self._state = ScanState.PROCESSING
            mode = self._mode

        outcome: Optional[ScanOutcome] = None
        try:
            outcome = await self._resolve(mode, raw)
        finally:
            keep_open = outcome is not None and outcome.kind == ScanOutcomeKind.INVALID
            delivered = self._release(keep_open)

        if delivered:
            self._deliver(outcome)
        else:
            logger.info(f"Scan result for {outcome.token} discarded: scanner closed during processing")
        return outcome

    async def _resolve(self, mode: ScanMode, raw: Optional[str]) -> ScanOutcome:
        data = (raw or "").strip()
        if not data:
            return ScanOutcome(kind=ScanOutcomeKind.INVALID, mode=mode, message="Invalid QR code")

        self._device.feedback()
        token = self._resolver.extract_token(data)
        logger.info(f"QR decoded in {mode.value} mode: {token}")
        try:
            if mode == ScanMode.BORROW:
                transaction = await self._resolver.find_pending_borrow(token)
                return ScanOutcome(
                    kind=ScanOutcomeKind.BORROW_REQUEST,
                    mode=mode,
                    token=token,
                    serialNumber=transaction.serial_number,
                    transaction=transaction,
                    message=f"Borrow request {transaction.id} found",
                )
            serial_number = await self._resolve_return_serial(token)
            return ScanOutcome(kind=ScanOutcomeKind.RETURN_STARTED, mode=mode, token=token, serialNumber=serial_number)
        except TransactionNotFoundError as e:
            return ScanOutcome(kind=ScanOutcomeKind.NOT_FOUND, mode=mode, token=token, message=e.message)
        except ResolutionError as e:
            return ScanOutcome(kind=ScanOutcomeKind.REJECTED, mode=mode, token=token, message=e.message)
        except PlatformNetworkError:
            return ScanOutcome(kind=ScanOutcomeKind.ERROR, mode=mode, token=token, message=UNSTABLE_CONNECTION_MESSAGE)
        except PlatformError as e:
            logger.warning(f"Resolving {token} failed: {e.message}")
            return ScanOutcome(kind=ScanOutcomeKind.ERROR, mode=mode, token=token, message=e.message)

    async def _resolve_return_serial(self, token: str) -> str:
        try:
            return await self._resolver.resolve_return_serial(token)
        except TransactionIdNotAllowedError as e:
            serial_number = e.transaction.serial_number if e.transaction else None
            if not serial_number:
                raise
            logger.info(f"Transaction id {token} scanned for a return, retrying with serial {serial_number}")
            return await self._resolver.resolve_return_serial(serial_number)

    def _release(self, keep_open: bool) -> bool:
        """Leave the processing state. False if the user closed the scanner meanwhile."""
        with self._lock:
            if self._state != ScanState.PROCESSING:
                return False
            if keep_open:
                self._state = ScanState.OPEN
            else:
                # camera and torch are released before any follow-up view takes over
                self._teardown_locked()
                self._state = ScanState.CLOSED
            return True

    def _deliver(self, outcome: ScanOutcome):
        with self._lock:
            self._last_outcome = outcome
            if outcome.kind == ScanOutcomeKind.BORROW_REQUEST:
                self._pending_borrow = outcome.transaction
        if outcome.kind == ScanOutcomeKind.RETURN_STARTED:
            self._return_flow.begin(outcome.serialNumber)

    def _teardown_locked(self):
        if self._torch_on:
            self._device.set_torch(False)
            self._torch_on = False
        self._device.stop_scanning()

    def _status_locked(self) -> ScanSessionStatus:
        return ScanSessionStatus(
            state=self._state,
            mode=self._mode,
            torchOn=self._torch_on,
            pendingBorrow=self._pending_borrow,
            lastOutcome=self._last_outcome,
        )
