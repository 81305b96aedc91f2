import asyncio
import concurrent.futures
import logging
from typing import Optional

import httpx
from fastapi import Request

from app.config import settings
from app.schemas.transaction import BorrowTransaction
from app.services.auth import TokenStore
from app.services.mqtt_service import MQTTService
from app.services.platform_client import PlatformClient
from app.services.resolver import TransactionResolver
from app.services.return_protocol import ReturnFlow
from app.services.scan_coordinator import ScanCoordinator, ScannerDevice
from app.services.transaction_view import TransactionHistoryLoader

logger = logging.getLogger(__name__)


def _log_scan_failure(future: concurrent.futures.Future):
    """Done callback for decodes scheduled from the MQTT thread."""
    if future.cancelled():
        logger.warning("Scan from MQTT cancelled before it was processed")
        return
    exc = future.exception()
    if exc is not None:
        logger.error(f"Error processing scan from MQTT: {exc}", exc_info=exc)


class Station:
    """Everything one scan station needs, wired once and shared by the routes."""

    def __init__(
        self,
        token_store: TokenStore,
        client: PlatformClient,
        device: Optional[ScannerDevice] = None,
        scanner_bridge: Optional[MQTTService] = None,
    ):
        self.token_store = token_store
        self.client = client
        self.resolver = TransactionResolver(client)
        self.return_flow = ReturnFlow(client)
        self.history = TransactionHistoryLoader(client)
        self.coordinator = ScanCoordinator(self.resolver, self.return_flow, device)
        self.scanner_bridge = scanner_bridge

    async def confirm_pending_borrow(self) -> Optional[BorrowTransaction]:
        """Confirm the borrow request found by the last scan.

        Returns None when nothing is waiting, including while another
        confirmation of the same request is in flight.
        """
        transaction = self.coordinator.take_pending_borrow()
        if transaction is None:
            return None
        try:
            await self.client.confirm_borrow(transaction.id)
        except Exception:
            self.coordinator.restore_pending_borrow(transaction)
            raise
        logger.info(f"Borrow transaction {transaction.id} confirmed")
        return transaction

    def start_scanner_bridge(self, loop: asyncio.AbstractEventLoop):
        """Connect the MQTT scanner and feed its decodes to the coordinator on `loop`."""
        if self.scanner_bridge is None:
            return

        def dispatch(data: str):
            future = asyncio.run_coroutine_threadsafe(self.coordinator.handle_decode(data), loop)
            future.add_done_callback(_log_scan_failure)

        self.scanner_bridge.attach(dispatch)
        self.coordinator.use_device(self.scanner_bridge)
        logger.info("Starting MQTT scanner bridge...")
        self.scanner_bridge.connect()

    async def shutdown(self):
        if self.scanner_bridge is not None:
            logger.info("Stopping MQTT scanner bridge...")
            self.scanner_bridge.disconnect()
        await self.client.aclose()


def build_station(
    token: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    device: Optional[ScannerDevice] = None,
    use_mqtt: Optional[bool] = None,
) -> Station:
    token_store = TokenStore(token if token is not None else settings.business_access_token)
    client = PlatformClient(token_store, transport=transport)
    use_mqtt = settings.mqtt_enabled if use_mqtt is None else use_mqtt
    bridge = MQTTService() if use_mqtt else None
    return Station(token_store, client, device=device, scanner_bridge=bridge)


def get_station(request: Request) -> Station:
    return request.app.state.station
