import asyncio
from typing import Callable, Dict, List, Tuple, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from app.services.platform_client import PlatformClient
from app.services.scan_coordinator import ScannerDevice
from app.services.station import build_station


POLICY = [
    {"issue": "scratch_light", "points": 1},
    {"issue": "scratch_heavy", "points": 2},
    {"issue": "dent_small", "points": 2},
    {"issue": "dent_large", "points": 4},
    {"issue": "crack_small", "points": 3},
    {"issue": "crack_large", "points": 6},
    {"issue": "deformed", "points": 8},
    {"issue": "broken", "points": 10},
]

PENDING_TXN_ID = "65a1b2c3d4e5f60718293a4b"
RETURNED_TXN_ID = "65a1b2c3d4e5f60718293a4c"


def make_transaction(
    txn_id: str = PENDING_TXN_ID,
    serial: str = "SN-001",
    txn_type: str = "borrow",
    status: str = "pending",
    **extra,
) -> Dict:
    """Raw transaction document the way the platform sends it."""
    raw = {
        "_id": txn_id,
        "borrowTransactionType": txn_type,
        "status": status,
        "productId": {
            "_id": "prod-1",
            "serialNumber": serial,
            "productGroupId": {"name": "Lunch box"},
            "productSizeId": {"sizeName": "M"},
        },
        "customerId": {"_id": "cust-1", "fullName": "Linh Tran"},
        "depositAmount": 50000,
        "borrowDate": "2025-01-10T08:00:00.000Z",
        "dueDate": "2025-01-17T08:00:00.000Z",
    }
    raw.update(extra)
    return raw


Handler = Union[httpx.Response, Callable[[httpx.Request], object]]


class FakePlatform:
    """In-memory stand-in for the platform API behind an httpx.MockTransport."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, handler: Handler = None, status_code: int = 200, json=None):
        if handler is None:
            handler = httpx.Response(status_code, json=json if json is not None else {})
        self.routes[(method.upper(), path)] = handler

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"Cannot {request.method} {request.url.path}"})
        if isinstance(handler, httpx.Response):
            return handler
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)


class FakeDevice(ScannerDevice):
    def __init__(self, permission: bool = True):
        self.permission = permission
        self.calls: List[str] = []

    def has_permission(self) -> bool:
        return self.permission

    def start_scanning(self):
        self.calls.append("start")

    def stop_scanning(self):
        self.calls.append("stop")

    def set_torch(self, on: bool):
        self.calls.append("torch_on" if on else "torch_off")

    def feedback(self):
        self.calls.append("feedback")


@pytest.fixture
def platform():
    fake = FakePlatform()
    fake.add("GET", "/borrow-transactions/damage-policy", json={"statusCode": 200, "data": POLICY})
    return fake


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def platform_client(platform):
    async def token_provider():
        return "test-token"

    async def no_sleep(seconds):
        return None

    return PlatformClient(token_provider, base_url="http://platform.test", transport=platform.transport(), sleep=no_sleep)


@pytest.fixture
def station(platform, device):
    return build_station(token="test-token", transport=platform.transport(), device=device, use_mqtt=False)


@pytest.fixture
def api_client(station):
    from app.main import app

    app.state.station = station
    return TestClient(app)
