import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from datetime import datetime

import httpx

from app.config import settings
from app.schemas.damage import (
    ConfirmReturnRequest,
    DamageFace,
    DamageObservation,
    DamagePolicyEntry,
    ReturnPreview,
)
from app.schemas.transaction import BorrowTransaction, PartyRef, ProductRef

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]

UNSTABLE_CONNECTION_MESSAGE = "Unstable connection, please check your network and try again."

BUSINESS_PROFILE = "/businesses/profile"
BUSINESS_HISTORY = "/borrow-transactions/business"
BUSINESS_DETAIL = "/borrow-transactions/business/{transaction_id}"
CONFIRM_BORROW = "/borrow-transactions/confirm/{transaction_id}"
DAMAGE_POLICY = "/borrow-transactions/damage-policy"
RETURN_CHECK = "/borrow-transactions/{serial_number}/check"
RETURN_CONFIRM = "/borrow-transactions/{serial_number}/confirm"


class PlatformError(Exception):
    """Base error for calls to the packaging platform API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MissingTokenError(PlatformError):
    pass


class PlatformNetworkError(PlatformError):
    """Timeout or transport failure; the server may never have answered."""

    def __init__(self, message: str = UNSTABLE_CONNECTION_MESSAGE, timed_out: bool = False, request_sent: bool = False):
        super().__init__(message)
        self.timed_out = timed_out
        self.request_sent = request_sent


class PlatformAPIError(PlatformError):
    """The server answered with an error status; message is the server's own."""


class PlatformNotFoundError(PlatformAPIError):
    pass


class MaterialNotFoundError(PlatformNotFoundError):
    pass


# --- Response decoding, one function per endpoint shape ---

def _server_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)
    return fallback


def _data(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def _ref_name(value: Any, *keys: str) -> Optional[str]:
    if isinstance(value, dict):
        for key in keys:
            if value.get(key):
                return str(value[key])
        return None
    return str(value) if value else None


def _ref_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        ref = value.get("_id") or value.get("id")
        return str(ref) if ref else None
    return str(value) if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable datetime from platform: {value!r}")
        return None


def decode_transaction(raw: Dict[str, Any]) -> BorrowTransaction:
    """Map one platform transaction document onto BorrowTransaction."""
    product_raw = raw.get("productId") or raw.get("product") or {}
    if isinstance(product_raw, dict):
        product = ProductRef(
            id=_ref_id(product_raw),
            serialNumber=product_raw.get("serialNumber"),
            productGroup=_ref_name(product_raw.get("productGroupId"), "name"),
            size=_ref_name(product_raw.get("productSizeId"), "sizeName", "name"),
        )
    else:
        product = ProductRef(id=str(product_raw))

    customer_raw = raw.get("customerId") or raw.get("customer")
    business_raw = raw.get("businessId") or raw.get("business")
    return BorrowTransaction(
        id=str(raw.get("_id") or raw.get("id") or ""),
        borrowTransactionType=raw.get("borrowTransactionType") or raw.get("type"),
        status=str(raw.get("status") or ""),
        product=product,
        customer=PartyRef(id=_ref_id(customer_raw), name=_ref_name(customer_raw, "fullName", "name")) if customer_raw else None,
        business=PartyRef(id=_ref_id(business_raw), name=_ref_name(business_raw, "businessName", "name")) if business_raw else None,
        depositAmount=float(raw.get("depositAmount") or 0),
        borrowDate=_parse_datetime(raw.get("borrowDate")),
        dueDate=_parse_datetime(raw.get("dueDate")),
        returnedAt=_parse_datetime(raw.get("returnedAt") or raw.get("returnDate")),
        rejectionReason=raw.get("rejectionReason"),
    )


def decode_history(body: Any) -> List[BorrowTransaction]:
    """History comes back as {data: {items: [...]}}, {data: [...]} or {data: {data: [...]}}."""
    data = _data(body)
    if isinstance(data, dict):
        data = data.get("items") if "items" in data else data.get("data")
    if not isinstance(data, list):
        return []
    return [decode_transaction(item) for item in data if isinstance(item, dict)]


def decode_detail(body: Any) -> BorrowTransaction:
    data = _data(body)
    if isinstance(data, dict) and "transaction" in data and isinstance(data["transaction"], dict):
        data = data["transaction"]
    if not isinstance(data, dict) or not (data.get("_id") or data.get("id")):
        raise PlatformNotFoundError("Transaction not found", 404)
    return decode_transaction(data)


def decode_policy(body: Any) -> List[DamagePolicyEntry]:
    data = _data(body)
    if isinstance(data, dict):
        data = data.get("items") or data.get("policy") or []
    entries = []
    for item in data or []:
        if isinstance(item, dict) and item.get("issue"):
            entries.append(DamagePolicyEntry(issue=item["issue"], points=float(item.get("points") or 0)))
    return entries


def decode_preview(body: Any) -> ReturnPreview:
    """Check responses carry the preview under data.preview or directly in data."""
    data = _data(body)
    if isinstance(data, dict) and isinstance(data.get("preview"), dict):
        data = data["preview"]
    elif isinstance(body, dict) and isinstance(body.get("preview"), dict):
        data = body["preview"]
    if not isinstance(data, dict):
        raise PlatformAPIError("Unexpected check-return response from server")
    return ReturnPreview(
        tempImages=data.get("tempImages") or {},
        totalDamagePoints=float(data.get("totalDamagePoints") or 0),
        finalCondition=data.get("finalCondition") or "good",
        damageFaces=data.get("damageFaces"),
        note=data.get("note"),
    )


class PlatformClient:
    """Async client for the packaging platform API.

    The access token is pulled from the injected provider on every call so a
    token handed over later (or rotated) is picked up without rebuilding.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.platform_api_base_url,
            timeout=timeout if timeout is not None else settings.platform_request_timeout,
            transport=transport,
        )
        self._sleep = sleep

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        token = await self._token_provider()
        if not token:
            raise MissingTokenError("No access token available. Please log in first.", 401)

        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out: {e!r}")
            raise PlatformNetworkError(
                timed_out=True,
                request_sent=not isinstance(e, (httpx.ConnectTimeout, httpx.PoolTimeout)),
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e!r}")
            raise PlatformNetworkError(request_sent=not isinstance(e, httpx.ConnectError)) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            message = _server_message(body, response.reason_phrase or "Request failed")
            logger.info(f"{method} {path} -> {response.status_code}: {message}")
            if response.status_code == 404:
                raise PlatformNotFoundError(message, 404)
            raise PlatformAPIError(message, response.status_code)
        return body

    async def get_business_profile(self) -> Dict[str, Any]:
        """Fetch the business profile, retrying network failures with a fixed backoff."""
        retries_left = settings.profile_fetch_retries
        while True:
            try:
                body = await self._request("GET", BUSINESS_PROFILE, timeout=settings.platform_profile_timeout)
                data = _data(body)
                if not isinstance(data, dict):
                    raise PlatformAPIError(_server_message(body, "Failed to get business profile"))
                return data
            except PlatformNetworkError:
                if retries_left <= 0:
                    raise
                logger.info(f"Retrying business profile fetch ({retries_left} retries left)")
                retries_left -= 1
                await self._sleep(settings.profile_retry_backoff_seconds)

    async def get_business_history(
        self,
        status: Optional[str] = None,
        product_name: Optional[str] = None,
        transaction_type: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> List[BorrowTransaction]:
        params: Dict[str, Any] = {"page": page, "limit": limit or settings.history_page_size}
        if status:
            params["status"] = status
        if product_name:
            params["productName"] = product_name
        if transaction_type:
            params["borrowTransactionType"] = transaction_type
        body = await self._request("GET", BUSINESS_HISTORY, params=params)
        return decode_history(body)

    async def get_transaction_detail(self, transaction_id: str) -> BorrowTransaction:
        if not transaction_id:
            raise ValueError("Transaction ID is required")
        body = await self._request("GET", BUSINESS_DETAIL.format(transaction_id=transaction_id))
        return decode_detail(body)

    async def confirm_borrow(self, transaction_id: str) -> Any:
        if not transaction_id:
            raise ValueError("Transaction ID is required")
        return await self._request("PATCH", CONFIRM_BORROW.format(transaction_id=transaction_id))

    async def get_damage_policy(self) -> List[DamagePolicyEntry]:
        body = await self._request("GET", DAMAGE_POLICY)
        return decode_policy(body)

    async def check_return(
        self,
        serial_number: str,
        observations: Iterable[DamageObservation],
        note: Optional[str] = None,
    ) -> ReturnPreview:
        """Upload face photos and issue tags; the server scores them."""
        if not serial_number:
            raise ValueError("Serial number is required")

        by_face = {obs.face: obs for obs in observations}
        data: Dict[str, str] = {}
        files = []
        for face in DamageFace:
            obs = by_face.get(face)
            # every issue field is required by the API, empty when unset
            data[f"{face.value}Issue"] = (obs.issue or "") if obs else ""
            if obs and obs.image:
                files.append((f"{face.value}Image", (obs.image.filename, obs.image.content, obs.image.content_type)))
        if note:
            data["note"] = note

        logger.info(f"Check return {serial_number}: {len(files)} images")
        try:
            body = await self._request(
                "POST",
                RETURN_CHECK.format(serial_number=serial_number),
                data=data,
                files=files or None,
            )
        except PlatformNotFoundError as e:
            if "not found" in e.message.lower():
                raise MaterialNotFoundError(e.message, 404) from e
            raise
        return decode_preview(body)

    async def confirm_return(self, serial_number: str, request: ConfirmReturnRequest) -> Any:
        if not serial_number:
            raise ValueError("Serial number is required")
        return await self._request(
            "POST",
            RETURN_CONFIRM.format(serial_number=serial_number),
            json=request.model_dump(),
        )
