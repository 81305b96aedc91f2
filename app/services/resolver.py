import logging
import re
from typing import Optional

from app.config import settings
from app.schemas.transaction import BorrowTransaction
from app.services.platform_client import PlatformClient, PlatformAPIError, PlatformNotFoundError

logger = logging.getLogger(__name__)

TRANSACTION_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")
DEEP_LINK_PATTERN = re.compile(r"^(?P<scheme>[A-Za-z][A-Za-z0-9+.\-]*)://item/(?P<token>[^/?#\s]+)")


class ResolutionError(Exception):
    """A scanned token could not be turned into something to act on."""

    def __init__(self, message: str, token: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.token = token


class TransactionNotFoundError(ResolutionError):
    pass


class TransactionIdNotAllowedError(ResolutionError):
    """A transaction id was scanned where a return needs the item's serial number.

    `transaction` is set when the id could be looked up, so the caller can take
    the serial number from its product and try again.
    """

    def __init__(self, message: str, token: Optional[str] = None, transaction: Optional[BorrowTransaction] = None):
        super().__init__(message, token)
        self.transaction = transaction


def extract_token(raw: str, scheme: Optional[str] = None) -> str:
    """Pull the serial number or transaction id out of a scanned payload.

    Accepts a bare value or a deep link such as "back2use://item/SN-001".
    When `scheme` is given, deep links with another scheme are left untouched.
    """
    data = (raw or "").strip()
    match = DEEP_LINK_PATTERN.match(data)
    if match and (scheme is None or match.group("scheme").lower() == scheme.lower()):
        return match.group("token").strip()
    return data


def is_transaction_id(token: str) -> bool:
    return bool(TRANSACTION_ID_PATTERN.match(token or ""))


class TransactionResolver:
    """Maps scanned tokens to pending transactions through the platform API."""

    def __init__(self, client: PlatformClient, page_size: Optional[int] = None, deep_link_scheme: Optional[str] = None):
        self._client = client
        self._page_size = page_size or settings.history_page_size
        self._scheme = deep_link_scheme if deep_link_scheme is not None else settings.deep_link_scheme

    def extract_token(self, raw: str) -> str:
        return extract_token(raw, self._scheme)

    async def find_pending_borrow(self, token: str) -> BorrowTransaction:
        """Find the borrow request waiting for the business to hand over this item."""
        if is_transaction_id(token):
            try:
                transaction = await self._client.get_transaction_detail(token)
                if transaction.is_pending_borrow:
                    return transaction
                logger.info(f"Transaction {token} is not a pending borrow (status: {transaction.status})")
            except PlatformAPIError as e:
                logger.info(f"Detail lookup for {token} failed, searching history: {e.message}")

        history = await self._client.get_business_history(page=1, limit=self._page_size)
        for transaction in history:
            if not transaction.is_pending_borrow:
                continue
            if transaction.serial_number == token or transaction.id == token:
                return transaction

        logger.info(f"No pending borrow request for {token} among {len(history)} transactions")
        raise TransactionNotFoundError("This item has no pending borrow request.", token)

    async def resolve_return_serial(self, token: str) -> str:
        """Return the serial number that keys the check-return call.

        The server decides whether the item can be returned, so a serial number
        passes straight through. A transaction id is never used as the key.
        """
        if not token:
            raise TransactionNotFoundError("Invalid QR code.", token)
        if not is_transaction_id(token):
            return token

        transaction = None
        try:
            transaction = await self._client.get_transaction_detail(token)
        except PlatformNotFoundError:
            logger.info(f"Transaction {token} not found while resolving a return")
        except PlatformAPIError as e:
            logger.warning(f"Detail lookup for {token} failed while resolving a return: {e.message}")
        raise TransactionIdNotAllowedError(
            "Returns are processed by the item's serial number. Scan the QR code on the item itself.",
            token,
            transaction,
        )
