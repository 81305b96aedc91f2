import logging
import math
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from app.schemas.transaction import (
    FAILED_RETURN_STATUSES,
    SUCCESSFUL_RETURN_STATUSES,
    BorrowTransaction,
    TransactionSummary,
    TransactionType,
)
from app.services.platform_client import PlatformClient
from app.utils.timezone import as_aware, now_local

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class ReturnCategory(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class TransactionTab(str, Enum):
    ALL = "all"
    BORROW = "borrow"
    RETURN_SUCCESS = "return_success"
    RETURN_FAILED = "return_failed"
    OVERDUE = "overdue"


def categorize_return(transaction: BorrowTransaction) -> Optional[ReturnCategory]:
    """Bucket a return transaction; None means still processing.

    returnedAt wins over status: the two have been seen to disagree and a
    recorded return time means the item is back.
    """
    if transaction.borrowTransactionType != TransactionType.RETURN.value:
        return None
    if transaction.returnedAt is not None:
        return ReturnCategory.SUCCESS
    if transaction.status in FAILED_RETURN_STATUSES:
        return ReturnCategory.FAILED
    if transaction.status in SUCCESSFUL_RETURN_STATUSES:
        return ReturnCategory.SUCCESS
    return None


class ReturnFailureReason(str, Enum):
    OVERDUE = "overdue"
    DAMAGE = "damage"
    OTHER = "other"


def failed_return_reason(transaction: BorrowTransaction) -> Optional[ReturnFailureReason]:
    """Why a failed return was refused, read from the platform's rejection reason."""
    if categorize_return(transaction) != ReturnCategory.FAILED:
        return None
    reason = (transaction.rejectionReason or "").lower()
    if "overdue" in reason:
        return ReturnFailureReason.OVERDUE
    if "damaged" in reason:
        return ReturnFailureReason.DAMAGE
    return ReturnFailureReason.OTHER


def overdue_days(transaction: BorrowTransaction, now: Optional[datetime] = None) -> int:
    """Whole days past the due date, counted up to the return (or now)."""
    if transaction.dueDate is None:
        return 0
    moment = transaction.returnedAt or now or now_local()
    elapsed = (as_aware(moment) - as_aware(transaction.dueDate)).total_seconds()
    return max(0, math.ceil(elapsed / SECONDS_PER_DAY))


def is_overdue(transaction: BorrowTransaction, now: Optional[datetime] = None) -> bool:
    return overdue_days(transaction, now) > 0


def matches_tab(transaction: BorrowTransaction, tab: TransactionTab, now: Optional[datetime] = None) -> bool:
    if tab == TransactionTab.ALL:
        return True
    if tab == TransactionTab.BORROW:
        return transaction.borrowTransactionType == TransactionType.BORROW.value and transaction.returnedAt is None
    if tab == TransactionTab.RETURN_SUCCESS:
        return categorize_return(transaction) == ReturnCategory.SUCCESS
    if tab == TransactionTab.RETURN_FAILED:
        return categorize_return(transaction) == ReturnCategory.FAILED
    return is_overdue(transaction, now)


def matches_search(transaction: BorrowTransaction, search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.strip().lower()
    haystack = [
        transaction.id,
        transaction.product.serialNumber,
        transaction.product.productGroup,
        transaction.customer.name if transaction.customer else None,
    ]
    return any(needle in value.lower() for value in haystack if value)


def filter_transactions(
    transactions: Iterable[BorrowTransaction],
    tab: TransactionTab = TransactionTab.ALL,
    search: Optional[str] = None,
    now: Optional[datetime] = None,
    failure_reason: Optional[ReturnFailureReason] = None,
) -> List[BorrowTransaction]:
    now = now or now_local()
    return [
        t for t in transactions
        if matches_tab(t, tab, now)
        and matches_search(t, search)
        and (failure_reason is None or failed_return_reason(t) == failure_reason)
    ]


def tab_counts(transactions: Iterable[BorrowTransaction], now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or now_local()
    items = list(transactions)
    return {tab.value: sum(1 for t in items if matches_tab(t, tab, now)) for tab in TransactionTab}


def summarize(transactions: Iterable[BorrowTransaction], now: Optional[datetime] = None) -> TransactionSummary:
    now = now or now_local()
    items = list(transactions)
    borrows = [t for t in items if t.borrowTransactionType == TransactionType.BORROW.value]
    returns = [t for t in items if t.borrowTransactionType == TransactionType.RETURN.value]
    completed = [t for t in items if t.status in SUCCESSFUL_RETURN_STATUSES]
    overdue = [t for t in items if t.status not in SUCCESSFUL_RETURN_STATUSES and is_overdue(t, now)]
    total = len(items)
    return TransactionSummary(
        totalTransactions=total,
        borrowTransactions=len(borrows),
        returnTransactions=len(returns),
        completedTransactions=len(completed),
        overdueTransactions=len(overdue),
        totalDeposits=sum(t.depositAmount for t in borrows),
        completionRate=(len(completed) / total * 100) if total else 0.0,
        returnRate=(len(returns) / len(borrows) * 100) if borrows else 0.0,
    )


class TransactionHistoryLoader:
    """Keeps the last fetched history; a reload started while one is running is skipped.

    The snapshot is always the unfiltered history so any caller can reuse it;
    the status filter is applied on the way out.
    """

    def __init__(self, client: PlatformClient):
        self._client = client
        self._loading = False
        self._items: List[BorrowTransaction] = []

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def items(self) -> List[BorrowTransaction]:
        return list(self._items)

    def snapshot(self, status: Optional[str] = None) -> List[BorrowTransaction]:
        return [t for t in self._items if not status or t.status == status]

    async def reload(self, status: Optional[str] = None) -> List[BorrowTransaction]:
        if self._loading:
            logger.info("History reload already in progress, returning last snapshot")
            return self.snapshot(status)
        self._loading = True
        try:
            self._items = await self._client.get_business_history()
        finally:
            self._loading = False
        return self.snapshot(status)
