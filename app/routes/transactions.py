from fastapi import APIRouter, Depends, status
from typing import Optional
from app.schemas.transaction import BorrowTransaction, TransactionListResponse, TransactionSummary
from app.services.platform_client import PlatformError
from app.services.station import Station, get_station
from app.services.transaction_view import (
    ReturnFailureReason,
    TransactionTab,
    filter_transactions,
    summarize,
    tab_counts,
)
from app.routes.errors import platform_http_error

router = APIRouter(prefix="/api/transactions", tags=["Transactions"])

@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    tab: TransactionTab = TransactionTab.ALL,
    search: Optional[str] = None,
    status_filter: Optional[str] = None,
    failure_reason: Optional[ReturnFailureReason] = None,
    refresh: bool = True,
    station: Station = Depends(get_station)
):
    """Get the business's transactions for one tab, with counts for every tab."""
    try:
        items = await station.history.reload(status_filter) if refresh else station.history.snapshot(status_filter)
    except PlatformError as e:
        raise platform_http_error(e)
    return TransactionListResponse(
        tab=tab.value,
        counts=tab_counts(items),
        items=filter_transactions(items, tab, search, failure_reason=failure_reason),
    )

@router.get("/summary", response_model=TransactionSummary)
async def get_summary(station: Station = Depends(get_station)):
    try:
        items = await station.history.reload()
    except PlatformError as e:
        raise platform_http_error(e)
    return summarize(items)

@router.get("/{transaction_id}", response_model=BorrowTransaction)
async def get_transaction(transaction_id: str, station: Station = Depends(get_station)):
    try:
        return await station.client.get_transaction_detail(transaction_id)
    except PlatformError as e:
        raise platform_http_error(e)

@router.post("/{transaction_id}/confirm-borrow", status_code=status.HTTP_200_OK)
async def confirm_borrow(transaction_id: str, station: Station = Depends(get_station)):
    """Confirm a borrow request by transaction id."""
    try:
        await station.client.confirm_borrow(transaction_id)
    except PlatformError as e:
        raise platform_http_error(e)
    pending = station.coordinator.pending_borrow
    if pending is not None and pending.id == transaction_id:
        station.coordinator.clear_pending_borrow()
    return {"message": "Borrow transaction confirmed", "transactionId": transaction_id}
