from fastapi import APIRouter, Depends, HTTPException, status
from app.schemas.scanner import (
    DecodeRequest,
    ModeRequest,
    OpenScannerRequest,
    ScanOutcome,
    ScanSessionStatus,
    TorchRequest,
)
from app.services.platform_client import PlatformError
from app.services.scan_coordinator import ScannerPermissionError
from app.services.station import Station, get_station
from app.routes.errors import platform_http_error

router = APIRouter(prefix="/api/scanner", tags=["Scanner"])

@router.get("/status", response_model=ScanSessionStatus)
async def get_scanner_status(station: Station = Depends(get_station)):
    """Get the current scan session state."""
    return station.coordinator.status()

@router.post("/open", response_model=ScanSessionStatus)
async def open_scanner(
    request: OpenScannerRequest,
    station: Station = Depends(get_station)
):
    """Open the scanner in borrow or return mode.
    Opens triggered by navigation (auto=true) are ignored after the user closed the scanner."""
    try:
        return station.coordinator.open(request.mode, auto=request.auto, permission_granted=request.permissionGranted)
    except ScannerPermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

@router.post("/close", response_model=ScanSessionStatus)
async def close_scanner(station: Station = Depends(get_station)):
    return station.coordinator.close()

@router.post("/mode", response_model=ScanSessionStatus)
async def switch_mode(request: ModeRequest, station: Station = Depends(get_station)):
    return station.coordinator.set_mode(request.mode)

@router.post("/torch", response_model=ScanSessionStatus)
async def toggle_torch(request: TorchRequest, station: Station = Depends(get_station)):
    return station.coordinator.set_torch(request.on)

@router.post("/decode", response_model=ScanOutcome)
async def submit_decode(request: DecodeRequest, station: Station = Depends(get_station)):
    """Submit a payload decoded by the client's own camera."""
    outcome = await station.coordinator.handle_decode(request.data)
    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Scanner is not ready (state: {station.coordinator.state.value})"
        )
    return outcome

@router.post("/borrow/confirm")
async def confirm_pending_borrow(station: Station = Depends(get_station)):
    """Confirm the borrow request found by the last scan."""
    try:
        transaction = await station.confirm_pending_borrow()
    except PlatformError as e:
        raise platform_http_error(e)
    if transaction is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No borrow request is waiting for confirmation"
        )
    return {"message": "Borrow transaction confirmed", "transactionId": transaction.id}

@router.delete("/borrow", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss_pending_borrow(station: Station = Depends(get_station)):
    """Cancel out of the borrow confirmation without confirming."""
    station.coordinator.clear_pending_borrow()
