from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum
from app.schemas.transaction import BorrowTransaction

class ScanMode(str, Enum):
    BORROW = "borrow"
    RETURN = "return"

class ScanState(str, Enum):
    CLOSED = "closed"
    DISMISSED = "dismissed"  # closed by the user, auto-open is suppressed
    OPEN = "open"
    PROCESSING = "processing"

class ScanOutcomeKind(str, Enum):
    BORROW_REQUEST = "borrow_request"
    RETURN_STARTED = "return_started"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    INVALID = "invalid"
    ERROR = "error"

class ScanOutcome(BaseModel):
    kind: ScanOutcomeKind
    mode: ScanMode
    token: Optional[str] = None
    serialNumber: Optional[str] = None
    transaction: Optional[BorrowTransaction] = None
    message: Optional[str] = None

class ScanSessionStatus(BaseModel):
    state: ScanState
    mode: ScanMode
    torchOn: bool = False
    pendingBorrow: Optional[BorrowTransaction] = None
    lastOutcome: Optional[ScanOutcome] = None

class OpenScannerRequest(BaseModel):
    mode: ScanMode = ScanMode.BORROW
    auto: bool = Field(False, description="Opened by navigation rather than by the user")
    permissionGranted: bool = Field(True, description="Camera permission result on the client device")

class ModeRequest(BaseModel):
    mode: ScanMode

class TorchRequest(BaseModel):
    on: bool

class DecodeRequest(BaseModel):
    data: str
