from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime
from enum import Enum

class TransactionType(str, Enum):
    BORROW = "borrow"
    RETURN = "return"

# Statuses a borrow request can be in while it waits for the business to hand the item over
PENDING_BORROW_STATUSES = ("pending", "waiting", "pending_pickup")
FAILED_RETURN_STATUSES = ("failed", "cancelled")
SUCCESSFUL_RETURN_STATUSES = ("completed", "returned")

class ProductRef(BaseModel):
    """Product instance a transaction refers to"""
    id: Optional[str] = None
    serialNumber: Optional[str] = None
    productGroup: Optional[str] = None
    size: Optional[str] = None

class PartyRef(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None

class BorrowTransaction(BaseModel):
    """One borrow or return event of one physical item, as the platform reports it"""
    id: str
    borrowTransactionType: Optional[str] = None
    status: str = ""
    product: ProductRef = Field(default_factory=ProductRef)
    customer: Optional[PartyRef] = None
    business: Optional[PartyRef] = None
    depositAmount: float = 0.0
    borrowDate: Optional[datetime] = None
    dueDate: Optional[datetime] = None
    returnedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None

    class Config:
        from_attributes = True

    @property
    def serial_number(self) -> Optional[str]:
        return self.product.serialNumber

    @property
    def is_pending_borrow(self) -> bool:
        return (
            self.borrowTransactionType == TransactionType.BORROW.value
            and self.status in PENDING_BORROW_STATUSES
        )

class TransactionListResponse(BaseModel):
    tab: str
    counts: Dict[str, int]
    items: List[BorrowTransaction] = []

class TransactionSummary(BaseModel):
    totalTransactions: int
    borrowTransactions: int
    returnTransactions: int
    completedTransactions: int
    overdueTransactions: int
    totalDeposits: float
    completionRate: float
    returnRate: float
