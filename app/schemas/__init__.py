from .transaction import (
    TransactionType, BorrowTransaction, ProductRef, PartyRef,
    TransactionListResponse, TransactionSummary
)
from .damage import (
    NO_ISSUE, DamageFace, Condition, FaceImage, DamageObservation,
    DamagePolicyEntry, DamageAssessment, ObservationView, FaceUpdateRequest,
    ReturnPreview, ConfirmReturnRequest
)
from .scanner import (
    ScanMode, ScanState, ScanOutcomeKind, ScanOutcome, ScanSessionStatus,
    OpenScannerRequest, ModeRequest, TorchRequest, DecodeRequest
)
from .returns import (
    StartReturnRequest, NoteRequest, ReturnSessionView
)

__all__ = [
    "TransactionType", "BorrowTransaction", "ProductRef", "PartyRef",
    "TransactionListResponse", "TransactionSummary",
    "NO_ISSUE", "DamageFace", "Condition", "FaceImage", "DamageObservation",
    "DamagePolicyEntry", "DamageAssessment", "ObservationView", "FaceUpdateRequest",
    "ReturnPreview", "ConfirmReturnRequest",
    "ScanMode", "ScanState", "ScanOutcomeKind", "ScanOutcome", "ScanSessionStatus",
    "OpenScannerRequest", "ModeRequest", "TorchRequest", "DecodeRequest",
    "StartReturnRequest", "NoteRequest", "ReturnSessionView",
]
