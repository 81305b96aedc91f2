from pydantic import BaseModel, Field
from typing import Optional, List
from app.schemas.damage import DamageAssessment, ObservationView, ReturnPreview

class StartReturnRequest(BaseModel):
    """Request body for starting a return session by hand (no scan)"""
    serial_number: str = Field(..., min_length=1, description="Serial number of the returned item")

class NoteRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)

class ReturnSessionView(BaseModel):
    serialNumber: str
    generation: int
    note: Optional[str] = None
    faces: List[ObservationView] = []
    localAssessment: DamageAssessment
    preview: Optional[ReturnPreview] = None