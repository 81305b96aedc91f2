from pydantic import BaseModel, Field
from typing import Optional, Any, Dict, List, Union
from enum import Enum

# Issue value meaning "nothing wrong with this face"
NO_ISSUE = "none"

class DamageFace(str, Enum):
    FRONT = "front"
    BACK = "back"
    LEFT = "left"
    RIGHT = "right"
    TOP = "top"
    BOTTOM = "bottom"

class Condition(str, Enum):
    GOOD = "good"
    DAMAGED = "damaged"

class FaceImage(BaseModel):
    """Photo of one face, held in memory until the check call uploads it"""
    filename: str
    content: bytes
    content_type: str = "image/jpeg"

class DamageObservation(BaseModel):
    face: DamageFace
    issue: Optional[str] = None
    image: Optional[FaceImage] = Field(None, exclude=True)

    @property
    def has_issue(self) -> bool:
        return bool(self.issue) and self.issue != NO_ISSUE

class DamagePolicyEntry(BaseModel):
    issue: str
    points: float

class DamageAssessment(BaseModel):
    totalPoints: float = 0
    condition: Condition = Condition.GOOD

class ObservationView(BaseModel):
    face: DamageFace
    issue: Optional[str] = None
    hasImage: bool = False

class FaceUpdateRequest(BaseModel):
    issue: Optional[str] = Field(None, description="Issue tag from the damage policy, or 'none'")

class ReturnPreview(BaseModel):
    """Server-side result of the check phase; the values here are authoritative"""
    tempImages: Union[Dict[str, Any], List[Any]] = Field(default_factory=dict)
    totalDamagePoints: float = 0
    finalCondition: Condition = Condition.GOOD
    damageFaces: Optional[Any] = None
    note: Optional[str] = None

class ConfirmReturnRequest(BaseModel):
    note: Optional[str] = None
    damageFaces: Optional[Any] = None
    tempImages: Union[Dict[str, Any], List[Any]] = Field(default_factory=dict)
    totalDamagePoints: float
    finalCondition: Condition

    class Config:
        use_enum_values = True
