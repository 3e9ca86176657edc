from typing import Any, Dict, List
from pydantic import BaseModel, Field

from models.validation_data import Violation


class FunnelSaveResponse(BaseModel):
    """
    Response model for saving or validating a funnel.
    Drafts are saved even when violations are present.
    """
    funnel: Dict[str, Any] = Field(..., description="Funnel in its persisted document form")
    valid: bool = Field(..., description="Whether the funnel passed validation")
    violations: List[Violation] = Field(default_factory=list)
