from typing import List
from pydantic import BaseModel, Field

from models.funnel_run_data import FunnelRun


class TriggerEventResponse(BaseModel):
    """
    Response model for a dispatched trigger event.
    """
    status: str = Field(..., description="Processing status (success, no_funnel)")
    message: str = Field(..., description="Human-readable message")
    runs: List[FunnelRun] = Field(default_factory=list, description="Runs created for the event")
