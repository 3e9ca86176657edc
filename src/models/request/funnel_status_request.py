from pydantic import BaseModel, Field


class FunnelStatusRequest(BaseModel):
    isActive: bool = Field(..., description="Activate (true) or deactivate (false) the funnel")
