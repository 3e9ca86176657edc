from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

from models.funnel_data import FunnelTrigger


class TriggerEventRequest(BaseModel):
    """
    External event that may start funnel runs for one contact.
    Duplicate deliveries must be filtered by the caller with idempotencyKey,
    the dispatcher starts a run for every delivery it receives.
    """
    triggerKind: FunnelTrigger = Field(..., description="Trigger the event represents (lead_subscribed, new_post_published)")
    contactId: str = Field(..., description="Contact the started runs are addressed to")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event data made available to send nodes")
    idempotencyKey: Optional[str] = Field(None, description="Caller side deduplication key, logged only")

    class Config:
        json_schema_extra = {
            "example": {
                "triggerKind": "new_post_published",
                "contactId": "contact_123",
                "payload": {
                    "postId": "post_42",
                    "postTitle": "Spring launch",
                    "postUrl": "https://example.com/blog/spring-launch"
                },
                "idempotencyKey": "post_42:contact_123"
            }
        }
