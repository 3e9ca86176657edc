from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum


class DispatchErrorKind(str, Enum):
    TRANSIENT_DISPATCH = "TRANSIENT_DISPATCH"
    PERMANENT_DISPATCH = "PERMANENT_DISPATCH"


class SendRequest(BaseModel):
    """
    Side effect emitted by a send node: what the transport is asked to deliver.
    """
    channel: str = Field(..., description="EMAIL or WHATSAPP")
    contactId: str
    content: Dict[str, Any] = Field(default_factory=dict)
    funnelId: str
    runId: str
    nodeId: str
    attempt: int = Field(default=1, description="1-based attempt number for this node")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Trigger event payload for templating")


class TransportResult(BaseModel):
    success: bool
    errorKind: Optional[DispatchErrorKind] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "TransportResult":
        return cls(success=True)

    @classmethod
    def transient(cls, reason: str) -> "TransportResult":
        return cls(success=False, errorKind=DispatchErrorKind.TRANSIENT_DISPATCH, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> "TransportResult":
        return cls(success=False, errorKind=DispatchErrorKind.PERMANENT_DISPATCH, reason=reason)
