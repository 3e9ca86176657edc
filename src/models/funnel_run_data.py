from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
import uuid

from models.transport_data import SendRequest


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_RUN_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED)


class RunOutcome(str, Enum):
    SENT = "SENT"
    RETRY = "RETRY"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    WAITING = "WAITING"
    BRANCH_TRUE = "BRANCH_TRUE"
    BRANCH_FALSE = "BRANCH_FALSE"
    DANGLING_EDGE = "DANGLING_EDGE"
    FUNNEL_NOT_FOUND = "FUNNEL_NOT_FOUND"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class RunHistoryEntry(BaseModel):
    nodeId: Optional[str] = None
    enteredAt: datetime
    outcome: RunOutcome
    reason: Optional[str] = None


class FunnelRun(BaseModel):
    """
    One execution of a funnel for one contact.
    Owned by the funnel store, only the interpreter mutates it.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    funnelId: str = Field(..., description="Funnel this run executes")
    contactId: str = Field(..., description="Contact the run is addressed to")
    currentNodeId: str = Field(..., description="Node processed by the next step")
    status: RunStatus = Field(default=RunStatus.RUNNING)
    resumeAt: Optional[datetime] = Field(None, description="Set only while status is WAITING")
    attempts: int = Field(default=0, description="Failed send attempts at the current node")
    nextAttemptAt: Optional[datetime] = Field(None, description="Earliest retry of a failed send")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Payload of the trigger event")
    history: List[RunHistoryEntry] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class StepResult(BaseModel):
    """
    Outcome of one interpreter step: the updated run copy and the send request
    dispatched while processing it, if any.
    """
    run: FunnelRun
    side_effect: Optional[SendRequest] = None
