from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum


class ViolationKind(str, Enum):
    EMPTY_FUNNEL = "EMPTY_FUNNEL"
    DUPLICATE_NODE_ID = "DUPLICATE_NODE_ID"
    NO_ROOT = "NO_ROOT"
    MULTIPLE_ROOTS = "MULTIPLE_ROOTS"
    START_MISMATCH = "START_MISMATCH"
    DANGLING_EDGE = "DANGLING_EDGE"
    UNREACHABLE = "UNREACHABLE"
    MISSING_FIELD = "MISSING_FIELD"
    INCOMPLETE_BRANCH = "INCOMPLETE_BRANCH"
    CYCLE = "CYCLE"


class Violation(BaseModel):
    nodeId: Optional[str] = None
    kind: ViolationKind
    message: str


class ValidationResult(BaseModel):
    """
    Outcome of validating a funnel graph.
    An empty violation list means the funnel may be activated.
    """
    violations: List[Violation] = Field(default_factory=list)

    @property
    def is_ok(self) -> bool:
        return not self.violations
