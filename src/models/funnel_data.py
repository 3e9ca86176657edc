from pydantic import BaseModel, ConfigDict, Field, Discriminator
from typing import Optional, List, Union, Literal, Annotated, Tuple
from datetime import datetime
from enum import Enum
import uuid


class FunnelTrigger(str, Enum):
    LEAD_SUBSCRIBED = "lead_subscribed"
    NEW_POST_PUBLISHED = "new_post_published"


class FunnelNodeType(str, Enum):
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    DELAY = "DELAY"
    CONDITION = "CONDITION"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


# Display-only coordinate, never read by the validator or the interpreter
class NodePosition(BaseModel):
    x: float = 0
    y: float = 0


# Base FunnelNode with common fields
class BaseFunnelNode(BaseModel):
    # The editor stores numeric field values such as conditionValue: 10 as JSON numbers
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    position: Optional[NodePosition] = None
    label: Optional[str] = None


# Email Node
class EmailNode(BaseFunnelNode):
    type: Literal["EMAIL"] = "EMAIL"
    subject: str = ""
    content: str = ""
    nextNodeId: Optional[str] = None


# WhatsApp Template Node
class WhatsAppNode(BaseFunnelNode):
    type: Literal["WHATSAPP"] = "WHATSAPP"
    templateId: str = ""
    templateTitle: str = ""
    sendTime: str = ""
    nextNodeId: Optional[str] = None


# Delay Node
class DelayNode(BaseFunnelNode):
    type: Literal["DELAY"] = "DELAY"
    hours: int = 24
    nextNodeId: Optional[str] = None


# Condition Node
class ConditionNode(BaseFunnelNode):
    type: Literal["CONDITION"] = "CONDITION"
    target: str = ""
    operator: str = ""  # one of ConditionOperator once complete, free text while drafting
    value: str = ""
    trueNodeId: Optional[str] = None
    falseNodeId: Optional[str] = None


# Union of all node types with discriminator
FunnelNode = Annotated[
    Union[
        EmailNode,
        WhatsAppNode,
        DelayNode,
        ConditionNode
    ],
    Discriminator("type")
]

SEND_NODE_TYPES = (FunnelNodeType.EMAIL.value, FunnelNodeType.WHATSAPP.value)


def outgoing_edges(node: BaseFunnelNode) -> List[Tuple[str, Optional[str]]]:
    """
    Outgoing references of a node as (label, target) pairs.
    Linear nodes have a single "next" edge, condition nodes have "true" and "false".
    A target of None marks a terminal edge.
    """
    if isinstance(node, ConditionNode):
        return [("true", node.trueNodeId), ("false", node.falseNodeId)]
    return [("next", node.nextNodeId)]


class FunnelData(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "New Funnel"
    trigger: FunnelTrigger = FunnelTrigger.LEAD_SUBSCRIBED
    isActive: bool = False
    startNodeId: str = ""
    nodes: List[FunnelNode] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_node(self, node_id: Optional[str]) -> Optional[FunnelNode]:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]
