"""
Funnel Document
Conversion between FunnelData and the persisted editor document.

The editor stores every node in one flat shape regardless of its type:
    {id, type, position: {x, y}, data: {...}, nextNodeId, trueNodeId, falseNodeId}
with the type-specific fields kept under "data".
"""
from typing import Any, Dict, Optional

from models.funnel_data import (
    FunnelData,
    FunnelNode,
    EmailNode,
    WhatsAppNode,
    DelayNode,
    ConditionNode,
    NodePosition,
)

# FunnelNode field name -> key under the document's "data"
NODE_DATA_KEYS: Dict[str, Dict[str, str]] = {
    "EMAIL": {"subject": "subject", "content": "content"},
    "WHATSAPP": {"templateId": "waTemplateId", "templateTitle": "waTemplateTitle", "sendTime": "sendTime"},
    "DELAY": {"hours": "hours"},
    "CONDITION": {"target": "conditionTarget", "operator": "conditionOperator", "value": "conditionValue"},
}

NODE_CLASSES = {
    "EMAIL": EmailNode,
    "WHATSAPP": WhatsAppNode,
    "DELAY": DelayNode,
    "CONDITION": ConditionNode,
}


def node_to_document(node: FunnelNode) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for field_name, data_key in NODE_DATA_KEYS[node.type].items():
        data[data_key] = getattr(node, field_name)
    if node.label is not None:
        data["label"] = node.label

    is_condition = isinstance(node, ConditionNode)
    return {
        "id": node.id,
        "type": node.type,
        "position": node.position.model_dump() if node.position else None,
        "data": data,
        "nextNodeId": None if is_condition else node.nextNodeId,
        "trueNodeId": node.trueNodeId if is_condition else None,
        "falseNodeId": node.falseNodeId if is_condition else None,
    }


def node_from_document(document: Dict[str, Any]) -> FunnelNode:
    node_type = document.get("type")
    if node_type not in NODE_CLASSES:
        raise ValueError(f"Unknown funnel node type: {node_type}")

    # Editor-only keys (callbacks, labels of other types) are dropped here
    data = document.get("data") or {}
    fields: Dict[str, Any] = {"id": document.get("id")}
    for field_name, data_key in NODE_DATA_KEYS[node_type].items():
        if data.get(data_key) is not None:
            fields[field_name] = data[data_key]
    if data.get("label") is not None:
        fields["label"] = data["label"]

    position = document.get("position")
    if position is not None:
        fields["position"] = NodePosition.model_validate(position)

    if node_type == "CONDITION":
        fields["trueNodeId"] = document.get("trueNodeId") or None
        fields["falseNodeId"] = document.get("falseNodeId") or None
    else:
        fields["nextNodeId"] = document.get("nextNodeId") or None

    return NODE_CLASSES[node_type].model_validate(fields)


def funnel_to_document(funnel: FunnelData) -> Dict[str, Any]:
    """
    Encode a funnel to its persisted form.
    funnel_from_document(funnel_to_document(funnel)) == funnel for every node variant.
    """
    return {
        "id": funnel.id,
        "name": funnel.name,
        "trigger": funnel.trigger.value,
        "isActive": funnel.isActive,
        "startNodeId": funnel.startNodeId,
        "nodes": [node_to_document(node) for node in funnel.nodes],
        "created_at": funnel.created_at,
        "updated_at": funnel.updated_at,
    }


def funnel_from_document(document: Dict[str, Any], funnel_id: Optional[str] = None) -> FunnelData:
    """
    Decode a persisted (or editor submitted) funnel document.

    Args:
        document: Funnel document, nodes in the editor shape
        funnel_id: Overrides the document id (e.g. Mongo's _id)
    """
    fields: Dict[str, Any] = {
        "name": document.get("name"),
        "trigger": document.get("trigger"),
        "isActive": document.get("isActive"),
        "startNodeId": document.get("startNodeId") or "",
        "nodes": [node_from_document(node) for node in document.get("nodes") or []],
        "created_at": document.get("created_at"),
        "updated_at": document.get("updated_at"),
    }
    resolved_id = funnel_id or document.get("id")
    if resolved_id:
        fields["id"] = resolved_id

    # Missing keys fall back to the model defaults
    return FunnelData.model_validate({key: value for key, value in fields.items() if value is not None})
