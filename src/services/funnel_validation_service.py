"""
Funnel Validation Service
Structural checks a funnel must pass before it can be activated.
"""
from typing import Iterator, List, Optional, Set, Tuple

from utils.log_utils import LogUtil

from models.funnel_data import (
    FunnelData,
    FunnelNode,
    EmailNode,
    WhatsAppNode,
    DelayNode,
    ConditionNode,
    ConditionOperator,
    outgoing_edges,
)
from models.validation_data import ValidationResult, Violation, ViolationKind


class FunnelValidationService:
    """
    Validates funnel graphs.

    Checks run in a fixed order and visit nodes in funnel order, so validating
    the same funnel twice yields the same violation list:
        1. non-empty node set, unique node ids
        2. exactly one root, equal to startNodeId
        3. no dangling references
        4. every node reachable from startNodeId
        5. per-type field completeness
        6. no cycles
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def validate(self, funnel: FunnelData) -> ValidationResult:
        if not funnel.nodes:
            return ValidationResult(violations=[
                Violation(nodeId=None, kind=ViolationKind.EMPTY_FUNNEL, message="Funnel has no nodes")
            ])

        violations: List[Violation] = []
        violations.extend(self._check_unique_ids(funnel))
        violations.extend(self._check_root(funnel))
        violations.extend(self._check_dangling_edges(funnel))
        violations.extend(self._check_reachability(funnel))
        violations.extend(self._check_fields(funnel))
        violations.extend(self._check_cycles(funnel))

        if violations:
            self.log_util.info(
                service_name="FunnelValidationService",
                message=f"Funnel {funnel.id} has {len(violations)} violation(s): {[v.kind.value for v in violations]}"
            )
        return ValidationResult(violations=violations)

    def compute_roots(self, funnel: FunnelData) -> List[str]:
        """
        Node ids without incoming edges, in funnel order.
        Only references that resolve to a node count as incoming edges.
        """
        node_ids = set(funnel.node_ids())
        targets: Set[str] = set()
        for node in funnel.nodes:
            for _, target in outgoing_edges(node):
                if target is not None and target in node_ids:
                    targets.add(target)
        return [node.id for node in funnel.nodes if node.id not in targets]

    def _check_unique_ids(self, funnel: FunnelData) -> List[Violation]:
        violations = []
        seen: Set[str] = set()
        for node in funnel.nodes:
            if node.id in seen:
                violations.append(Violation(
                    nodeId=node.id,
                    kind=ViolationKind.DUPLICATE_NODE_ID,
                    message=f"Node id '{node.id}' is used by more than one node"
                ))
            seen.add(node.id)
        return violations

    def _check_root(self, funnel: FunnelData) -> List[Violation]:
        violations = []
        roots = self.compute_roots(funnel)

        if not roots:
            violations.append(Violation(
                nodeId=None,
                kind=ViolationKind.NO_ROOT,
                message="Every node has an incoming edge, the funnel has no start node"
            ))
        elif len(roots) > 1:
            violations.append(Violation(
                nodeId=None,
                kind=ViolationKind.MULTIPLE_ROOTS,
                message=f"Funnel has {len(roots)} nodes without incoming edges: {', '.join(roots)}"
            ))
        elif roots[0] != funnel.startNodeId:
            violations.append(Violation(
                nodeId=roots[0],
                kind=ViolationKind.START_MISMATCH,
                message=f"Start node is '{funnel.startNodeId}' but the node without incoming edges is '{roots[0]}'"
            ))
            return violations

        if funnel.get_node(funnel.startNodeId) is None:
            violations.append(Violation(
                nodeId=None,
                kind=ViolationKind.START_MISMATCH,
                message=f"Start node '{funnel.startNodeId}' does not exist in the funnel"
            ))
        return violations

    def _check_dangling_edges(self, funnel: FunnelData) -> List[Violation]:
        violations = []
        node_ids = set(funnel.node_ids())
        for node in funnel.nodes:
            for label, target in outgoing_edges(node):
                if target is not None and target not in node_ids:
                    violations.append(Violation(
                        nodeId=node.id,
                        kind=ViolationKind.DANGLING_EDGE,
                        message=f"Edge '{label}' of node '{node.id}' points to missing node '{target}'"
                    ))
        return violations

    def _check_reachability(self, funnel: FunnelData) -> List[Violation]:
        if funnel.get_node(funnel.startNodeId) is None:
            return []

        reached: Set[str] = set()
        pending = [funnel.startNodeId]
        while pending:
            node_id = pending.pop()
            if node_id in reached:
                continue
            node = funnel.get_node(node_id)
            if node is None:
                continue
            reached.add(node_id)
            for _, target in outgoing_edges(node):
                if target is not None and target not in reached:
                    pending.append(target)

        return [
            Violation(
                nodeId=node.id,
                kind=ViolationKind.UNREACHABLE,
                message=f"Node '{node.id}' cannot be reached from start node '{funnel.startNodeId}'"
            )
            for node in funnel.nodes
            if node.id not in reached
        ]

    def _check_fields(self, funnel: FunnelData) -> List[Violation]:
        violations = []
        for node in funnel.nodes:
            for message in self._missing_fields(node):
                violations.append(Violation(nodeId=node.id, kind=ViolationKind.MISSING_FIELD, message=message))

            if isinstance(node, ConditionNode) and (node.trueNodeId is None) != (node.falseNodeId is None):
                missing = "true" if node.trueNodeId is None else "false"
                violations.append(Violation(
                    nodeId=node.id,
                    kind=ViolationKind.INCOMPLETE_BRANCH,
                    message=f"Condition '{node.id}' has its {missing} branch unset, set both branches or neither"
                ))
        return violations

    def _missing_fields(self, node: FunnelNode) -> List[str]:
        if isinstance(node, EmailNode):
            if not node.subject.strip():
                return [f"Email node '{node.id}' requires a subject"]
        elif isinstance(node, WhatsAppNode):
            if not node.templateId.strip():
                return [f"WhatsApp node '{node.id}' requires a template"]
        elif isinstance(node, DelayNode):
            if node.hours <= 0:
                return [f"Delay node '{node.id}' requires a positive number of hours"]
        elif isinstance(node, ConditionNode):
            messages = []
            if not node.target.strip():
                messages.append(f"Condition '{node.id}' requires a target")
            if not node.operator.strip():
                messages.append(f"Condition '{node.id}' requires an operator")
            elif node.operator not in {operator.value for operator in ConditionOperator}:
                messages.append(f"Condition '{node.id}' uses unsupported operator '{node.operator}'")
            if not node.value.strip():
                messages.append(f"Condition '{node.id}' requires a value")
            return messages
        return []

    def _check_cycles(self, funnel: FunnelData) -> List[Violation]:
        # Iterative depth-first search, one edge iterator per node on the current path
        violations: List[Violation] = []
        visited: Set[str] = set()
        on_path: Set[str] = set()

        def enter(node_id: str, stack: List[Tuple[str, Iterator[Tuple[str, Optional[str]]]]]):
            node = funnel.get_node(node_id)
            if node is None:
                return
            visited.add(node_id)
            on_path.add(node_id)
            stack.append((node_id, iter(outgoing_edges(node))))

        start: Optional[str] = funnel.startNodeId if funnel.get_node(funnel.startNodeId) else None
        order: List[str] = ([start] if start else []) + funnel.node_ids()
        for root_id in order:
            if root_id in visited:
                continue
            stack: List[Tuple[str, Iterator[Tuple[str, Optional[str]]]]] = []
            enter(root_id, stack)
            while stack:
                node_id, edges = stack[-1]
                edge = next(edges, None)
                if edge is None:
                    stack.pop()
                    on_path.discard(node_id)
                    continue
                label, target = edge
                if target is None:
                    continue
                if target in on_path:
                    violations.append(Violation(
                        nodeId=node_id,
                        kind=ViolationKind.CYCLE,
                        message=f"Edge '{label}' of node '{node_id}' loops back to '{target}'"
                    ))
                elif target not in visited:
                    enter(target, stack)
        return violations
