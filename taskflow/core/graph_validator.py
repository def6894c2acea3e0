"""Structural validation of workflow definitions."""

from collections import Counter, defaultdict, deque
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ..models.core import (
    DecisionNode,
    EdgeDefinition,
    EdgeKind,
    GraphViolation,
    NodeKind,
    SubprocessNode,
    TaskNode,
    TriggerKind,
    ValidationResult,
    WaitNode,
    WorkflowDefinition,
)
from .conditions import check_condition, is_else
from .exceptions import GraphValidationError
from .logging import get_logger

logger = get_logger(__name__)


def find_reachable_nodes(entry_point: str, edges: List[EdgeDefinition]) -> Set[str]:
    """Find all nodes reachable from the entry point (BFS)."""
    reachable = {entry_point}
    edge_map: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        edge_map[edge.source].append(edge.target)

    queue = deque([entry_point])
    while queue:
        current = queue.popleft()
        for neighbor in edge_map.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)

    return reachable


def find_back_edges(definition: WorkflowDefinition, entry_point: str) -> Set[str]:
    """Ids of loop-back edges: edges that close a cycle in a DFS from the entry point.

    Edges are explored in declared order, so the result is deterministic.
    """
    adjacency: Dict[str, List[EdgeDefinition]] = defaultdict(list)
    for edge in definition.edges:
        adjacency[edge.source].append(edge)

    back_edges: Set[str] = set()
    on_stack: Set[str] = {entry_point}
    seen: Set[str] = {entry_point}
    stack: List[Tuple[str, Iterator[EdgeDefinition]]] = [(entry_point, iter(adjacency[entry_point]))]

    while stack:
        node_id, edges = stack[-1]
        edge = next(edges, None)
        if edge is None:
            on_stack.discard(node_id)
            stack.pop()
            continue
        if edge.target in on_stack:
            back_edges.add(edge.id)
        elif edge.target not in seen:
            seen.add(edge.target)
            on_stack.add(edge.target)
            stack.append((edge.target, iter(adjacency[edge.target])))

    return back_edges


def decision_branches(definition: WorkflowDefinition, node: DecisionNode) -> List[Tuple[Optional[str], str]]:
    """Ordered (condition, edge_id) pairs of a decision node."""
    if node.branches:
        return [(branch.condition, branch.edge_id) for branch in node.branches]
    return [(edge.condition, edge.id) for edge in definition.outgoing_edges(node.id)]


class GraphValidator:
    """Checks the structural invariants a definition must satisfy before it can run.

    Validation is pure: it only looks at the definition it is given and
    reports every violation it finds rather than stopping at the first.
    """

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition.

        Args:
            definition: The definition to check

        Returns:
            ValidationResult listing every violation and any warnings
        """
        logger.debug(f"Validating workflow: {definition.name}")
        violations: List[GraphViolation] = []
        warnings: List[str] = []

        node_ids = self._check_unique_ids(definition, violations)
        start_id = self._check_start(definition, violations, warnings)
        self._check_edge_endpoints(definition, node_ids, violations)
        self._check_end_nodes(definition, violations)
        self._check_decisions(definition, violations, warnings)
        self._check_conditions(definition, violations)
        self._check_node_data(definition, violations, warnings)
        self._check_triggers(definition, violations)

        if start_id is not None:
            valid_edges = [e for e in definition.edges if e.source in node_ids and e.target in node_ids]
            reachable = find_reachable_nodes(start_id, valid_edges)
            for node in definition.nodes:
                if node.id not in reachable:
                    violations.append(GraphViolation(
                        code="unreachable_node",
                        message=f"Node '{node.id}' is not reachable from start node '{start_id}'",
                        node_id=node.id
                    ))
            if find_back_edges(definition.model_copy(update={"edges": valid_edges}), start_id):
                warnings.append("Graph contains cycles; make sure every loop has a decision that can exit it")

        result = ValidationResult(is_valid=not violations, violations=violations, warnings=warnings)
        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.violations)}, Warnings: {len(result.warnings)}")
        return result

    def validate_or_raise(self, definition: WorkflowDefinition) -> ValidationResult:
        """Validate and raise GraphValidationError listing every violation if invalid."""
        result = self.validate(definition)
        if not result.is_valid:
            raise GraphValidationError(
                f"Workflow '{definition.name}' failed validation: {'; '.join(result.errors)}",
                validation_errors=result.errors,
                flow_id=definition.id
            )
        return result

    def _check_unique_ids(self, definition: WorkflowDefinition, violations: List[GraphViolation]) -> Set[str]:
        node_counts = Counter(node.id for node in definition.nodes)
        for node_id, count in node_counts.items():
            if count > 1:
                violations.append(GraphViolation(
                    code="duplicate_node",
                    message=f"Node id '{node_id}' is used by {count} nodes",
                    node_id=node_id
                ))
        edge_counts = Counter(edge.id for edge in definition.edges)
        for edge_id, count in edge_counts.items():
            if count > 1:
                violations.append(GraphViolation(
                    code="duplicate_edge",
                    message=f"Edge id '{edge_id}' is used by {count} edges",
                    edge_id=edge_id
                ))
        return set(node_counts)

    def _check_start(self, definition: WorkflowDefinition, violations: List[GraphViolation],
                     warnings: List[str]) -> Optional[str]:
        starts = definition.nodes_of_kind(NodeKind.START)
        if not starts:
            violations.append(GraphViolation(code="missing_start", message="Workflow has no start node"))
            return None
        if len(starts) > 1:
            violations.append(GraphViolation(
                code="multiple_start",
                message=f"Workflow has {len(starts)} start nodes ({', '.join(n.id for n in starts)}); exactly one is required"
            ))
            return None
        start = starts[0]
        if definition.incoming_edges(start.id):
            warnings.append(f"Start node '{start.id}' has incoming edges")
        return start.id

    def _check_edge_endpoints(self, definition: WorkflowDefinition, node_ids: Set[str],
                              violations: List[GraphViolation]) -> None:
        for edge in definition.edges:
            if edge.source not in node_ids:
                violations.append(GraphViolation(
                    code="dangling_edge",
                    message=f"Edge '{edge.id}' references non-existent source node '{edge.source}'",
                    edge_id=edge.id
                ))
            if edge.target not in node_ids:
                violations.append(GraphViolation(
                    code="dangling_edge",
                    message=f"Edge '{edge.id}' references non-existent target node '{edge.target}'",
                    edge_id=edge.id
                ))

    def _check_end_nodes(self, definition: WorkflowDefinition, violations: List[GraphViolation]) -> None:
        for node in definition.nodes_of_kind(NodeKind.END):
            outgoing = definition.outgoing_edges(node.id)
            if outgoing:
                violations.append(GraphViolation(
                    code="end_has_outgoing",
                    message=f"End node '{node.id}' has {len(outgoing)} outgoing edge(s)",
                    node_id=node.id
                ))

    def _check_decisions(self, definition: WorkflowDefinition, violations: List[GraphViolation],
                         warnings: List[str]) -> None:
        for node in definition.nodes_of_kind(NodeKind.DECISION):
            outgoing = definition.outgoing_edges(node.id)
            outgoing_ids = {edge.id for edge in outgoing}
            if len(outgoing) < 2:
                violations.append(GraphViolation(
                    code="decision_branches",
                    message=f"Decision node '{node.id}' needs at least 2 outgoing edges, has {len(outgoing)}",
                    node_id=node.id
                ))

            branches = decision_branches(definition, node)
            seen_conditions: Set[str] = set()
            for index, (condition, edge_id) in enumerate(branches):
                if edge_id not in outgoing_ids:
                    violations.append(GraphViolation(
                        code="invalid_branch_edge",
                        message=f"Decision node '{node.id}' branch refers to edge '{edge_id}' which does not leave the node",
                        node_id=node.id,
                        edge_id=edge_id
                    ))
                if is_else(condition):
                    if index != len(branches) - 1:
                        violations.append(GraphViolation(
                            code="else_not_last",
                            message=f"Decision node '{node.id}' has an untagged branch ('{edge_id}') that is not last",
                            node_id=node.id,
                            edge_id=edge_id
                        ))
                    continue
                normalized = " ".join(condition.split())
                if normalized in seen_conditions:
                    violations.append(GraphViolation(
                        code="duplicate_condition",
                        message=f"Decision node '{node.id}' has duplicate condition '{normalized}'",
                        node_id=node.id,
                        edge_id=edge_id
                    ))
                seen_conditions.add(normalized)

            if node.branches:
                covered = {edge_id for _, edge_id in branches}
                for edge in outgoing:
                    if edge.id not in covered:
                        warnings.append(f"Edge '{edge.id}' of decision node '{node.id}' is not used by any branch")

    def _check_conditions(self, definition: WorkflowDefinition, violations: List[GraphViolation]) -> None:
        decision_ids = {node.id for node in definition.nodes_of_kind(NodeKind.DECISION)}
        for edge in definition.edges:
            if edge.kind == EdgeKind.CONDITIONAL and is_else(edge.condition) and edge.source not in decision_ids:
                violations.append(GraphViolation(
                    code="missing_condition",
                    message=f"Conditional edge '{edge.id}' has no condition",
                    edge_id=edge.id
                ))
            if not is_else(edge.condition):
                error = check_condition(edge.condition)
                if error:
                    violations.append(GraphViolation(code="invalid_condition", message=error, edge_id=edge.id))

        for node in definition.nodes:
            if isinstance(node, DecisionNode):
                for branch in node.branches:
                    if not is_else(branch.condition):
                        error = check_condition(branch.condition)
                        if error:
                            violations.append(GraphViolation(
                                code="invalid_condition", message=error, node_id=node.id, edge_id=branch.edge_id
                            ))

        for rule in definition.rules:
            error = check_condition(rule.condition)
            if error:
                violations.append(GraphViolation(code="invalid_condition", message=f"Rule '{rule.id}': {error}"))

    def _check_node_data(self, definition: WorkflowDefinition, violations: List[GraphViolation],
                         warnings: List[str]) -> None:
        for node in definition.nodes:
            if isinstance(node, TaskNode) and not (node.task_id and node.task_id.strip()):
                violations.append(GraphViolation(
                    code="missing_task_reference",
                    message=f"Task node '{node.id}' has no task_id",
                    node_id=node.id
                ))
            elif isinstance(node, WaitNode) and (node.duration is None or node.duration <= 0):
                violations.append(GraphViolation(
                    code="invalid_wait_duration",
                    message=f"Wait node '{node.id}' needs a positive duration",
                    node_id=node.id
                ))
            elif isinstance(node, SubprocessNode):
                if not (node.flow_id and node.flow_id.strip()):
                    violations.append(GraphViolation(
                        code="missing_subprocess_reference",
                        message=f"Subprocess node '{node.id}' has no flow_id",
                        node_id=node.id
                    ))
                elif node.flow_id == definition.id:
                    warnings.append(f"Subprocess node '{node.id}' runs its own workflow recursively")

    def _check_triggers(self, definition: WorkflowDefinition, violations: List[GraphViolation]) -> None:
        for trigger_id, count in Counter(t.id for t in definition.triggers).items():
            if count > 1:
                violations.append(GraphViolation(code="duplicate_trigger", message=f"Trigger id '{trigger_id}' is used {count} times"))
        for trigger in definition.triggers:
            missing = None
            if trigger.kind == TriggerKind.SCHEDULE and trigger.config.schedule is None:
                missing = "schedule"
            elif trigger.kind == TriggerKind.EVENT and not trigger.config.event_name:
                missing = "event_name"
            elif trigger.kind == TriggerKind.CONDITION and not trigger.config.predicate:
                missing = "predicate"
            if missing:
                violations.append(GraphViolation(
                    code="invalid_trigger",
                    message=f"{trigger.kind.value.capitalize()} trigger '{trigger.id}' has no {missing}"
                ))
