"""Graph structures: nodes, edges, variables, conditions and validation."""

from chatflow.graph.conditions import evaluate_condition, evaluate_group
from chatflow.graph.edge import EdgeSpec, GraphSpec
from chatflow.graph.node import NodeKind, NodeSpec, QuestionType
from chatflow.graph.validator import (
    Severity,
    ValidationIssue,
    ValidationReport,
    validate_graph,
)
from chatflow.graph.variables import VariableStore, substitute

__all__ = [
    "EdgeSpec",
    "GraphSpec",
    "NodeKind",
    "NodeSpec",
    "QuestionType",
    "Severity",
    "ValidationIssue",
    "ValidationReport",
    "validate_graph",
    "evaluate_condition",
    "evaluate_group",
    "VariableStore",
    "substitute",
]
