"""Structural and content validation for conversation graphs.

Runs when a graph is authored and again when a session is
started. Issues with severity "error" block running the graph; warnings are
advisory.
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from chatflow.graph.conditions import LOGICAL_OPERATORS, MAX_GROUP_CONDITIONS, is_known_operator
from chatflow.graph.edge import GraphSpec
from chatflow.graph.node import (
    HANDLE_FALSE,
    HANDLE_TRUE,
    HTTP_METHODS,
    ConditionNode,
    MessageNode,
    QuestionNode,
    QuestionType,
    RestApiNode,
    WhatsAppFlowNode,
)

logger = logging.getLogger(__name__)

# Node id used for issues that belong to the graph as a whole
GRAPH_LEVEL_ID = "flow"

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_SECTIONS = 10
MAX_SECTION_TITLE = 24
MAX_ROWS = 10
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_FLOW_BODY = 1024
MAX_FLOW_CTA = 20


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a graph."""

    node_id: str
    message: str
    severity: Severity = Severity.ERROR

    def to_dict(self) -> dict[str, str]:
        return {"node_id": self.node_id, "message": self.message, "severity": str(self.severity)}


@dataclass
class ValidationReport:
    """Result of validating a graph."""

    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def has_errors(self) -> bool:
        return any(i.severity == Severity.ERROR for i in self.issues)

    def blocks_run(self) -> bool:
        """Whether the graph must not be started."""
        return self.has_errors

    def for_node(self, node_id: str) -> list[ValidationIssue]:
        return [i for i in self.issues if i.node_id == node_id]


def _blank(value: str | None) -> bool:
    return value is None or value.strip() == ""


class GraphValidator:
    """
    Validates a GraphSpec against the engine's structural and content rules.

    Never raises: every problem becomes a ValidationIssue.
    """

    def __init__(self, graph: GraphSpec):
        self.graph = graph
        self.issues: list[ValidationIssue] = []

    def _error(self, node_id: str, message: str) -> None:
        self.issues.append(ValidationIssue(node_id, message, Severity.ERROR))

    def _warning(self, node_id: str, message: str) -> None:
        self.issues.append(ValidationIssue(node_id, message, Severity.WARNING))

    def run(self) -> ValidationReport:
        self._check_start_nodes()
        self._check_duplicate_handles()
        for node in self.graph.nodes:
            if isinstance(node, ConditionNode):
                self._check_condition(node)
            elif isinstance(node, QuestionNode):
                self._check_question(node)
            elif isinstance(node, MessageNode):
                if _blank(node.config.content):
                    self._error(node.id, "Message node must have content")
            elif isinstance(node, WhatsAppFlowNode):
                self._check_whatsapp_flow(node)
            elif isinstance(node, RestApiNode):
                self._check_rest_api(node)
        self._check_orphans()

        report = ValidationReport(issues=list(self.issues))
        if report.issues:
            logger.debug(
                f"Graph '{self.graph.id}' validation: {len(report.errors)} error(s), "
                f"{len(report.warnings)} warning(s)"
            )
        return report

    # === GRAPH-LEVEL RULES ===

    def _check_start_nodes(self) -> None:
        starts = self.graph.start_nodes()
        if not starts:
            self._error(GRAPH_LEVEL_ID, "Flow must start with a START node")
        elif len(starts) > 1:
            self._error(GRAPH_LEVEL_ID, "Flow can only have one START node")

    def _check_duplicate_handles(self) -> None:
        seen: set[tuple[str, str | None]] = set()
        for edge in self.graph.edges:
            key = (edge.source, edge.source_handle)
            if key in seen:
                handle = edge.source_handle or "(none)"
                self._error(edge.source, f"Multiple edges leave from handle '{handle}'")
            seen.add(key)

    def _check_orphans(self) -> None:
        for node in self.graph.nodes:
            if node.kind == "start":
                continue
            if not self.graph.incoming(node.id):
                self._warning(node.id, "This node is not connected to any other node")

    # === PER-KIND RULES ===

    def _check_condition(self, node: ConditionNode) -> None:
        if self.graph.outgoing_by_handle(node.id, HANDLE_TRUE) is None:
            self._error(node.id, 'Condition node must have a "true" output')
        if self.graph.outgoing_by_handle(node.id, HANDLE_FALSE) is None:
            self._error(node.id, 'Condition node must have a "false" output')

        config = node.config
        if config.condition_group is not None:
            group = config.condition_group
            if not group.conditions:
                self._error(node.id, "Condition group must have at least one condition")
            if len(group.conditions) > MAX_GROUP_CONDITIONS:
                self._error(
                    node.id, f"Condition group can have maximum {MAX_GROUP_CONDITIONS} conditions"
                )
            if group.logical_operator.strip().upper() not in LOGICAL_OPERATORS:
                self._error(node.id, "Condition group logical operator must be AND or OR")
            for index, condition in enumerate(group.conditions, start=1):
                if _blank(condition.variable):
                    self._error(node.id, f"Condition {index} must have a variable to check")
                if _blank(condition.operator):
                    self._error(node.id, f"Condition {index} must have an operator")
                elif not is_known_operator(condition.operator):
                    self._error(
                        node.id, f"Condition {index} has unknown operator '{condition.operator}'"
                    )
            return

        if _blank(config.condition_var):
            self._error(node.id, "Condition node must have a variable to check")
        if _blank(config.condition_op):
            self._error(node.id, "Condition node must have an operator")
        elif not is_known_operator(config.condition_op):
            self._error(node.id, f"Condition node has unknown operator '{config.condition_op}'")
        if config.condition_val is None or config.condition_val == "":
            self._warning(node.id, "Condition node must have a value to compare")

    def _check_question(self, node: QuestionNode) -> None:
        config = node.config
        if _blank(config.variable):
            self._error(node.id, "Question node must have a variable name")

        if config.is_dynamic:
            return
        if config.question_type == QuestionType.BUTTONS:
            self._check_buttons(node)
        elif config.question_type == QuestionType.LIST:
            self._check_list(node)

    def _check_buttons(self, node: QuestionNode) -> None:
        buttons = node.config.buttons
        if not buttons:
            self._error(node.id, "At least one button must be defined")
        if len(buttons) > MAX_BUTTONS:
            self._error(node.id, f"Maximum {MAX_BUTTONS} buttons can be defined")
        for index, button in enumerate(buttons, start=1):
            if _blank(button.title):
                self._error(node.id, f"Button {index} cannot be empty")
            elif len(button.title) > MAX_BUTTON_TITLE:
                self._error(node.id, f"Button {index} can have maximum {MAX_BUTTON_TITLE} characters")
            if self.graph.outgoing_by_handle(node.id, button.id) is None:
                self._warning(node.id, f'No edge defined for button "{button.title}"')

    def _check_list(self, node: QuestionNode) -> None:
        sections = node.config.list_sections
        if not sections:
            self._error(node.id, "At least one section must be defined")
        if len(sections) > MAX_SECTIONS:
            self._error(node.id, f"Maximum {MAX_SECTIONS} sections can be defined")

        for s, section in enumerate(sections, start=1):
            if _blank(section.title):
                self._error(node.id, f"Section {s} must have a title")
            elif len(section.title) > MAX_SECTION_TITLE:
                self._error(
                    node.id, f"Section {s} title can have maximum {MAX_SECTION_TITLE} characters"
                )
            if not section.rows:
                self._error(node.id, f"Section {s} must have at least one row")
            if len(section.rows) > MAX_ROWS:
                self._error(node.id, f"Section {s} can have maximum {MAX_ROWS} rows")

            for r, row in enumerate(section.rows, start=1):
                where = f"Section {s}, Row {r}"
                if _blank(row.title):
                    self._error(node.id, f"{where} must have a title")
                elif len(row.title) > MAX_ROW_TITLE:
                    self._error(
                        node.id, f"{where} title can have maximum {MAX_ROW_TITLE} characters"
                    )
                if row.description and len(row.description) > MAX_ROW_DESCRIPTION:
                    self._error(
                        node.id,
                        f"{where} description can have maximum {MAX_ROW_DESCRIPTION} characters",
                    )

    def _check_whatsapp_flow(self, node: WhatsAppFlowNode) -> None:
        config = node.config
        if _blank(config.whatsapp_flow_id):
            self._error(node.id, "WhatsApp Flow node must have a flow selected")

        if _blank(config.flow_cta):
            self._error(node.id, "WhatsApp Flow node must have a button text (CTA)")
        elif len(config.flow_cta) > MAX_FLOW_CTA:  # type: ignore[arg-type]
            self._error(node.id, f"Button text (CTA) can have maximum {MAX_FLOW_CTA} characters")

        if _blank(config.body):
            self._error(node.id, "WhatsApp Flow node must have body text")
        elif len(config.body) > MAX_FLOW_BODY:
            self._error(node.id, f"Body text can have maximum {MAX_FLOW_BODY} characters")

        if not self.graph.outgoing(node.id):
            self._warning(
                node.id,
                "WhatsApp Flow node should have an outgoing connection for flow completion",
            )

    def _check_rest_api(self, node: RestApiNode) -> None:
        config = node.config
        if _blank(config.url):
            self._error(node.id, "REST API node must have a URL")
        if config.method.upper() not in HTTP_METHODS:
            self._error(
                node.id,
                f"REST API node has unsupported method '{config.method}'. "
                f"Valid: {', '.join(HTTP_METHODS)}",
            )


def validate_graph(graph: GraphSpec) -> list[ValidationIssue]:
    """Validate a graph and return every issue found, errors and warnings alike."""
    return GraphValidator(graph).run().issues


def validation_report(graph: GraphSpec) -> ValidationReport:
    return GraphValidator(graph).run()
