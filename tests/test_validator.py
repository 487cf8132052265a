"""Tests for graph validation rules."""

from conftest import build_graph, greeting_graph

from chatflow.graph.validator import (
    GRAPH_LEVEL_ID,
    Severity,
    ValidationIssue,
    validate_graph,
    validation_report,
)


def _errors(issues: list[ValidationIssue], node_id: str | None = None) -> list[str]:
    return [
        i.message
        for i in issues
        if i.severity == Severity.ERROR and (node_id is None or i.node_id == node_id)
    ]


def _warnings(issues: list[ValidationIssue], node_id: str | None = None) -> list[str]:
    return [
        i.message
        for i in issues
        if i.severity == Severity.WARNING and (node_id is None or i.node_id == node_id)
    ]


START = {"id": "start", "kind": "start"}


def _question(node_id: str = "q", **config) -> dict:
    base = {"content": "Pick one", "variable": "choice"}
    return {"id": node_id, "kind": "question", "config": {**base, **config}}


# === GRAPH-LEVEL ===


def test_valid_graph_has_no_issues():
    assert validate_graph(greeting_graph()) == []


def test_missing_start_node():
    graph = build_graph([{"id": "m", "kind": "message", "config": {"content": "hi"}}], [])
    issues = validate_graph(graph)
    assert ValidationIssue(GRAPH_LEVEL_ID, "Flow must start with a START node") in issues


def test_multiple_start_nodes():
    graph = build_graph([START, {"id": "start2", "kind": "start"}], [])
    assert _errors(validate_graph(graph), GRAPH_LEVEL_ID) == ["Flow can only have one START node"]


def test_duplicate_handle_reported_on_source():
    graph = build_graph(
        [
            START,
            {"id": "a", "kind": "message", "config": {"content": "a"}},
            {"id": "b", "kind": "message", "config": {"content": "b"}},
        ],
        [("start", "a"), ("start", "b")],
    )
    assert _errors(validate_graph(graph), "start") == ["Multiple edges leave from handle '(none)'"]


def test_orphan_node_is_warning_only():
    graph = build_graph(
        [START, {"id": "lonely", "kind": "message", "config": {"content": "hi"}}], []
    )
    issues = validate_graph(graph)
    assert _warnings(issues, "lonely") == ["This node is not connected to any other node"]
    assert not validation_report(graph).blocks_run()


# === CONDITION ===


class TestConditionRules:
    def _graph(self, config: dict, handles: tuple[str, ...] = ("true", "false")):
        nodes = [
            START,
            {"id": "c", "kind": "condition", "config": config},
            {"id": "t", "kind": "message", "config": {"content": "t"}},
            {"id": "f", "kind": "message", "config": {"content": "f"}},
        ]
        edges = [("start", "c")]
        targets = {"true": "t", "false": "f"}
        edges += [("c", targets[h], h) for h in handles]
        return build_graph(nodes, edges)

    def test_missing_false_edge_is_exactly_one_error(self):
        graph = self._graph(
            {"conditionVar": "age", "conditionOp": ">=", "conditionVal": "18"}, handles=("true",)
        )
        issues = validate_graph(graph)
        assert _errors(issues, "c") == ['Condition node must have a "false" output']
        assert _errors(issues) == ['Condition node must have a "false" output']

    def test_missing_true_edge(self):
        graph = self._graph(
            {"conditionVar": "age", "conditionOp": ">=", "conditionVal": "18"}, handles=("false",)
        )
        assert _errors(validate_graph(graph), "c") == ['Condition node must have a "true" output']

    def test_legacy_form_requires_variable_and_operator(self):
        graph = self._graph({"conditionVal": "x"})
        assert _errors(validate_graph(graph), "c") == [
            "Condition node must have a variable to check",
            "Condition node must have an operator",
        ]

    def test_legacy_missing_value_is_warning(self):
        graph = self._graph({"conditionVar": "name", "conditionOp": "=="})
        issues = validate_graph(graph)
        assert _errors(issues, "c") == []
        assert _warnings(issues, "c") == ["Condition node must have a value to compare"]

    def test_unknown_operator(self):
        graph = self._graph({"conditionVar": "name", "conditionOp": "~=", "conditionVal": "x"})
        assert _errors(validate_graph(graph), "c") == ["Condition node has unknown operator '~='"]

    def test_group_rules(self):
        conditions = [{"variable": "a", "operator": "==", "value": "1"}] * 6
        conditions = conditions + [{"variable": "", "operator": "like", "value": "x"}]
        graph = self._graph(
            {"conditionGroup": {"conditions": conditions, "logicalOperator": "XOR"}}
        )
        errors = _errors(validate_graph(graph), "c")
        assert "Condition group can have maximum 5 conditions" in errors
        assert "Condition group logical operator must be AND or OR" in errors
        assert "Condition 7 must have a variable to check" in errors
        assert "Condition 7 has unknown operator 'like'" in errors

    def test_empty_group(self):
        graph = self._graph({"conditionGroup": {"conditions": [], "logicalOperator": "AND"}})
        assert _errors(validate_graph(graph), "c") == [
            "Condition group must have at least one condition"
        ]


# === QUESTION ===


class TestQuestionRules:
    def test_question_needs_variable(self):
        graph = build_graph([START, _question(variable="")], [("start", "q")])
        assert _errors(validate_graph(graph), "q") == ["Question node must have a variable name"]

    def test_buttons_limits(self):
        graph = build_graph(
            [
                START,
                _question(
                    questionType="buttons",
                    buttons=["One", "", "A title that is far too long", "Four"],
                ),
            ],
            [("start", "q")],
        )
        errors = _errors(validate_graph(graph), "q")
        assert errors == [
            "Maximum 3 buttons can be defined",
            "Button 2 cannot be empty",
            "Button 3 can have maximum 20 characters",
        ]

    def test_no_buttons(self):
        graph = build_graph([START, _question(questionType="buttons")], [("start", "q")])
        assert _errors(validate_graph(graph), "q") == ["At least one button must be defined"]

    def test_unconnected_button_is_warning(self):
        graph = build_graph(
            [
                START,
                _question(questionType="buttons", buttons=["Yes", "No"]),
                {"id": "y", "kind": "message", "config": {"content": "yes"}},
            ],
            [("start", "q"), ("q", "y", "btn-0")],
        )
        issues = validate_graph(graph)
        assert _errors(issues, "q") == []
        assert _warnings(issues, "q") == ['No edge defined for button "No"']

    def test_dynamic_buttons_skip_static_checks(self):
        graph = build_graph(
            [START, _question(questionType="buttons", dynamicButtonsSource="products")],
            [("start", "q")],
        )
        assert _errors(validate_graph(graph)) == []

    def test_dynamic_list_skips_static_checks(self):
        graph = build_graph(
            [START, _question(questionType="list", dynamicListSource="products")],
            [("start", "q")],
        )
        assert _errors(validate_graph(graph)) == []

    def test_list_rules(self):
        sections = [
            {"title": "", "rows": []},
            {
                "title": "Shoes",
                "rows": [
                    {"id": "r1", "title": ""},
                    {"id": "r2", "title": "Boots", "description": "x" * 73},
                ],
            },
        ]
        graph = build_graph(
            [START, _question(questionType="list", listSections=sections)], [("start", "q")]
        )
        assert _errors(validate_graph(graph), "q") == [
            "Section 1 must have a title",
            "Section 1 must have at least one row",
            "Section 2, Row 1 must have a title",
            "Section 2, Row 2 description can have maximum 72 characters",
        ]

    def test_list_needs_sections(self):
        graph = build_graph([START, _question(questionType="list")], [("start", "q")])
        assert _errors(validate_graph(graph), "q") == ["At least one section must be defined"]


# === WHATSAPP FLOW / REST ===


def test_whatsapp_flow_rules():
    graph = build_graph(
        [
            START,
            {
                "id": "wf",
                "kind": "whatsapp_flow",
                "config": {"flowCta": "Open the booking form now!"},
            },
        ],
        [("start", "wf")],
    )
    issues = validate_graph(graph)
    assert _errors(issues, "wf") == [
        "WhatsApp Flow node must have a flow selected",
        "Button text (CTA) can have maximum 20 characters",
        "WhatsApp Flow node must have body text",
    ]
    assert _warnings(issues, "wf") == [
        "WhatsApp Flow node should have an outgoing connection for flow completion"
    ]


def test_whatsapp_flow_legacy_body_counts():
    graph = build_graph(
        [
            START,
            {
                "id": "wf",
                "kind": "whatsapp_flow",
                "config": {"whatsappFlowId": "123", "flowCta": "Book", "content": "Book a slot"},
            },
            {"id": "done", "kind": "message", "config": {"content": "Thanks"}},
        ],
        [("start", "wf"), ("wf", "done", "success")],
    )
    assert validate_graph(graph) == []


def test_rest_api_rules():
    graph = build_graph(
        [START, {"id": "api", "kind": "rest_api", "config": {"apiMethod": "FETCH"}}],
        [("start", "api")],
    )
    errors = _errors(validate_graph(graph), "api")
    assert errors[0] == "REST API node must have a URL"
    assert errors[1].startswith("REST API node has unsupported method 'FETCH'")


def test_message_needs_content():
    graph = build_graph([START, {"id": "m", "kind": "message"}], [("start", "m")])
    assert _errors(validate_graph(graph), "m") == ["Message node must have content"]


def test_report_helpers():
    graph = build_graph([{"id": "m", "kind": "message"}], [])
    report = validation_report(graph)
    assert report.has_errors
    assert report.blocks_run()
    assert [i.node_id for i in report.for_node("m")] == ["m", "m"]
    assert report.issues[0].to_dict() == {
        "node_id": "flow",
        "message": "Flow must start with a START node",
        "severity": "error",
    }
