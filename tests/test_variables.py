"""Tests for variable storage, substitution and display formatting."""

from chatflow.graph.variables import (
    VariableStore,
    format_for_display,
    get_path,
    substitute,
    substitute_data,
    to_text,
)


class TestSubstitute:
    def test_replaces_tokens(self):
        assert substitute("Hi {{name}}!", {"name": "Ada"}) == "Hi Ada!"

    def test_unresolved_token_stays_verbatim(self):
        assert substitute("Hi {{name}}!", {}) == "Hi {{name}}!"
        assert substitute("Hi {{name}}!", {"name": None}) == "Hi {{name}}!"

    def test_text_without_tokens_is_unchanged(self):
        text = "Plain text with { braces } and {{ spaced }}"
        assert substitute(text, {"spaced": "x"}) == text

    def test_idempotent_once_resolved(self):
        variables = {"name": "Ada", "city": "Berlin"}
        once = substitute("{{name}} from {{city}} ({{zip}})", variables)
        assert once == "Ada from Berlin ({{zip}})"
        assert substitute(once, variables) == once

    def test_dotted_paths(self):
        variables = {"order": {"id": 7, "items": [{"name": "Boots"}, {"name": "Socks"}]}}
        assert substitute("#{{order.id}}: {{order.items[1].name}}", variables) == "#7: Socks"
        assert substitute("{{order.items[5].name}}", variables) == "{{order.items[5].name}}"
        assert substitute("{{order.missing}}", variables) == "{{order.missing}}"

    def test_flat_key_with_dot_wins(self):
        assert substitute("{{user.name}}", {"user.name": "flat"}) == "flat"

    def test_scalar_formatting(self):
        variables = {"ok": True, "count": 3.0, "ratio": 0.5}
        assert substitute("{{ok}} {{count}} {{ratio}}", variables) == "true 3 0.5"

    def test_lists_render_numbered(self):
        variables = {
            "products": [
                {"name": "Boots", "price": 90, "stock": 0},
                {"name": "Socks", "description": "Wool"},
            ]
        }
        assert substitute("{{products}}", variables) == (
            "1. Boots - Price: 90, Stock: 0\n2. Socks - Wool"
        )

    def test_accepts_variable_store(self):
        assert substitute("{{a}}", VariableStore({"a": 1})) == "1"


def test_substitute_data_walks_structures():
    data = {"q": "{{term}}", "filters": ["{{color}}", 3], "nested": {"x": "{{missing}}"}}
    result = substitute_data(data, {"term": "boots", "color": "red"})
    assert result == {"q": "boots", "filters": ["red", 3], "nested": {"x": "{{missing}}"}}


def test_format_for_display():
    assert format_for_display([]) == "(empty list)"
    assert format_for_display({}) == "(empty object)"
    assert format_for_display(["a", "b"]) == "1. a\n2. b"
    assert format_for_display({"status": "open", "_internal": 1}) == "status: open"
    assert format_for_display({"title": "Order", "description": "Shipped"}) == "Order\nShipped"


def test_to_text():
    assert to_text(None) == ""
    assert to_text(False) == "false"
    assert to_text(12) == "12"
    assert to_text({"a": 1}) == '{"a": 1}'


def test_variable_store():
    backing = {"a": 1}
    store = VariableStore.view(backing)
    store.set("b", 2)

    assert backing == {"a": 1, "b": 2}
    assert "a" in store
    assert store.has("b")
    assert store.get("c", "fallback") == "fallback"
    assert sorted(store) == ["a", "b"]
    assert len(store) == 2
    assert store.resolve("nope") is None

    copy = VariableStore(backing)
    copy.set("c", 3)
    assert "c" not in backing


def test_get_path():
    assert get_path({"data": {"items": [1, 2]}}, "data.items") == [1, 2]
    assert get_path({"data": {}}, "data.items", default=[]) == []
    assert get_path("not a mapping", "x", default="d") == "d"
