"""
Session variables and ``{{name}}`` substitution.

Variables are the session's memory: question answers, REST responses and
WhatsApp Flow results all land here and are read back by conditions and
message templates.

Substitution rules:
- ``{{name}}`` is replaced with the string form of ``variables[name]``
- dotted paths reach into objects and lists: ``{{order.items[0].name}}``
- a token whose variable is not set stays verbatim, so unset variables are
  visible in the rendered message instead of silently disappearing
"""

import json
import re
from collections.abc import Callable, Iterator, Mapping
from typing import Any

TOKEN_PATTERN = re.compile(r"\{\{([\w.\[\]]+)\}\}")
_INDEX_PART = re.compile(r"^(\w+)\[(\d+)\]$")

_MISSING = object()

# Display helpers cap how much of a structured value ends up in a chat message
_MAX_OBJECT_ENTRIES = 10
_ARRAY_DISPLAY_KEYS = ("name", "title", "label", "displayName", "sku", "id")


class VariableStore:
    """
    Mapping of variable name to value, scoped to one session.

    Keys are case-sensitive. Values are strings, numbers, booleans or
    JSON-compatible objects. Variables are never deleted mid-session.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    @classmethod
    def view(cls, data: dict[str, Any]) -> "VariableStore":
        """Wrap an existing dict without copying; writes go straight through."""
        store = cls()
        store._data = data
        return store

    def get(self, name: str, default: Any = None) -> Any:
        return self._data.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._data[name] = value

    def has(self, name: str) -> bool:
        return name in self._data

    def resolve(self, path: str) -> Any:
        """Resolve a plain name or dotted path. Returns None when unresolved."""
        value = resolve_path(self._data, path)
        return None if value is _MISSING else value

    def read_all(self) -> dict[str, Any]:
        return dict(self._data)

    def __contains__(self, name: object) -> bool:
        return name in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


def resolve_path(variables: Mapping[str, Any], path: str) -> Any:
    """Walk ``a.b[0].c`` through nested dicts/lists. Returns ``_MISSING`` on any miss."""
    if path in variables:
        return variables[path]

    current: Any = variables
    for part in path.split("."):
        if current is None:
            return _MISSING
        match = _INDEX_PART.match(part)
        if match:
            current = _get_key(current, match.group(1))
            if current is _MISSING or not isinstance(current, list):
                return _MISSING
            index = int(match.group(2))
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            current = _get_key(current, part)
            if current is _MISSING:
                return _MISSING
    return current


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Like ``resolve_path`` but returns ``default`` on a miss and accepts non-mappings."""
    if not isinstance(data, Mapping):
        return default
    value = resolve_path(data, path)
    return default if value is _MISSING else value


def _get_key(container: Any, key: str) -> Any:
    if isinstance(container, Mapping):
        return container.get(key, _MISSING)
    return _MISSING


def to_text(value: Any) -> str:
    """
    Canonical string form of a variable value.

    Booleans are lowercase, integral floats drop their ".0", objects are JSON.
    Used for comparisons and anywhere an exact string is needed.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, int | float):
        return str(value)
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, default=str)


def format_for_display(value: Any) -> str:
    """String form for chat messages: lists become numbered lines, objects key/value lines."""
    if isinstance(value, list):
        return _format_list(value)
    if isinstance(value, dict):
        return _format_object(value)
    return to_text(value)


def _format_list(items: list[Any]) -> str:
    if not items:
        return "(empty list)"

    first = items[0]
    if isinstance(first, dict):
        display_key = next((k for k in _ARRAY_DISPLAY_KEYS if k in first), None)
        if display_key:
            lines = []
            for i, item in enumerate(items, start=1):
                name = item.get(display_key) if isinstance(item, dict) else item
                extras = _object_extras(item) if isinstance(item, dict) else []
                suffix = f" - {', '.join(extras)}" if extras else ""
                lines.append(f"{i}. {to_text(name)}{suffix}")
            return "\n".join(lines)
        return "\n".join(f"{i}. {to_text(item)}" for i, item in enumerate(items, start=1))

    return "\n".join(f"{i}. {to_text(item)}" for i, item in enumerate(items, start=1))


def _object_extras(obj: dict[str, Any]) -> list[str]:
    extras = []
    if obj.get("description"):
        extras.append(to_text(obj["description"]))
    if obj.get("price"):
        extras.append(f"Price: {to_text(obj['price'])}")
    if obj.get("stock") is not None:
        extras.append(f"Stock: {to_text(obj['stock'])}")
    return extras


def _format_object(obj: dict[str, Any]) -> str:
    name = obj.get("name") or obj.get("title")
    if name:
        extras = _object_extras(obj)
        return "\n".join([to_text(name), *extras])

    entries = [(k, v) for k, v in obj.items() if not k.startswith("_")][:_MAX_OBJECT_ENTRIES]
    if not entries:
        return "(empty object)"
    return "\n".join(f"{k}: {to_text(v)}" for k, v in entries)


def substitute(
    text: str,
    variables: Mapping[str, Any] | VariableStore,
    formatter: Callable[[Any], str] = format_for_display,
) -> str:
    """
    Replace ``{{name}}`` tokens with variable values.

    Unresolved tokens (unset variables, ``None`` values, bad paths) are left
    verbatim. Values are rendered with ``formatter``: the chat display form by
    default, ``to_text`` where the result is machine-read (URLs, JSON bodies).

    Example:
        substitute("Hi {{name}}, order {{order.id}}", {"name": "Ada", "order": {"id": 7}})
        # -> "Hi Ada, order 7"
    """
    data = variables.read_all() if isinstance(variables, VariableStore) else variables

    def _replace(match: re.Match[str]) -> str:
        value = resolve_path(data, match.group(1))
        if value is _MISSING or value is None:
            return match.group(0)
        return formatter(value)

    return TOKEN_PATTERN.sub(_replace, text)


def substitute_data(
    value: Any,
    variables: Mapping[str, Any] | VariableStore,
    formatter: Callable[[Any], str] = format_for_display,
) -> Any:
    """Substitute inside every string of a JSON-like structure."""
    if isinstance(value, str):
        return substitute(value, variables, formatter)
    if isinstance(value, dict):
        return {k: substitute_data(v, variables, formatter) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_data(v, variables, formatter) for v in value]
    return value
