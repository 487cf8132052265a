"""Tests for the chatflow command line."""

import json
import logging

import pytest
from conftest import build_graph, greeting_graph

from chatflow.cli import _parse_vars, main


@pytest.fixture(autouse=True)
def restore_root_logger(monkeypatch):
    # main() reconfigures the root logger and may set NO_COLOR
    monkeypatch.setenv("NO_COLOR", "0")
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def greeting_file(tmp_path):
    path = tmp_path / "greeting.json"
    path.write_text(json.dumps(greeting_graph().to_dict()))
    return path


@pytest.fixture
def broken_file(tmp_path):
    graph = build_graph(
        [{"id": "m", "kind": "message", "config": {"content": "orphan"}}], [], graph_id="broken"
    )
    path = tmp_path / "broken.json"
    path.write_text(json.dumps(graph.to_dict()))
    return path


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


class TestValidate:
    def test_valid_graph(self, greeting_file, capsys):
        assert _exit_code(["validate", str(greeting_file)]) == 0
        assert "0 error(s), 0 warning(s)" in capsys.readouterr().out

    def test_invalid_graph(self, broken_file, capsys):
        assert _exit_code(["validate", str(broken_file)]) == 1
        out = capsys.readouterr().out
        assert "ERROR    flow: Flow must start with a START node" in out
        assert "WARNING  m: This node is not connected to any other node" in out

    def test_json_output(self, broken_file, capsys):
        assert _exit_code(["validate", str(broken_file), "--json"]) == 1
        issues = json.loads(capsys.readouterr().out)
        assert {"node_id": "flow", "message": "Flow must start with a START node", "severity": "error"} in issues

    def test_unreadable_file(self, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text("{oops")
        assert _exit_code(["validate", str(path)]) == 1
        assert "Cannot load" in capsys.readouterr().err

    def test_missing_file(self, tmp_path):
        assert _exit_code(["validate", str(tmp_path / "missing.json")]) == 1


class TestRun:
    def test_console_conversation(self, greeting_file, capsys, monkeypatch):
        replies = iter(["Alice"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))

        assert _exit_code(["run", str(greeting_file), "--show-variables"]) == 0

        out = capsys.readouterr().out
        assert "bot> Hi {{name}}!" in out
        assert "bot> Hi Alice" in out
        assert "-- session completed (flow_ended)" in out
        assert "-- path: start -> message -> question -> condition -> messageTrue" in out
        assert '"name": "Alice"' in out

    def test_persist_saves_under_storage_path(self, greeting_file, tmp_path, capsys, monkeypatch):
        store = tmp_path / "store"
        config_path = tmp_path / "configuration.json"
        config_path.write_text(json.dumps({"engine": {"storage_path": str(store)}}))
        monkeypatch.setenv("CHATFLOW_CONFIG", str(config_path))
        replies = iter(["Alice"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))

        assert _exit_code(["run", str(greeting_file), "--persist"]) == 0

        assert f"-- saving session under {store}" in capsys.readouterr().out
        (state_path,) = store.glob("sessions/*/state.json")
        state = json.loads(state_path.read_text())
        assert state["status"] == "completed"
        assert state["variables"] == {"name": "Alice"}

    def test_initial_variables(self, greeting_file, capsys, monkeypatch):
        replies = iter(["/stop"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))

        assert _exit_code(["run", str(greeting_file), "--var", "name=Ada"]) == 0

        out = capsys.readouterr().out
        assert "bot> Hi Ada!" in out
        assert "-- session stopped (user_stopped)" in out

    def test_end_of_input_stops(self, greeting_file, capsys, monkeypatch):
        def no_input(prompt=""):
            raise EOFError

        monkeypatch.setattr("builtins.input", no_input)

        assert _exit_code(["run", str(greeting_file)]) == 0
        assert "-- session stopped" in capsys.readouterr().out

    def test_button_ids_map_to_handles(self, tmp_path, capsys, monkeypatch):
        graph = build_graph(
            [
                {"id": "start", "kind": "start"},
                {
                    "id": "q",
                    "kind": "question",
                    "config": {
                        "content": "Coffee or tea?",
                        "questionType": "buttons",
                        "variable": "drink",
                        "buttons": [{"id": "b-coffee", "title": "Coffee"}, {"id": "b-tea", "title": "Tea"}],
                    },
                },
                {"id": "tea", "kind": "message", "config": {"content": "Enjoy your {{drink}}"}},
            ],
            [("start", "q"), ("q", "tea", "b-tea")],
        )
        path = tmp_path / "drinks.json"
        path.write_text(json.dumps(graph.to_dict()))
        replies = iter(["b-tea"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))

        assert _exit_code(["run", str(path)]) == 0

        out = capsys.readouterr().out
        assert "[b-coffee] Coffee" in out
        assert "bot> Enjoy your Tea" in out

    def test_invalid_graph_fails(self, broken_file, capsys):
        assert _exit_code(["run", str(broken_file)]) == 1
        assert "Error:" in capsys.readouterr().err


def test_parse_vars():
    assert _parse_vars(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}
    with pytest.raises(ValueError, match="Expected NAME=VALUE"):
        _parse_vars(["oops"])
