"""
Command-line interface for chatflow.

Usage:
    chatflow validate flows/welcome.json
    chatflow validate flows/welcome.json --json
    chatflow run flows/welcome.json --var name=Ada
    chatflow run flows/welcome.json --persist

``run`` drives a console conversation: bot messages are printed, your input
is the customer's reply. Type an option id to press a button or pick a list
row, ``/skip`` to leave a waiting node by its default path and ``/stop`` to
end the session. WhatsApp Flow nodes accept the form result as a JSON object.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from chatflow.config import EngineConfig
from chatflow.errors import ChatflowError, MalformedGraphError
from chatflow.graph.edge import GraphSpec
from chatflow.graph.validator import validation_report
from chatflow.observability import configure_logging
from chatflow.runtime.collaborators import (
    DeliveryReceipt,
    FlowLauncher,
    FlowLaunchRequest,
    MessageKind,
    Messenger,
    OutboundMessage,
)
from chatflow.runtime.flow_runtime import FlowRuntime
from chatflow.runtime.rest_client import HttpRestCaller
from chatflow.schemas.events import FlowCompleted, Retry, Skip, UserReply
from chatflow.schemas.session_state import Session, SessionStatus
from chatflow.storage.graph_store import InMemoryGraphStore
from chatflow.storage.session_store import (
    FileSessionStore,
    InMemorySessionStore,
    SessionStore,
)

CONSOLE_CONVERSATION = "console"


def _load_graph_file(path: str) -> GraphSpec:
    return GraphSpec.load(Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = _load_graph_file(args.graph)
    except (OSError, MalformedGraphError) as e:
        print(f"Cannot load {args.graph}: {e}", file=sys.stderr)
        return 1

    report = validation_report(graph)
    if args.json:
        print(json.dumps([i.to_dict() for i in report.issues], indent=2))
    else:
        for issue in report.issues:
            print(f"{issue.severity.upper():<8} {issue.node_id}: {issue.message}")
        print(f"{len(report.errors)} error(s), {len(report.warnings)} warning(s)")
    return 1 if report.blocks_run() else 0


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class ConsoleMessenger(Messenger):
    """Prints outbound messages and remembers the options last offered."""

    def __init__(self) -> None:
        self.options: dict[str, str] = {}

    async def send(self, conversation_id: str, message: OutboundMessage) -> DeliveryReceipt:
        lines = []
        if message.header:
            lines.append(f"*{message.header}*")
        lines.append(message.body)

        self.options = {}
        if message.kind == MessageKind.BUTTONS:
            for button in message.buttons:
                self.options[button.id] = button.title
                lines.append(f"  [{button.id}] {button.title}")
        elif message.kind == MessageKind.LIST:
            for section in message.sections:
                lines.append(f"  {section.title}")
                for row in section.rows:
                    self.options[row.id] = row.title
                    suffix = f" - {row.description}" if row.description else ""
                    lines.append(f"    [{row.id}] {row.title}{suffix}")
        if message.footer:
            lines.append(f"_{message.footer}_")

        print("bot> " + "\n     ".join("\n".join(lines).splitlines()))
        return DeliveryReceipt()


class ConsoleFlowLauncher(FlowLauncher):
    async def launch(self, request: FlowLaunchRequest) -> None:
        print(f"bot> {request.body}")
        print(f"     [{request.cta}] opens WhatsApp Flow '{request.flow_id}'")
        if request.initial_data:
            print(f"     initial data: {json.dumps(request.initial_data)}")


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def _run_console(
    graph: GraphSpec, variables: dict[str, str], persist: bool = False
) -> Session:
    flow_id = graph.id or "console-flow"
    config = EngineConfig()
    messenger = ConsoleMessenger()
    rest_caller = HttpRestCaller()
    if persist:
        session_store: SessionStore = FileSessionStore(config.storage_path)
        print(f"-- saving session under {config.storage_path}")
    else:
        session_store = InMemorySessionStore()
    runtime = FlowRuntime(
        graph_store=InMemoryGraphStore({flow_id: graph}),
        session_store=session_store,
        messenger=messenger,
        rest_caller=rest_caller,
        flow_launcher=ConsoleFlowLauncher(),
        config=config,
    )

    try:
        session = await runtime.start_session(flow_id, CONSOLE_CONVERSATION, variables=variables)
        while not session.status.is_terminal:
            if session.status == SessionStatus.WAITING_REST:
                await rest_caller.drain()
                session = await runtime.get_session(session.id)
                continue
            if session.status == SessionStatus.RUNNING:
                session = await runtime.handle_event(session.id, Retry())
                continue

            line = await _read_line("you> ")
            if line is None or line.strip() == "/stop":
                session = await runtime.stop(session.id)
            elif line.strip() == "/skip":
                session = await runtime.handle_event(session.id, Skip())
            elif session.status == SessionStatus.WAITING_FLOW:
                try:
                    payload = json.loads(line) if line.strip() else {}
                except json.JSONDecodeError:
                    print("     (enter the flow result as a JSON object)")
                    continue
                token = session.awaiting.token if session.awaiting else None
                session = await runtime.handle_event(
                    session.id, FlowCompleted(payload=payload, flow_token=token)
                )
            else:
                reply = line.strip()
                if reply in messenger.options:
                    event = UserReply(value=messenger.options[reply], handle=reply)
                else:
                    event = UserReply(value=reply)
                session = await runtime.handle_event(session.id, event)
    finally:
        await rest_caller.aclose()
    return session


def _parse_vars(pairs: list[str]) -> dict[str, str]:
    variables = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected NAME=VALUE, got '{pair}'")
        variables[name] = value
    return variables


def cmd_run(args: argparse.Namespace) -> int:
    try:
        graph = _load_graph_file(args.graph)
        variables = _parse_vars(args.var or [])
        session = asyncio.run(_run_console(graph, variables, persist=args.persist))
    except (OSError, ValueError, ChatflowError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"-- session {session.status} ({session.completion_reason})")
    print(f"-- path: {' -> '.join(session.history)}")
    if args.show_variables:
        print(json.dumps(session.variables, indent=2, default=str))
    return 0 if session.status != SessionStatus.ERROR else 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate a graph document")
    validate_parser.add_argument("graph", help="Path to the graph JSON document")
    validate_parser.add_argument("--json", action="store_true", help="Print issues as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Chat with a graph in the console")
    run_parser.add_argument("graph", help="Path to the graph JSON document")
    run_parser.add_argument(
        "--var",
        action="append",
        metavar="NAME=VALUE",
        help="Initial session variable (repeatable)",
    )
    run_parser.add_argument(
        "--show-variables", action="store_true", help="Print session variables at the end"
    )
    run_parser.add_argument(
        "--persist",
        action="store_true",
        help="Save the session under the configured storage_path",
    )
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="chatflow",
        description="chatflow - Validate and run conversation graphs",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "human", "json"], help="Log output format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
