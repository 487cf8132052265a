"""
Node Executor - One execution strategy per node kind.

The executor:
1. Renders the node's templates through variable substitution
2. Performs its side effect through a collaborator (messenger, REST caller,
   flow launcher)
3. Picks the outgoing edge, or asks the state machine to pause

It never changes session status itself: every call returns a StepOutcome
that the state machine applies.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from chatflow.config import EngineConfig
from chatflow.errors import ExternalCallFailure, UnreachableTransitionError
from chatflow.graph.conditions import evaluate_group
from chatflow.graph.edge import EdgeSpec, GraphSpec
from chatflow.graph.node import (
    HANDLE_ERROR,
    HANDLE_FALSE,
    HANDLE_SUCCESS,
    HANDLE_TRUE,
    ButtonItem,
    ListRow,
    ListSection,
    NodeKind,
    QuestionConfig,
    QuestionType,
)
from chatflow.graph.variables import (
    VariableStore,
    format_for_display,
    substitute,
    substitute_data,
    to_text,
)
from chatflow.runtime.collaborators import (
    DeliveryReceipt,
    FlowLauncher,
    FlowLaunchRequest,
    MessageKind,
    Messenger,
    OutboundMessage,
    RestCallback,
    RestCaller,
    RestRequest,
)
from chatflow.schemas.events import FlowCompleted, RestCompleted, Skip, UserReply
from chatflow.schemas.session_state import (
    Awaiting,
    AwaitingKind,
    CompletionReason,
    Session,
    SessionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

# Written into a question's variable when the reply carried no usable value
NO_SELECTION = "__no_selection__"

# Written after every REST call and external failure, for conditions to branch on
LAST_API_STATUS_VARIABLE = "__last_api_status__"
LAST_API_ERROR_VARIABLE = "__last_api_error__"

DYNAMIC_PAGE_SIZE = 8
MAX_DYNAMIC_BUTTONS = 3
PAGE_ROW_PATTERN = re.compile(r"^__PAGE_(PREV|NEXT)__(\d+)$")
TEXT_FALLBACK_HINT = "(Please type your choice)"
DEFAULT_LIST_BUTTON_TEXT = "Select"


class OutcomeKind(StrEnum):
    ADVANCE = "advance"
    PAUSE = "pause"
    END = "end"
    FAIL = "fail"
    REPEAT = "repeat"


@dataclass
class StepOutcome:
    """What the state machine should do after a node ran."""

    kind: OutcomeKind
    edge: EdgeSpec | None = None
    status: SessionStatus | None = None
    awaiting: Awaiting | None = None
    reason: str | None = None
    error: str | None = None

    @classmethod
    def advance(cls, edge: EdgeSpec) -> "StepOutcome":
        return cls(kind=OutcomeKind.ADVANCE, edge=edge)

    @classmethod
    def pause(cls, status: SessionStatus, awaiting: Awaiting) -> "StepOutcome":
        return cls(kind=OutcomeKind.PAUSE, status=status, awaiting=awaiting)

    @classmethod
    def end(cls, reason: str = CompletionReason.FLOW_ENDED) -> "StepOutcome":
        return cls(kind=OutcomeKind.END, reason=reason)

    @classmethod
    def fail(cls, reason: str, error: str | None = None) -> "StepOutcome":
        return cls(kind=OutcomeKind.FAIL, reason=reason, error=error)

    @classmethod
    def repeat(cls) -> "StepOutcome":
        return cls(kind=OutcomeKind.REPEAT)


@dataclass
class ExternalFailure:
    node_id: str
    call_kind: str  # "rest" or "flow"
    error: str


@dataclass
class NodeContext:
    """
    Everything a strategy needs to run one node.

    Side effects performed through the context are recorded so the state
    machine can broadcast them after the node finishes.
    """

    graph: GraphSpec
    session: Session
    node: Any
    messenger: Messenger
    rest_caller: RestCaller | None = None
    flow_launcher: FlowLauncher | None = None
    on_rest_complete: RestCallback | None = None
    config: EngineConfig = field(default_factory=EngineConfig)
    now: datetime = field(default_factory=utc_now)

    variable_changes: list[tuple[str, Any]] = field(default_factory=list)
    sent: list[tuple[OutboundMessage, DeliveryReceipt]] = field(default_factory=list)
    failures: list[ExternalFailure] = field(default_factory=list)

    @property
    def variables(self) -> VariableStore:
        return VariableStore.view(self.session.variables)

    def render(
        self, text: str | None, formatter: Callable[[Any], str] = format_for_display
    ) -> str | None:
        if text is None:
            return None
        return substitute(text, self.session.variables, formatter)

    def set_variable(self, name: str, value: Any) -> None:
        self.session.variables[name] = value
        self.variable_changes.append((name, value))

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        """Deliver through the messenger. MessageDeliveryError propagates."""
        message = message.model_copy(update={"node_id": self.node.id})
        receipt = await self.messenger.send(self.session.conversation_id, message)
        self.sent.append((message, receipt))
        return receipt


# ---------------------------------------------------------------------------
# Edge selection
# ---------------------------------------------------------------------------


def select_edge(graph: GraphSpec, node_id: str, handle: str | None = None) -> EdgeSpec:
    """
    Pick the edge leaving ``node_id``.

    With a handle, only that branch qualifies. Without one, the single-edge
    tie-break applies (default or handle-less edge first, then document order).

    Raises:
        UnreachableTransitionError: no qualifying edge exists
    """
    edge = graph.outgoing_by_handle(node_id, handle) if handle else graph.default_edge(node_id)
    if edge is None:
        raise UnreachableTransitionError(node_id, handle)
    return edge


def _success_edge(graph: GraphSpec, node_id: str) -> EdgeSpec:
    """The "success" branch, else the default path; never the "error" branch."""
    edge = graph.outgoing_by_handle(node_id, HANDLE_SUCCESS) or graph.fallback_edge(node_id)
    if edge is None:
        edge = next(
            (e for e in graph.outgoing(node_id) if e.source_handle != HANDLE_ERROR),
            None,
        )
    if edge is None:
        raise UnreachableTransitionError(node_id, HANDLE_SUCCESS)
    return edge


# ---------------------------------------------------------------------------
# Dynamic option sources
# ---------------------------------------------------------------------------


def _item_label(item: Any, label_field: str | None, index: int, fallback: str) -> str:
    if not isinstance(item, dict):
        return to_text(item)
    if label_field and item.get(label_field):
        return to_text(item[label_field])
    for key in ("name", "title", "label"):
        if item.get(key):
            return to_text(item[key])
    return f"{fallback} {index + 1}"


def _item_id(item: Any, default: str) -> str:
    if isinstance(item, dict):
        if item.get("id") is not None:
            return to_text(item["id"])
        if item.get("slug"):
            return to_text(item["slug"])
    return default


def build_dynamic_buttons(data: Any, label_field: str | None = None) -> list[ButtonItem]:
    """First three items of a list variable as reply buttons."""
    if not isinstance(data, list):
        logger.warning("Dynamic buttons source is not a list")
        return []
    buttons = []
    for index, item in enumerate(data[:MAX_DYNAMIC_BUTTONS]):
        label = _item_label(item, label_field, index, "Option")
        buttons.append(ButtonItem(id=_item_id(item, f"btn-{index}")[:256], title=label[:20]))
    return buttons


def _dynamic_row(item: Any, index: int, label_field: str | None, desc_field: str | None) -> ListRow:
    label = _item_label(item, label_field, index, "Item")
    if isinstance(item, dict):
        desc = item.get(desc_field) if desc_field else item.get("description")
    else:
        desc = None
    return ListRow(
        id=_item_id(item, label)[:200],
        title=label[:24],
        description=to_text(desc)[:72] if desc else None,
    )


def build_dynamic_sections(
    data: Any,
    label_field: str | None = None,
    desc_field: str | None = None,
    page: int = 1,
) -> list[ListSection]:
    """
    One page of a list variable as a list section.

    Pages hold DYNAMIC_PAGE_SIZE items so the previous/next rows always fit
    under the 10-row limit.
    """
    if not isinstance(data, list):
        logger.warning("Dynamic list source is not a list")
        return []
    if not data:
        return []

    total_pages = -(-len(data) // DYNAMIC_PAGE_SIZE)
    current = max(1, min(page, total_pages))
    start = (current - 1) * DYNAMIC_PAGE_SIZE
    rows = [
        _dynamic_row(item, start + i, label_field, desc_field)
        for i, item in enumerate(data[start : start + DYNAMIC_PAGE_SIZE])
    ]

    if total_pages == 1:
        return [ListSection(title="Options", rows=rows)]

    if current > 1:
        rows.append(
            ListRow(
                id=f"__PAGE_PREV__{current - 1}",
                title="Previous page",
                description=f"Page {current - 1}/{total_pages}",
            )
        )
    if current < total_pages:
        rows.append(
            ListRow(
                id=f"__PAGE_NEXT__{current + 1}",
                title="Next page",
                description=f"Page {current + 1}/{total_pages}",
            )
        )
    return [ListSection(title=f"Page {current}/{total_pages}", rows=rows)]


def _page_number(value: Any) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return 1


def page_variable(source: str) -> str:
    return f"{source}_page"


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class NodeExecutor:
    """
    Runs nodes and resumes paused ones.

    Example:
        executor = NodeExecutor()
        outcome = await executor.execute(ctx)          # run ctx.node
        outcome = await executor.resume(ctx, reply)    # complete a paused node
    """

    def __init__(self) -> None:
        self._strategies = {
            NodeKind.START: self._execute_start,
            NodeKind.MESSAGE: self._execute_message,
            NodeKind.QUESTION: self._execute_question,
            NodeKind.CONDITION: self._execute_condition,
            NodeKind.WHATSAPP_FLOW: self._execute_whatsapp_flow,
            NodeKind.REST_API: self._execute_rest_api,
        }

    async def execute(self, ctx: NodeContext) -> StepOutcome:
        """Run the node's side effect and pick what happens next."""
        strategy = self._strategies[NodeKind(ctx.node.kind)]
        try:
            return await strategy(ctx)
        except UnreachableTransitionError as e:
            logger.info(f"{e}; flow ends here")
            return StepOutcome.end(CompletionReason.FLOW_ENDED)

    async def resume(self, ctx: NodeContext, event: Any) -> StepOutcome:
        """Complete a paused node with the event that was awaited."""
        try:
            if isinstance(event, UserReply) and ctx.node.kind == NodeKind.QUESTION:
                return await self._resume_question(ctx, event)
            if isinstance(event, FlowCompleted) and ctx.node.kind == NodeKind.WHATSAPP_FLOW:
                return self._resume_whatsapp_flow(ctx, event)
            if isinstance(event, RestCompleted) and ctx.node.kind == NodeKind.REST_API:
                return self._resume_rest_api(ctx, event)
            if isinstance(event, Skip):
                return self._skip(ctx)
        except UnreachableTransitionError as e:
            logger.info(f"{e}; flow ends here")
            return StepOutcome.end(CompletionReason.FLOW_ENDED)
        raise ValueError(f"Node '{ctx.node.id}' ({ctx.node.kind}) cannot resume on {type(event).__name__}")

    # === START / MESSAGE / CONDITION ===

    async def _execute_start(self, ctx: NodeContext) -> StepOutcome:
        return StepOutcome.advance(select_edge(ctx.graph, ctx.node.id))

    async def _execute_message(self, ctx: NodeContext) -> StepOutcome:
        await ctx.send(OutboundMessage.text(ctx.render(ctx.node.config.content) or ""))
        return StepOutcome.advance(select_edge(ctx.graph, ctx.node.id))

    async def _execute_condition(self, ctx: NodeContext) -> StepOutcome:
        group = ctx.node.config.as_group()
        result = evaluate_group(group, ctx.variables)
        logger.debug(f"Condition '{ctx.node.id}' evaluated to {result}")
        handle = HANDLE_TRUE if result else HANDLE_FALSE
        return StepOutcome.advance(select_edge(ctx.graph, ctx.node.id, handle))

    # === QUESTION ===

    def _question_buttons(self, ctx: NodeContext, config: QuestionConfig) -> list[ButtonItem]:
        if config.dynamic_buttons_source:
            return build_dynamic_buttons(
                ctx.session.variables.get(config.dynamic_buttons_source),
                config.dynamic_label_field,
            )
        return [ButtonItem(id=b.id, title=b.title[:20]) for b in config.buttons]

    def _question_sections(self, ctx: NodeContext, config: QuestionConfig) -> list[ListSection]:
        if config.dynamic_list_source:
            page = _page_number(ctx.session.variables.get(page_variable(config.dynamic_list_source)))
            return build_dynamic_sections(
                ctx.session.variables.get(config.dynamic_list_source),
                config.dynamic_label_field,
                config.dynamic_desc_field,
                page,
            )
        return [
            ListSection(
                title=section.title[:24],
                rows=[
                    ListRow(
                        id=row.id,
                        title=row.title[:24],
                        description=row.description[:72] if row.description else None,
                    )
                    for row in section.rows
                ],
            )
            for section in config.list_sections
        ]

    async def _execute_question(self, ctx: NodeContext) -> StepOutcome:
        config: QuestionConfig = ctx.node.config
        body = ctx.render(config.content) or ""
        header = ctx.render(config.header_text)
        footer = ctx.render(config.footer_text)

        if config.question_type == QuestionType.BUTTONS:
            buttons = self._question_buttons(ctx, config)
            if buttons:
                message = OutboundMessage(
                    kind=MessageKind.BUTTONS, body=body, header=header, footer=footer, buttons=buttons
                )
            else:
                logger.warning(f"Question '{ctx.node.id}' has no buttons, asking for text instead")
                message = OutboundMessage.text(f"{body}\n\n{TEXT_FALLBACK_HINT}")
        elif config.question_type == QuestionType.LIST:
            sections = self._question_sections(ctx, config)
            if sections and sections[0].rows:
                message = OutboundMessage(
                    kind=MessageKind.LIST,
                    body=body,
                    header=header,
                    footer=footer,
                    list_button_text=config.list_button_text or DEFAULT_LIST_BUTTON_TEXT,
                    sections=sections,
                )
            else:
                logger.warning(f"Question '{ctx.node.id}' has no list rows, asking for text instead")
                message = OutboundMessage.text(f"{body}\n\n{TEXT_FALLBACK_HINT}")
        else:
            message = OutboundMessage.text(body)

        await ctx.send(message)
        return StepOutcome.pause(
            SessionStatus.WAITING_INPUT,
            Awaiting(kind=AwaitingKind.INPUT, node_id=ctx.node.id),
        )

    def _question_options(self, ctx: NodeContext, config: QuestionConfig) -> list[tuple[str, str]]:
        """(id, title) of every option the customer could have picked."""
        if config.question_type == QuestionType.BUTTONS:
            return [(b.id, b.title) for b in self._question_buttons(ctx, config)]
        if config.question_type == QuestionType.LIST:
            if config.dynamic_list_source:
                data = ctx.session.variables.get(config.dynamic_list_source)
                if not isinstance(data, list):
                    return []
                rows = [
                    _dynamic_row(item, i, config.dynamic_label_field, config.dynamic_desc_field)
                    for i, item in enumerate(data)
                ]
            else:
                rows = [row for section in config.list_sections for row in section.rows]
            return [(row.id, row.title) for row in rows]
        return []

    async def _resume_question(self, ctx: NodeContext, reply: UserReply) -> StepOutcome:
        config: QuestionConfig = ctx.node.config
        node_id = ctx.node.id

        if config.question_type == QuestionType.TEXT:
            if config.variable:
                ctx.set_variable(config.variable, reply.value)
            return StepOutcome.advance(select_edge(ctx.graph, node_id))

        if config.question_type == QuestionType.LIST and reply.handle and config.dynamic_list_source:
            page_match = PAGE_ROW_PATTERN.match(reply.handle)
            if page_match:
                page = int(page_match.group(2))
                ctx.set_variable(page_variable(config.dynamic_list_source), page)
                logger.info(f"Question '{node_id}' moving to page {page}")
                return StepOutcome.repeat()

        options = self._question_options(ctx, config)
        chosen_title: str | None = None
        edge: EdgeSpec | None = None

        # 1. explicit handle from the client
        if reply.handle:
            edge = ctx.graph.outgoing_by_handle(node_id, reply.handle)
            chosen_title = next((t for i, t in options if i == reply.handle), None)

        # 2. reply value matched against option ids and titles
        if edge is None and reply.value:
            wanted = reply.value.strip().lower()
            match = next(
                ((i, t) for i, t in options if i.lower() == wanted or t.lower() == wanted), None
            )
            if match:
                chosen_title = chosen_title or match[1]
                edge = ctx.graph.outgoing_by_handle(node_id, match[0])

        # 3./4. "default" handle, then a handle-less edge
        if edge is None:
            edge = ctx.graph.fallback_edge(node_id)

        if config.variable:
            value = reply.value or chosen_title or NO_SELECTION
            ctx.set_variable(config.variable, value)

        if edge is None:
            raise UnreachableTransitionError(node_id, reply.handle)
        return StepOutcome.advance(edge)

    # === WHATSAPP FLOW ===

    async def _execute_whatsapp_flow(self, ctx: NodeContext) -> StepOutcome:
        config = ctx.node.config
        flow_token = f"{ctx.session.id}:{ctx.node.id}"

        if ctx.flow_launcher is None:
            return self._route_failure(ctx, "flow", "No WhatsApp Flow launcher configured")

        request = FlowLaunchRequest(
            session_id=ctx.session.id,
            conversation_id=ctx.session.conversation_id,
            node_id=ctx.node.id,
            flow_id=config.whatsapp_flow_id or "",
            flow_token=flow_token,
            mode=str(config.flow_mode),
            cta=ctx.render(config.flow_cta) or "",
            body=ctx.render(config.body) or "",
            header=ctx.render(config.header),
            footer=ctx.render(config.footer),
            initial_screen=config.flow_initial_screen,
            initial_data=substitute_data(config.flow_initial_data, ctx.session.variables),
        )
        try:
            await ctx.flow_launcher.launch(request)
        except ExternalCallFailure as e:
            return self._route_failure(ctx, "flow", str(e))

        expires_at = ctx.now + timedelta(minutes=ctx.config.flow_timeout_minutes)
        return StepOutcome.pause(
            SessionStatus.WAITING_FLOW,
            Awaiting(
                kind=AwaitingKind.FLOW,
                node_id=ctx.node.id,
                token=flow_token,
                expires_at=expires_at,
            ),
        )

    def _resume_whatsapp_flow(self, ctx: NodeContext, event: FlowCompleted) -> StepOutcome:
        if not event.ok:
            return self._route_failure(ctx, "flow", event.error or "WhatsApp Flow failed")

        output_variable = ctx.node.config.flow_output_variable
        if output_variable:
            ctx.set_variable(output_variable, event.payload)
        return StepOutcome.advance(_success_edge(ctx.graph, ctx.node.id))

    # === REST API ===

    def _render_rest_body(self, ctx: NodeContext, body: Any) -> Any:
        if body is None or body == "":
            return None
        if isinstance(body, str):
            rendered = ctx.render(body, to_text)
            try:
                return json.loads(rendered)
            except (json.JSONDecodeError, TypeError):
                return rendered
        return substitute_data(body, ctx.session.variables, to_text)

    async def _execute_rest_api(self, ctx: NodeContext) -> StepOutcome:
        config = ctx.node.config

        if ctx.rest_caller is None or ctx.on_rest_complete is None:
            return self._route_failure(ctx, "rest", "No REST caller configured")

        timeout_seconds = (
            config.timeout_ms / 1000 if config.timeout_ms else ctx.config.rest_timeout_seconds
        )
        request = RestRequest(
            request_id=f"{ctx.session.id}:{ctx.node.id}:{len(ctx.session.history)}",
            session_id=ctx.session.id,
            node_id=ctx.node.id,
            method=config.method.upper(),
            url=ctx.render(config.url, to_text) or "",
            headers={k: ctx.render(v, to_text) or "" for k, v in config.headers.items()},
            body=self._render_rest_body(ctx, config.body),
            response_path=config.response_path,
            timeout_seconds=timeout_seconds,
        )
        try:
            await ctx.rest_caller.dispatch(request, ctx.on_rest_complete)
        except ExternalCallFailure as e:
            return self._route_failure(ctx, "rest", str(e))

        return StepOutcome.pause(
            SessionStatus.WAITING_REST,
            Awaiting(kind=AwaitingKind.REST, node_id=ctx.node.id, token=request.request_id),
        )

    def _resume_rest_api(self, ctx: NodeContext, event: RestCompleted) -> StepOutcome:
        config = ctx.node.config
        if event.ok:
            if config.output_variable:
                ctx.set_variable(config.output_variable, event.payload)
            ctx.set_variable(LAST_API_STATUS_VARIABLE, event.status_code)
            return StepOutcome.advance(_success_edge(ctx.graph, ctx.node.id))

        error = event.error or (
            f"HTTP {event.status_code}" if event.status_code else "REST call failed"
        )
        if config.error_variable:
            ctx.set_variable(config.error_variable, error)
        return self._route_failure(ctx, "rest", error)

    # === FAILURES / SKIP ===

    def _route_failure(self, ctx: NodeContext, call_kind: str, error: str) -> StepOutcome:
        """Follow the "error" branch if there is one, otherwise fail the session."""
        ctx.failures.append(ExternalFailure(node_id=ctx.node.id, call_kind=call_kind, error=error))
        ctx.set_variable(LAST_API_ERROR_VARIABLE, error)
        edge = ctx.graph.outgoing_by_handle(ctx.node.id, HANDLE_ERROR)
        if edge is not None:
            logger.info(f"{call_kind} call failed on '{ctx.node.id}', following error branch: {error}")
            return StepOutcome.advance(edge)
        logger.warning(f"{call_kind} call failed on '{ctx.node.id}' with no error branch: {error}")
        return StepOutcome.fail(CompletionReason.EXTERNAL_CALL_FAILED, error)

    def _skip(self, ctx: NodeContext) -> StepOutcome:
        edge = ctx.graph.fallback_edge(ctx.node.id) or ctx.graph.default_edge(ctx.node.id)
        if edge is None:
            raise UnreachableTransitionError(ctx.node.id)
        return StepOutcome.advance(edge)
