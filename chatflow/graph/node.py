"""
Node Protocol - The declarative building blocks of a conversation graph.

A node is ``{id, kind, label, config}`` where ``config`` is a tagged union
keyed by ``kind``. Each execution strategy only ever sees the config model for
its own kind, so a message node cannot carry question fields and a REST node
cannot carry flow fields.

Node kinds:
- start: entry point, no side effect
- message: send text to the customer
- question: ask for input (free text, reply buttons or a list picker)
- condition: branch on session variables ("true" / "false" handles)
- whatsapp_flow: launch a WhatsApp Flow form and wait for its result
- rest_api: call an HTTP endpoint and branch on "success" / "error"

Config fields accept the editor's camelCase names (``questionType``,
``listSections``, ``apiUrl``) as aliases for the snake_case field names.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeKind(StrEnum):
    """Kind of a node; doubles as the config discriminator."""

    START = "start"
    MESSAGE = "message"
    QUESTION = "question"
    CONDITION = "condition"
    WHATSAPP_FLOW = "whatsapp_flow"
    REST_API = "rest_api"


class QuestionType(StrEnum):
    """How a question node collects its answer."""

    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"


class FlowMode(StrEnum):
    NAVIGATE = "navigate"
    DATA_EXCHANGE = "data_exchange"


# Handles with engine-level meaning
HANDLE_DEFAULT = "default"
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
HANDLE_SUCCESS = "success"
HANDLE_ERROR = "error"

_CONFIG = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class ButtonItem(BaseModel):
    """A reply button; ``id`` doubles as the outgoing edge handle."""

    id: str = ""
    title: str = ""

    model_config = _CONFIG


class ListRow(BaseModel):
    id: str = ""
    title: str = ""
    description: str | None = None

    model_config = _CONFIG


class ListSection(BaseModel):
    title: str = ""
    rows: list[ListRow] = Field(default_factory=list)

    model_config = _CONFIG


class Condition(BaseModel):
    """One comparison: ``variables[variable] <operator> value``."""

    id: str = ""
    variable: str = ""
    operator: str = ""
    value: Any = ""

    model_config = _CONFIG


class ConditionGroup(BaseModel):
    """1-5 conditions joined by a single logical operator."""

    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: str = Field(default="AND", alias="logicalOperator")

    model_config = _CONFIG


# ---------------------------------------------------------------------------
# Per-kind configs
# ---------------------------------------------------------------------------


class StartConfig(BaseModel):
    model_config = _CONFIG


class MessageConfig(BaseModel):
    content: str = ""

    model_config = _CONFIG


class QuestionConfig(BaseModel):
    content: str = ""
    question_type: QuestionType = Field(default=QuestionType.TEXT, alias="questionType")
    variable: str = ""
    header_text: str | None = Field(default=None, alias="headerText")
    footer_text: str | None = Field(default=None, alias="footerText")

    # buttons
    buttons: list[ButtonItem] = Field(default_factory=list)
    dynamic_buttons_source: str | None = Field(default=None, alias="dynamicButtonsSource")

    # list
    list_button_text: str | None = Field(default=None, alias="listButtonText")
    list_sections: list[ListSection] = Field(default_factory=list, alias="listSections")
    dynamic_list_source: str | None = Field(default=None, alias="dynamicListSource")

    # dynamic sources
    dynamic_label_field: str | None = Field(default=None, alias="dynamicLabelField")
    dynamic_desc_field: str | None = Field(default=None, alias="dynamicDescField")

    model_config = _CONFIG

    @field_validator("buttons", mode="before")
    @classmethod
    def _coerce_buttons(cls, value: Any) -> Any:
        # The editor stores either plain titles or {id, title} objects; ids default to btn-<i>
        if not isinstance(value, list):
            return value
        coerced = []
        for index, item in enumerate(value):
            if isinstance(item, str):
                coerced.append({"id": f"btn-{index}", "title": item})
            elif isinstance(item, dict) and not item.get("id"):
                coerced.append({**item, "id": f"btn-{index}"})
            else:
                coerced.append(item)
        return coerced

    @property
    def is_dynamic(self) -> bool:
        if self.question_type == QuestionType.BUTTONS:
            return bool(self.dynamic_buttons_source)
        if self.question_type == QuestionType.LIST:
            return bool(self.dynamic_list_source)
        return False


class ConditionConfig(BaseModel):
    """Either the legacy single comparison or a condition group."""

    condition_var: str | None = Field(default=None, alias="conditionVar")
    condition_op: str | None = Field(default=None, alias="conditionOp")
    condition_val: Any = Field(default=None, alias="conditionVal")
    condition_group: ConditionGroup | None = Field(default=None, alias="conditionGroup")

    model_config = _CONFIG

    @property
    def uses_group(self) -> bool:
        return self.condition_group is not None and len(self.condition_group.conditions) > 0

    def as_group(self) -> ConditionGroup:
        """Normalize both forms into a group."""
        if self.uses_group:
            return self.condition_group  # type: ignore[return-value]
        return ConditionGroup(
            conditions=[
                Condition(
                    variable=self.condition_var or "",
                    operator=self.condition_op or "",
                    value=self.condition_val if self.condition_val is not None else "",
                )
            ],
            logical_operator="AND",
        )


class WhatsAppFlowConfig(BaseModel):
    whatsapp_flow_id: str | None = Field(default=None, alias="whatsappFlowId")
    flow_mode: FlowMode = Field(default=FlowMode.NAVIGATE, alias="flowMode")
    flow_cta: str | None = Field(default=None, alias="flowCta")
    flow_body_text: str | None = Field(default=None, alias="flowBodyText")
    flow_header_text: str | None = Field(default=None, alias="flowHeaderText")
    flow_footer_text: str | None = Field(default=None, alias="flowFooterText")
    flow_initial_screen: str | None = Field(default=None, alias="flowInitialScreen")
    flow_initial_data: dict[str, Any] = Field(default_factory=dict, alias="flowInitialData")
    flow_output_variable: str | None = Field(default=None, alias="flowOutputVariable")

    # Legacy fields, used when the flow-specific ones are empty
    content: str | None = None
    header_text: str | None = Field(default=None, alias="headerText")
    footer_text: str | None = Field(default=None, alias="footerText")

    model_config = _CONFIG

    @property
    def body(self) -> str:
        return self.flow_body_text or self.content or ""

    @property
    def header(self) -> str | None:
        return self.flow_header_text or self.header_text

    @property
    def footer(self) -> str | None:
        return self.flow_footer_text or self.footer_text


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class RestApiConfig(BaseModel):
    url: str = Field(default="", alias="apiUrl")
    method: str = Field(default="GET", alias="apiMethod")
    headers: dict[str, str] = Field(default_factory=dict, alias="apiHeaders")
    body: str | dict[str, Any] | list[Any] | None = Field(default=None, alias="apiBody")
    output_variable: str | None = Field(default=None, alias="apiOutputVariable")
    error_variable: str | None = Field(default=None, alias="apiErrorVariable")
    response_path: str | None = Field(default=None, alias="apiResponsePath")
    timeout_ms: int | None = Field(
        default=None, alias="apiTimeout", description="Request timeout in milliseconds"
    )

    model_config = _CONFIG


# ---------------------------------------------------------------------------
# Nodes (discriminated by kind)
# ---------------------------------------------------------------------------


class _BaseNode(BaseModel):
    id: str
    label: str = ""

    model_config = ConfigDict(extra="ignore", frozen=True)


class StartNode(_BaseNode):
    kind: Literal["start"] = "start"
    config: StartConfig = Field(default_factory=StartConfig)


class MessageNode(_BaseNode):
    kind: Literal["message"] = "message"
    config: MessageConfig = Field(default_factory=MessageConfig)


class QuestionNode(_BaseNode):
    kind: Literal["question"] = "question"
    config: QuestionConfig = Field(default_factory=QuestionConfig)


class ConditionNode(_BaseNode):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class WhatsAppFlowNode(_BaseNode):
    kind: Literal["whatsapp_flow"] = "whatsapp_flow"
    config: WhatsAppFlowConfig = Field(default_factory=WhatsAppFlowConfig)


class RestApiNode(_BaseNode):
    kind: Literal["rest_api"] = "rest_api"
    config: RestApiConfig = Field(default_factory=RestApiConfig)


NodeSpec = Annotated[
    StartNode | MessageNode | QuestionNode | ConditionNode | WhatsAppFlowNode | RestApiNode,
    Field(discriminator="kind"),
]

# Fields the editor bundles into node documents that never reach the engine
UI_ONLY_FIELDS = frozenset(
    {
        "onConfig",
        "onDelete",
        "position",
        "positionAbsolute",
        "selected",
        "dragging",
        "width",
        "height",
        "measured",
    }
)


def normalize_node_document(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Convert a stored node document into the canonical ``{id, kind, label, config}``.

    Accepts both the canonical shape and the editor's ``{id, type, data}`` shape.
    UI callbacks and layout fields are dropped.
    """
    data = raw.get("data") or {}
    kind = raw.get("kind") or data.get("type") or raw.get("type")
    config = raw.get("config")
    if config is None:
        config = {k: v for k, v in data.items() if k not in UI_ONLY_FIELDS and k != "type"}
    else:
        config = {k: v for k, v in config.items() if k not in UI_ONLY_FIELDS}
    label = raw.get("label") or config.pop("label", None) or ""
    return {"id": raw.get("id"), "kind": kind, "label": label, "config": config}
