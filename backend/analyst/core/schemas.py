from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from analyst.core.errors import BoundaryContractError

Row = Dict[str, Any]

ChartKind = Literal["bar", "line", "pie", "doughnut", "scatter"]
AggregationKind = Literal["sum", "count", "avg"]
ColumnKind = Literal["numerical", "categorical"]
SemanticType = Literal["numerical", "categorical", "date", "time", "currency", "percentage"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ColumnProfile(BaseModel):
    name: str
    kind: ColumnKind
    value_range: Optional[Tuple[float, float]] = None  # numerical only
    unique_count: Optional[int] = None  # categorical only
    missing_percentage: float = 0.0
    semantic_type: Optional[SemanticType] = None


class AnalysisPlan(BaseModel):
    chart_type: ChartKind
    title: str
    description: str = ""
    aggregation: Optional[AggregationKind] = None
    group_by_column: Optional[str] = None
    value_column: Optional[str] = None
    x_column: Optional[str] = None
    y_column: Optional[str] = None
    default_top_n: Optional[int] = Field(default=None, ge=1)
    default_hide_others: Optional[bool] = None


class CardFilter(BaseModel):
    column: str
    allowed_values: List[str]


class AnalysisCard(BaseModel):
    id: str
    plan: AnalysisPlan
    aggregated_rows: List[Row]
    ai_summary: str = ""
    display_chart_type: ChartKind
    top_n: Optional[int] = Field(default=None, ge=1)
    hide_others: bool = False
    hidden_labels: List[str] = Field(default_factory=list)
    filter: Optional[CardFilter] = None
    data_visible: bool = False
    created_at: datetime = Field(default_factory=_now)


class DataPreparationPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    explanation: str
    transform_code: Optional[str] = None
    output_columns: List[ColumnProfile] = Field(default_factory=list)


# AI wire format for the preparation request
class PlannedColumn(BaseModel):
    name: str
    type: SemanticType


class PreparationPlanResponse(BaseModel):
    explanation: str
    transform_code: Optional[str] = None
    output_columns: Optional[List[PlannedColumn]] = None


class ProactiveInsight(BaseModel):
    insight: str
    card_id: str


# Chat actions: one variant per response_type

class _ActionBase(BaseModel):
    thought: str

    @field_validator("thought")
    @classmethod
    def thought_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("thought must not be blank")
        return v


class TextAction(_ActionBase):
    response_type: Literal["text_response"]
    text: str
    card_id: Optional[str] = None


class PlanCreationAction(_ActionBase):
    response_type: Literal["plan_creation"]
    plan: AnalysisPlan


class DomAction(BaseModel):
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class DomDirectiveAction(_ActionBase):
    response_type: Literal["dom_action"]
    dom_action: DomAction


class TransformCode(BaseModel):
    explanation: str = ""
    transform_code: str


class CodeExecutionAction(_ActionBase):
    response_type: Literal["execute_code"]
    code: TransformCode


class ProceedAction(_ActionBase):
    """Kept for older AI responses; carries no payload."""
    response_type: Literal["proceed_to_analysis"]


ChatAction = Annotated[
    Union[TextAction, PlanCreationAction, DomDirectiveAction, CodeExecutionAction, ProceedAction],
    Field(discriminator="response_type"),
]

_chat_action_adapter = TypeAdapter(ChatAction)


def decode_chat_actions(payload: Any) -> List[ChatAction]:
    """
    Decode an AI chat response into typed actions.

    The whole batch is checked before any action is returned, so a single
    malformed element rejects the response as a unit.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("actions"), list):
        raise BoundaryContractError("AI response must be an object with an 'actions' list")
    raw_actions = payload["actions"]
    if not raw_actions:
        raise BoundaryContractError("AI response contained no actions")

    for index, raw in enumerate(raw_actions, start=1):
        if not isinstance(raw, dict):
            raise BoundaryContractError(f"Action {index} is not an object")
        thought = raw.get("thought")
        if not isinstance(thought, str) or not thought.strip():
            raise BoundaryContractError(f"Action {index} is missing its 'thought'")

    actions = []
    for index, raw in enumerate(raw_actions, start=1):
        try:
            actions.append(_chat_action_adapter.validate_python(raw))
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise BoundaryContractError(
                f"Action {index} does not match the action schema ({location}: {first['msg']})"
            ) from e
    return actions


# Timeline and rendering events

class ChatMessage(BaseModel):
    sender: Literal["user", "ai"]
    text: str
    type: Literal["user_message", "ai_message", "ai_plan_start", "ai_briefing", "ai_proactive_insight"]
    card_id: Optional[str] = None
    is_error: bool = False
    timestamp: datetime = Field(default_factory=_now)


class ProgressMessage(BaseModel):
    text: str
    level: Literal["system", "error"] = "system"
    timestamp: datetime = Field(default_factory=_now)


class CardEvent(BaseModel):
    sequence: int
    card_id: str
    kind: Literal["highlight", "chart_type", "data_visibility", "filter", "top_n", "hide_others", "legend"]
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class SessionState(BaseModel):
    session_id: str
    filename: Optional[str] = None
    dataset: List[Row] = Field(default_factory=list)
    column_profiles: List[ColumnProfile] = Field(default_factory=list)
    cards: List[AnalysisCard] = Field(default_factory=list)
    chat_history: List[ChatMessage] = Field(default_factory=list)
    progress: List[ProgressMessage] = Field(default_factory=list)
    card_events: List[CardEvent] = Field(default_factory=list)
    preparation_plan: Optional[DataPreparationPlan] = None
    initial_sample: List[Row] = Field(default_factory=list)  # raw rows before preparation
    core_briefing: Optional[str] = None
    final_summary: Optional[str] = None


# HTTP request bodies

class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)


class CardUpdate(BaseModel):
    display_chart_type: Optional[ChartKind] = None
    top_n: Optional[int] = Field(default=None, ge=1)  # explicit null shows every category
    hide_others: Optional[bool] = None
    data_visible: Optional[bool] = None
    toggle_label: Optional[str] = None
