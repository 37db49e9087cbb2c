"""
Action orchestrator.

Runs the ordered action list produced by one chat turn against the session:
strictly in order, one at a time, with a pacing delay between steps of a
multi-step plan. A failing action is reported and the batch moves on; a
session that is reset mid-batch abandons the remaining actions.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from analyst.core.config import Settings, get_settings
from analyst.core.errors import (
    AIServiceError,
    AnalystError,
    BoundaryContractError,
    DomActionError,
    SessionSupersededError,
    TransformError,
)
from analyst.core.schemas import (
    ChatAction,
    ChatMessage,
    CodeExecutionAction,
    DomDirectiveAction,
    PlanCreationAction,
    ProceedAction,
    TextAction,
    decode_chat_actions,
)
from analyst.services.pipeline import AnalysisPipeline
from analyst.services.session import AnalysisSession
from analyst.services.transform import run_transform_async

logger = logging.getLogger(__name__)

PROCEED_MESSAGE = (
    "The initial analysis is already complete. You can ask me to create new charts or modify the data."
)

CHART_TYPE_ALIASES = {
    "bar": "bar", "bar chart": "bar", "column": "bar",
    "line": "line", "line chart": "line", "area": "line",
    "pie": "pie", "pie chart": "pie",
    "doughnut": "doughnut", "donut": "doughnut", "doughnut chart": "doughnut",
    "scatter": "scatter", "scatter plot": "scatter", "bubble": "scatter",
}

_TRUE_WORDS = frozenset(("true", "1", "yes", "y", "on", "show", "visible"))
_FALSE_WORDS = frozenset(("false", "0", "no", "n", "off", "hide", "hidden"))


class OrchestratorState(str, enum.Enum):
    IDLE = "idle"
    RECEIVING_PLAN = "receiving_plan"
    EXECUTING = "executing"


@dataclass
class BatchResult:
    executed: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)
    abandoned: bool = False


def normalize_chart_type(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return CHART_TYPE_ALIASES.get(value.strip().lower())


def parse_flag(value: Any) -> Optional[bool]:
    """Read a boolean-ish directive argument; None when it cannot be read."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return None


def parse_value_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.replace("|", ",").replace(";", ",").split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return [str(value)]


def validate_batch(actions: Sequence[Union[ChatAction, Dict[str, Any]]]) -> List[ChatAction]:
    """
    Check a whole batch before anything runs. Raw dicts are decoded; typed
    actions are re-checked for a non-blank thought.

    Raises:
        BoundaryContractError: any action is malformed or has no thought
    """
    if actions and all(isinstance(action, dict) for action in actions):
        return decode_chat_actions({"actions": list(actions)})
    if not actions:
        raise BoundaryContractError("AI response contained no actions")

    checked = []
    for index, action in enumerate(actions, start=1):
        if isinstance(action, dict):
            raise BoundaryContractError(f"Action {index} was not decoded")
        thought = getattr(action, "thought", None)
        if not isinstance(thought, str) or not thought.strip():
            raise BoundaryContractError(f"Action {index} is missing its 'thought'")
        checked.append(action)
    return checked


class ActionOrchestrator:
    def __init__(
        self,
        session: AnalysisSession,
        ai_client,
        pipeline: Optional[AnalysisPipeline] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.ai_client = ai_client
        self.settings = settings or get_settings()
        self.pipeline = pipeline or AnalysisPipeline(session, ai_client, self.settings)
        self._sleep = sleep
        self.state = OrchestratorState.IDLE
        self.current_index: Optional[int] = None
        self._handlers: Dict[type, Callable[[Any, int], Awaitable[None]]] = {
            TextAction: self._handle_text,
            PlanCreationAction: self._handle_plan_creation,
            DomDirectiveAction: self._handle_dom_action,
            CodeExecutionAction: self._handle_code_execution,
            ProceedAction: self._handle_proceed,
        }

    async def handle_message(self, message: str) -> Optional[BatchResult]:
        """
        Run one chat turn: post the user's message, ask the planner for
        actions, and execute them. Returns None when nothing was executed.
        """
        state = self.session.state
        if not state.dataset:
            self.session.add_progress("Please upload a CSV file first.", "error")
            return None
        if not self.ai_client.available:
            self.session.add_progress("The AI assistant is not configured on this server.", "error")
            return None

        token = self.session.token()
        self.session.add_chat_message(ChatMessage(sender="user", text=message, type="user_message"), token)
        self.state = OrchestratorState.RECEIVING_PLAN
        try:
            actions = await self.ai_client.generate_chat_actions(message, state)
            return await self.execute(actions, token)
        except (BoundaryContractError, AIServiceError) as e:
            logger.warning(f"Chat turn failed for session {self.session.session_id}: {e}")
            if self.session.is_current(token):
                self.session.add_progress(f"Error: {e}", "error", token)
                self.session.add_chat_message(
                    ChatMessage(
                        sender="ai",
                        text=f"Sorry, I had trouble with that request: {e}",
                        type="ai_message",
                        is_error=True,
                    ),
                    token,
                )
            return None
        except SessionSupersededError:
            return BatchResult(abandoned=True)
        finally:
            self.state = OrchestratorState.IDLE
            self.current_index = None

    async def execute(self, actions: Sequence[Union[ChatAction, Dict[str, Any]]],
                      token: Optional[int] = None) -> BatchResult:
        """
        Execute an ordered batch of actions.

        Raises:
            BoundaryContractError: the batch is invalid; nothing was applied
        """
        batch = validate_batch(actions)
        token = self.session.token() if token is None else token
        result = BatchResult()
        multi_step = len(batch) > 1

        self.state = OrchestratorState.EXECUTING
        try:
            if multi_step:
                self.session.add_chat_message(
                    ChatMessage(sender="ai", text=batch[0].thought, type="ai_plan_start"), token
                )
                self.session.add_progress(f"AI is executing a {len(batch)}-step plan.", token=token)
                await self._sleep(self.settings.plan_start_delay_seconds)

            for index, action in enumerate(batch):
                if not self.session.is_current(token):
                    result.abandoned = True
                    break
                self.current_index = index

                try:
                    if index > 0 or not multi_step:
                        self.session.add_progress(f"AI Thought: {action.thought}", token=token)
                    await self._dispatch(action, token)
                    result.executed += 1
                except SessionSupersededError:
                    result.abandoned = True
                    break
                except AnalystError as e:
                    self._report_failure(result, index, str(e), token)
                except Exception as e:
                    logger.error(f"Action {index + 1} ({type(action).__name__}) crashed: {e}", exc_info=True)
                    self._report_failure(result, index, f"Unexpected error: {e}", token)

                if multi_step:
                    await self._sleep(self.settings.action_pacing_seconds)
        finally:
            self.state = OrchestratorState.IDLE
            self.current_index = None

        if result.abandoned:
            logger.info(
                f"Abandoned action batch for session {self.session.session_id} "
                f"after {result.executed} of {len(batch)} actions"
            )
        return result

    def _report_failure(self, result: BatchResult, index: int, message: str, token: int) -> None:
        result.failures.append((index, message))
        if self.session.is_current(token):
            self.session.add_progress(message, "error", token)

    async def _dispatch(self, action: ChatAction, token: int) -> None:
        handler = self._handlers.get(type(action))
        if handler is None:
            raise BoundaryContractError(f"No handler for action type {type(action).__name__}")
        await handler(action, token)

    # Handlers

    async def _handle_text(self, action: TextAction, token: int) -> None:
        self.session.add_chat_message(
            ChatMessage(sender="ai", text=action.text, type="ai_message", card_id=action.card_id), token
        )

    async def _handle_plan_creation(self, action: PlanCreationAction, token: int) -> None:
        card = await self.pipeline.build_card(action.plan, self.session.state.dataset, token)
        if card is None:
            return
        self.session.add_cards([card], token)
        self.session.add_progress(f'Created new analysis card "{action.plan.title}".', token=token)

    async def _handle_dom_action(self, action: DomDirectiveAction, token: int) -> None:
        tool = action.dom_action.tool_name
        args = action.dom_action.args
        card_id = args.get("card_id") or args.get("cardId")
        if not card_id or self.session.find_card(str(card_id)) is None:
            raise DomActionError(f"Could not find card ID {card_id} to apply {tool}.")
        card_id = str(card_id)

        if tool == "highlightCard":
            self.session.highlight_card(card_id, token)
        elif tool == "changeCardChartType":
            chart_type = normalize_chart_type(args.get("new_type") or args.get("newType"))
            if chart_type is None:
                raise DomActionError(f"Unsupported chart type for {card_id}: {args.get('new_type')!r}")
            self.session.change_chart_type(card_id, chart_type, token)
        elif tool == "showCardData":
            self.session.set_data_visibility(card_id, parse_flag(args.get("visible")), token)
        elif tool == "filterCard":
            column = args.get("column")
            self.session.set_filter(card_id, column, parse_value_list(args.get("values")), token)
        else:
            raise DomActionError(f"Unknown DOM action: {tool}")

    async def _handle_code_execution(self, action: CodeExecutionAction, token: int) -> None:
        rows = await run_transform_async(
            self.session.state.dataset, action.code.transform_code, self.settings.transform_timeout_seconds
        )
        if not rows:
            raise TransformError(
                action.code.transform_code,
                "Transform returned no rows; the dataset was left unchanged.",
            )
        self.session.replace_dataset(rows, token)
        self.session.add_progress(
            f"Data transformation successful: {action.code.explanation or 'dataset updated'}", token=token
        )
        await self.pipeline.regenerate(token)

    async def _handle_proceed(self, action: ProceedAction, token: int) -> None:
        self.session.add_chat_message(ChatMessage(sender="ai", text=PROCEED_MESSAGE, type="ai_message"), token)
