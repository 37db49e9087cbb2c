"""
AI boundary client using Groq (primary) and Gemini (fallback).

Every call goes to Groq first and fails over to Gemini. Each provider call is
retried a small, fixed number of times with a short constant backoff; when
every provider fails the caller gets an AIServiceError. Replies are parsed as
JSON and validated against pydantic models, and any mismatch raises
BoundaryContractError instead of being coerced.
"""
import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from groq import AsyncGroq
from pydantic import TypeAdapter, ValidationError

from analyst.core.config import Settings, get_settings
from analyst.core.errors import AIServiceError, BoundaryContractError
from analyst.core.performance import track_performance
from analyst.core.sanitization import sanitize_for_prompt
from analyst.core.schemas import (
    AnalysisCard,
    AnalysisPlan,
    ChatAction,
    ColumnProfile,
    DataPreparationPlan,
    PreparationPlanResponse,
    ProactiveInsight,
    Row,
    SessionState,
    decode_chat_actions,
)
from analyst.services import prompts

logger = logging.getLogger(__name__)

NUMERIC_SEMANTIC_TYPES = frozenset(("numerical", "currency", "percentage"))
SUMMARY_FALLBACK = "Failed to generate AI summary."

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)
_plan_list = TypeAdapter(List[AnalysisPlan])


def parse_json_payload(text: str) -> Any:
    """Strip a markdown fence if present and parse the reply as JSON."""
    cleaned = text.strip()
    match = _FENCE.match(cleaned)
    if match:
        cleaned = match.group(1)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise BoundaryContractError(f"AI response is not valid JSON: {e.msg}", raw=text) from e


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "response"
    return f"{location}: {first['msg']}"


def extract_plan_list(payload: Any) -> List[AnalysisPlan]:
    """Accept a bare plan array or an object whose first list value holds the plans."""
    if isinstance(payload, dict):
        items = payload.get("plans")
        if not isinstance(items, list):
            items = next((v for v in payload.values() if isinstance(v, list)), None)
    else:
        items = payload
    if not isinstance(items, list):
        raise BoundaryContractError("AI response does not contain a list of analysis plans")
    try:
        return _plan_list.validate_python(items)
    except ValidationError as e:
        raise BoundaryContractError(f"Invalid analysis plan ({_describe_validation_error(e)})") from e


def _create_gemini_model(api_key: str, model_name: str):
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    logger.info(f"Gemini AI fallback initialized with model: {model_name}")
    return genai.GenerativeModel(model_name)


class AIClient:
    """Async client for every request the engine makes to the AI planner."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        groq_client: Any = None,
        gemini_model: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._groq = groq_client
        self._gemini = gemini_model
        if self._groq is None and self.settings.groq_api_key:
            self._groq = AsyncGroq(api_key=self.settings.groq_api_key)
            logger.info("Groq AI client initialized")
        if self._gemini is None and self.settings.gemini_api_key:
            self._gemini = _create_gemini_model(self.settings.gemini_api_key, self.settings.gemini_model)

    @property
    def available(self) -> bool:
        return self._groq is not None or self._gemini is not None

    # Transport

    async def _call_groq(self, prompt: str, system_prompt: str, json_mode: bool, max_tokens: int) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._groq.chat.completions.create(
            model=self.settings.groq_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=self.settings.ai_temperature,
            **kwargs,
        )
        content = response.choices[0].message.content
        if not content:
            raise AIServiceError("Groq returned an empty response")
        return content

    async def _call_gemini(self, prompt: str, system_prompt: str, json_mode: bool, max_tokens: int) -> str:
        config = {"temperature": self.settings.ai_temperature, "max_output_tokens": max_tokens}
        if json_mode:
            config["response_mime_type"] = "application/json"
        response = await self._gemini.generate_content_async(
            f"{system_prompt}\n\n{prompt}",
            generation_config=config,
        )
        text = response.text
        if not text:
            raise AIServiceError("Gemini returned an empty response")
        return text

    async def _with_retry(self, provider: str, call: Callable[[], Awaitable[str]]) -> str:
        attempts = self.settings.ai_max_retries + 1
        attempt = 1
        while True:
            try:
                return await call()
            except Exception as e:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"{provider} call failed (attempt {attempt}/{attempts}), retrying: {e}"
                )
            await self._sleep(self.settings.ai_retry_backoff_seconds)
            attempt += 1

    @track_performance("ai_call")
    async def complete(self, prompt: str, system_prompt: str, json_mode: bool = True, max_tokens: int = 2048) -> str:
        """
        Send one prompt, Groq first and Gemini as fallback.

        Raises:
            AIServiceError: no provider is configured or all of them failed
        """
        if not self.available:
            raise AIServiceError("No AI provider is configured")

        failures = []
        providers: List[Tuple[str, Any, Callable[..., Awaitable[str]]]] = [
            ("Groq", self._groq, self._call_groq),
            ("Gemini", self._gemini, self._call_gemini),
        ]
        for name, client, call in providers:
            if client is None:
                continue
            try:
                text = await self._with_retry(
                    name, lambda call=call: call(prompt, system_prompt, json_mode, max_tokens)
                )
            except Exception as e:
                logger.warning(f"{name} failed after retries: {e}")
                failures.append(f"{name}: {e}")
                continue
            logger.debug(f"AI response from {name}")
            return text

        raise AIServiceError("All AI providers failed. " + "; ".join(failures))

    async def complete_json(self, prompt: str, max_tokens: int = 2048) -> Any:
        text = await self.complete(prompt, prompts.SYSTEM_PROMPT, json_mode=True, max_tokens=max_tokens)
        return parse_json_payload(text)

    async def complete_text(self, prompt: str, max_tokens: int = 600) -> str:
        text = await self.complete(prompt, prompts.TEXT_SYSTEM_PROMPT, json_mode=False, max_tokens=max_tokens)
        return text.strip()

    # Requests

    async def generate_preparation_plan(
        self,
        columns: List[ColumnProfile],
        sample_rows: List[Row],
        last_error: Optional[str] = None,
    ) -> DataPreparationPlan:
        prompt = prompts.PREPARATION_PROMPT.format(
            columns=prompts.format_columns(columns),
            sample_count=len(sample_rows),
            rows=prompts.format_rows(sample_rows, len(sample_rows)),
            previous_error=prompts.previous_error_section(last_error),
        )
        payload = await self.complete_json(prompt, max_tokens=3000)
        try:
            response = PreparationPlanResponse.model_validate(payload)
        except ValidationError as e:
            raise BoundaryContractError(
                f"Invalid data preparation plan ({_describe_validation_error(e)})"
            ) from e

        code = response.transform_code if response.transform_code and response.transform_code.strip() else None
        output_columns = [
            ColumnProfile(
                name=column.name,
                kind="numerical" if column.type in NUMERIC_SEMANTIC_TYPES else "categorical",
                semantic_type=column.type,
            )
            for column in response.output_columns or []
        ]
        return DataPreparationPlan(
            explanation=response.explanation,
            transform_code=code,
            output_columns=output_columns,
        )

    async def generate_candidate_plans(
        self, columns: List[ColumnProfile], sample_rows: List[Row], count: int
    ) -> List[AnalysisPlan]:
        prompt = prompts.CANDIDATE_PLANS_PROMPT.format(
            count=count,
            columns=prompts.format_columns(columns),
            rows=prompts.format_rows(sample_rows),
        )
        return extract_plan_list(await self.complete_json(prompt, max_tokens=3000))

    async def refine_plans(self, drafts: List[dict], columns: List[ColumnProfile]) -> List[AnalysisPlan]:
        prompt = prompts.REFINE_PLANS_PROMPT.format(
            columns=prompts.format_columns(columns),
            drafts=prompts.format_drafts(drafts),
            max_plans=self.settings.max_analysis_plans,
        )
        return extract_plan_list(await self.complete_json(prompt, max_tokens=3000))

    async def generate_card_summary(self, plan: AnalysisPlan, rows: List[Row]) -> str:
        shown = min(len(rows), 30)
        prompt = prompts.CARD_SUMMARY_PROMPT.format(
            language=self.settings.response_language,
            title=sanitize_for_prompt(plan.title, 200),
            description=sanitize_for_prompt(plan.description, 500),
            row_count=len(rows),
            shown=shown,
            rows=prompts.format_rows(rows, shown),
        )
        return await self.complete_text(prompt, max_tokens=300)

    async def generate_core_briefing(self, cards: List[AnalysisCard], columns: List[ColumnProfile]) -> str:
        prompt = prompts.CORE_BRIEFING_PROMPT.format(
            language=self.settings.response_language,
            columns=prompts.format_columns(columns),
            cards=prompts.format_cards(cards, rows_per_card=5),
        )
        return await self.complete_text(prompt, max_tokens=500)

    async def generate_proactive_insight(self, cards: List[AnalysisCard]) -> Optional[ProactiveInsight]:
        prompt = prompts.PROACTIVE_INSIGHT_PROMPT.format(cards=prompts.format_cards(cards, rows_per_card=8))
        payload = await self.complete_json(prompt, max_tokens=400)
        if not isinstance(payload, dict):
            raise BoundaryContractError("Proactive insight must be a JSON object")
        if not payload.get("insight") or not payload.get("card_id"):
            return None
        try:
            return ProactiveInsight.model_validate(payload)
        except ValidationError as e:
            raise BoundaryContractError(
                f"Invalid proactive insight ({_describe_validation_error(e)})"
            ) from e

    async def generate_final_summary(self, cards: List[AnalysisCard]) -> str:
        prompt = prompts.FINAL_SUMMARY_PROMPT.format(
            language=self.settings.response_language,
            cards=prompts.format_cards(cards, rows_per_card=5),
        )
        return await self.complete_text(prompt, max_tokens=500)

    async def generate_chat_actions(self, message: str, state: SessionState) -> List[ChatAction]:
        """
        Ask the planner how to answer ``message``.

        The reply is decoded in full before it is returned; a single action
        without a thought rejects the whole batch.
        """
        preparation = state.preparation_plan.explanation if state.preparation_plan else "None."
        prompt = prompts.CHAT_PROMPT.format(
            language=self.settings.response_language,
            columns=prompts.format_columns(state.column_profiles),
            preparation=sanitize_for_prompt(preparation, 1500),
            briefing=sanitize_for_prompt(state.core_briefing or "None yet.", 2000),
            cards=prompts.format_cards(state.cards),
            rows=prompts.format_rows(state.dataset, 5),
            raw_rows=prompts.format_rows(state.initial_sample, 5),
            history=prompts.format_history(state.chat_history),
            message=sanitize_for_prompt(message, 4000),
        )
        payload = await self.complete_json(prompt, max_tokens=3000)
        return decode_chat_actions(payload)
