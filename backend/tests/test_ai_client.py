"""
Tests for the AI boundary client: provider failover, retries and response
validation. Provider SDK objects are replaced with small fakes.
"""
import json
from types import SimpleNamespace

import pytest

from analyst.core.config import Settings
from analyst.core.errors import AIServiceError, BoundaryContractError
from analyst.core.schemas import ColumnProfile, SessionState, TextAction
from analyst.services.ai_client import AIClient, extract_plan_list, parse_json_payload


class FakeGroq:
    """Mimics ``AsyncGroq().chat.completions.create``."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class FakeGemini:
    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    async def generate_content_async(self, prompt, generation_config=None):
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(text=reply)


async def no_sleep(seconds):
    return None


def make_client(groq=None, gemini=None, retries=2):
    settings = Settings(ai_max_retries=retries, ai_retry_backoff_seconds=0.1)
    return AIClient(settings=settings, groq_client=groq, gemini_model=gemini, sleep=no_sleep)


@pytest.mark.unit
def test_parse_json_payload_strips_fences():
    assert parse_json_payload('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_payload('  {"b": 2} ') == {"b": 2}


@pytest.mark.unit
def test_parse_json_payload_rejects_invalid_json():
    with pytest.raises(BoundaryContractError) as exc_info:
        parse_json_payload("not json")
    assert exc_info.value.raw == "not json"


@pytest.mark.unit
def test_extract_plan_list_accepts_wrapped_and_bare_arrays():
    plan = {"chart_type": "bar", "title": "T", "aggregation": "sum", "group_by_column": "g"}
    assert extract_plan_list({"plans": [plan]})[0].title == "T"
    assert extract_plan_list([plan])[0].title == "T"
    with pytest.raises(BoundaryContractError):
        extract_plan_list([{"chart_type": "radar", "title": "T"}])
    with pytest.raises(BoundaryContractError):
        extract_plan_list({"note": "no plans"})


@pytest.mark.unit
def test_unconfigured_client_is_unavailable():
    client = make_client()
    assert client.available is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unconfigured_client_raises_service_error():
    with pytest.raises(AIServiceError):
        await make_client().complete("hi", "system")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retries_groq_before_succeeding():
    groq = FakeGroq([RuntimeError("502"), "hello"])
    client = make_client(groq=groq)

    assert await client.complete("hi", "system", json_mode=False) == "hello"
    assert len(groq.requests) == 2
    assert "response_format" not in groq.requests[0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_falls_back_to_gemini_after_groq_exhausts_retries():
    groq = FakeGroq([RuntimeError("down")] * 3)
    gemini = FakeGemini(['{"ok": true}'])
    client = make_client(groq=groq, gemini=gemini)

    assert await client.complete_json("hi") == {"ok": True}
    assert len(groq.requests) == 3
    assert len(gemini.prompts) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_all_providers_failing_raises_service_error():
    client = make_client(groq=FakeGroq([RuntimeError("a")] * 2), gemini=FakeGemini([RuntimeError("b")] * 2),
                         retries=1)

    with pytest.raises(AIServiceError, match="All AI providers failed"):
        await client.complete("hi", "system")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_preparation_plan_maps_semantic_types_and_blank_code():
    reply = json.dumps({
        "explanation": "Nothing to do",
        "transform_code": "   ",
        "output_columns": [{"name": "price", "type": "currency"}, {"name": "city", "type": "categorical"}],
    })
    client = make_client(groq=FakeGroq([reply]))

    plan = await client.generate_preparation_plan(
        [ColumnProfile(name="price", kind="categorical")], [{"price": "$1"}], last_error="boom"
    )

    assert plan.transform_code is None
    assert [(c.name, c.kind, c.semantic_type) for c in plan.output_columns] == [
        ("price", "numerical", "currency"),
        ("city", "categorical", "categorical"),
    ]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_previous_error_is_sent_back_in_the_prompt():
    reply = json.dumps({"explanation": "ok", "transform_code": None})
    groq = FakeGroq([reply])
    client = make_client(groq=groq)

    await client.generate_preparation_plan([], [], last_error="KeyError: 'Amount'")

    prompt = groq.requests[0]["messages"][1]["content"]
    assert "KeyError: 'Amount'" in prompt


@pytest.mark.unit
@pytest.mark.asyncio
async def test_preparation_plan_schema_violation():
    client = make_client(groq=FakeGroq([json.dumps({"transform_code": "return data"})]))

    with pytest.raises(BoundaryContractError, match="explanation"):
        await client.generate_preparation_plan([], [])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_chat_actions_are_decoded():
    reply = json.dumps({"actions": [{"thought": "t", "response_type": "text_response", "text": "hi"}]})
    client = make_client(groq=FakeGroq([reply]))

    actions = await client.generate_chat_actions("hello", SessionState(session_id="s"))

    assert len(actions) == 1
    assert isinstance(actions[0], TextAction)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_chat_action_without_thought_is_a_contract_violation():
    reply = json.dumps({"actions": [{"response_type": "text_response", "text": "hi"}]})
    client = make_client(groq=FakeGroq([reply]))

    with pytest.raises(BoundaryContractError, match="thought"):
        await client.generate_chat_actions("hello", SessionState(session_id="s"))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_proactive_insight_without_card_is_none():
    client = make_client(groq=FakeGroq([json.dumps({"insight": "", "card_id": ""})]))
    assert await client.generate_proactive_insight([]) is None
