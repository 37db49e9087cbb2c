"""
Shared fixtures: settings with no pacing, a fresh session, and a scripted
stand-in for the AI client.
"""
from typing import Any, List, Optional

import pytest

from analyst.core.config import Settings
from analyst.core.errors import AIServiceError
from analyst.core.performance import PerformanceMonitor
from analyst.core.schemas import AnalysisPlan, DataPreparationPlan, decode_chat_actions
from analyst.core.storage import reset_storage
from analyst.services.session import AnalysisSession, reset_registry


class FakeAIClient:
    """
    Scripted AI client. Each queue is consumed front to back; an item that is
    an exception instance is raised instead of returned.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self.preparation_plans: List[Any] = []
        self.candidate_plans: List[Any] = []
        self.refined_plans: List[Any] = []
        self.chat_replies: List[Any] = []
        self.summary = "A short summary."
        self.briefing = "Core briefing."
        self.final_summary = "Final summary."
        self.insight = None
        self.calls: List[tuple] = []

    @staticmethod
    def _next(queue: List[Any]) -> Any:
        if not queue:
            raise AIServiceError("No scripted reply left")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_preparation_plan(self, columns, sample_rows, last_error=None) -> DataPreparationPlan:
        self.calls.append(("preparation", last_error))
        return self._next(self.preparation_plans)

    async def generate_candidate_plans(self, columns, sample_rows, count) -> List[AnalysisPlan]:
        self.calls.append(("candidates", count))
        return self._next(self.candidate_plans)

    async def refine_plans(self, drafts, columns) -> List[AnalysisPlan]:
        self.calls.append(("refine", len(drafts)))
        return self._next(self.refined_plans)

    async def generate_card_summary(self, plan, rows) -> str:
        self.calls.append(("summary", plan.title))
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    async def generate_core_briefing(self, cards, columns) -> str:
        self.calls.append(("briefing", len(cards)))
        return self.briefing

    async def generate_proactive_insight(self, cards):
        self.calls.append(("insight", len(cards)))
        return self.insight

    async def generate_final_summary(self, cards) -> str:
        self.calls.append(("final_summary", len(cards)))
        return self.final_summary

    async def generate_chat_actions(self, message, state):
        self.calls.append(("chat", message))
        reply = self._next(self.chat_replies)
        if isinstance(reply, dict):
            return decode_chat_actions(reply)
        return reply


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def settings() -> Settings:
    return Settings(plan_start_delay_seconds=1.0, action_pacing_seconds=0.75)


@pytest.fixture
def fake_ai() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sales_rows() -> List[dict]:
    return [
        {"region": "North", "product": "Widget", "revenue": "$1,200", "units": 10},
        {"region": "South", "product": "Gadget", "revenue": "$800", "units": 4},
        {"region": "North", "product": "Gadget", "revenue": "$300", "units": 2},
        {"region": "East", "product": "Widget", "revenue": "$500", "units": 5},
    ]


@pytest.fixture
def session(settings, sales_rows) -> AnalysisSession:
    session = AnalysisSession("test-session", settings=settings)
    session.replace_dataset(sales_rows)
    return session


def make_plan(title: str = "Revenue by region", **overrides: Any) -> AnalysisPlan:
    data = {
        "chart_type": "bar",
        "title": title,
        "description": "Total revenue per region",
        "aggregation": "sum",
        "group_by_column": "region",
        "value_column": "revenue",
    }
    data.update(overrides)
    return AnalysisPlan(**data)


@pytest.fixture(autouse=True)
def _isolate_globals():
    """Fresh registry, storage and metrics for every test."""
    reset_registry()
    reset_storage()
    PerformanceMonitor.clear_metrics()
    yield
    reset_registry()
    reset_storage()


def prepared(code: Optional[str], explanation: str = "Cleaned the data.") -> DataPreparationPlan:
    return DataPreparationPlan(explanation=explanation, transform_code=code, output_columns=[])
