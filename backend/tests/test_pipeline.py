"""
Tests for plan proposal, the initial analysis pass and card regeneration.
"""
import pytest

from analyst.core.errors import AIServiceError, BoundaryContractError
from analyst.core.schemas import ProactiveInsight
from analyst.services.ai_client import SUMMARY_FALLBACK
from analyst.services.pipeline import AnalysisPipeline, new_card_id
from conftest import make_plan


@pytest.fixture
def pipeline(session, fake_ai, settings):
    return AnalysisPipeline(session, fake_ai, settings)


@pytest.mark.unit
def test_card_ids_are_unique():
    assert new_card_id() != new_card_id()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_builds_cards_in_plan_order(pipeline, session, fake_ai):
    plans = [
        make_plan("By region"),
        make_plan("By product", group_by_column="product"),
        make_plan("Broken scatter", chart_type="scatter", x_column="units", y_column=None),
    ]

    cards = await pipeline.run(plans, session.token(), initial=False)

    assert [card.plan.title for card in cards] == ["By region", "By product"]
    assert [card.plan.title for card in session.state.cards] == ["By region", "By product"]
    texts = [p.text for p in session.state.progress]
    assert any(text.startswith('Skipping "Broken scatter"') for text in texts)
    assert "Created 2 analysis cards." in texts


@pytest.mark.unit
@pytest.mark.asyncio
async def test_summary_failure_keeps_card_with_fallback_text(pipeline, session, fake_ai):
    fake_ai.summary = AIServiceError("down")

    [card] = await pipeline.run([make_plan()], session.token(), initial=False)

    assert card.ai_summary == SUMMARY_FALLBACK


@pytest.mark.unit
@pytest.mark.asyncio
async def test_initial_run_posts_briefing_insight_and_final_summary(pipeline, session, fake_ai):
    async def insight_for_first_card(cards):
        return ProactiveInsight(insight="North dominates.", card_id=cards[0].id)

    fake_ai.generate_proactive_insight = insight_for_first_card

    await pipeline.run([make_plan()], session.token(), initial=True)

    types = [message.type for message in session.state.chat_history]
    assert types == ["ai_briefing", "ai_proactive_insight"]
    assert session.state.chat_history[1].card_id == session.state.cards[0].id
    assert session.state.core_briefing == "Core briefing."
    assert session.state.final_summary == "Final summary."


@pytest.mark.unit
@pytest.mark.asyncio
async def test_insight_for_unknown_card_is_not_posted(pipeline, session, fake_ai):
    fake_ai.insight = ProactiveInsight(insight="Nope", card_id="card-unknown")

    await pipeline.run([make_plan()], session.token(), initial=True)

    assert [m.type for m in session.state.chat_history] == ["ai_briefing"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_propose_plans_refines_and_pads_to_minimum(pipeline, session, fake_ai, settings):
    candidates = [make_plan(f"Plan {i}") for i in range(6)]
    fake_ai.candidate_plans = [candidates]
    fake_ai.refined_plans = [[candidates[2]]]

    plans = await pipeline.propose_plans(session.state.column_profiles, session.state.dataset)

    assert len(plans) == settings.min_analysis_plans
    assert plans[0].title == "Plan 2"
    assert [p.title for p in plans[1:]] == ["Plan 0", "Plan 1", "Plan 3"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_propose_plans_falls_back_when_refinement_fails(pipeline, session, fake_ai):
    candidates = [make_plan("Good"), make_plan("Bad", group_by_column=None)]
    fake_ai.candidate_plans = [candidates]
    fake_ai.refined_plans = [BoundaryContractError("bad json")]

    plans = await pipeline.propose_plans(session.state.column_profiles, session.state.dataset)

    assert [p.title for p in plans] == ["Good"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_regenerate_keeps_ids_and_drops_empty_cards(pipeline, session, fake_ai):
    token = session.token()
    await pipeline.run([make_plan("Revenue"), make_plan("Products", group_by_column="product")],
                       token, initial=False)
    ids = {card.plan.title: card.id for card in session.state.cards}
    session.change_chart_type(ids["Revenue"], "pie")
    session.replace_dataset([{"region": "West", "revenue": "7"}], token)

    cards = await pipeline.regenerate(token)

    assert [card.id for card in cards] == [ids["Revenue"]]
    assert cards[0].display_chart_type == "pie"
    assert cards[0].aggregated_rows == [{"region": "West", "revenue": 7.0}]
    assert any('Dropping "Products"' in p.text for p in session.state.progress)
