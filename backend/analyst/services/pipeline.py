"""
Analysis pipeline: plans in, cards out.

The initial analysis fans out across plans. Each plan is executed and
summarized independently, with summaries requested concurrently. Results are
joined and inserted in plan order. Regeneration replays every existing card's
plan against the current dataset.
"""
import asyncio
import itertools
import logging
import time
from typing import List, Optional

from analyst.core.config import Settings, get_settings
from analyst.core.errors import AIServiceError, BoundaryContractError, PlanError
from analyst.core.schemas import AnalysisCard, AnalysisPlan, ChatMessage, ColumnProfile, Row
from analyst.services.ai_client import SUMMARY_FALLBACK
from analyst.services.aggregation import execute_plan
from analyst.services.session import AnalysisSession

logger = logging.getLogger(__name__)

_card_sequence = itertools.count(1)


def new_card_id() -> str:
    """Card ids sort by creation time within a process."""
    return f"card-{int(time.time() * 1000)}-{next(_card_sequence)}"


def make_card(plan: AnalysisPlan, rows: List[Row], settings: Settings, summary: str = "") -> AnalysisCard:
    """
    Materialize a card. Wide non-scatter results open collapsed to the
    default Top-N with the "Others" bucket hidden.
    """
    if plan.chart_type != "scatter" and len(rows) > settings.top_n_category_threshold:
        top_n, hide_others = settings.default_top_n, True
    else:
        top_n, hide_others = plan.default_top_n, bool(plan.default_hide_others)
    return AnalysisCard(
        id=new_card_id(),
        plan=plan,
        aggregated_rows=rows,
        ai_summary=summary,
        display_chart_type=plan.chart_type,
        top_n=top_n,
        hide_others=hide_others,
    )


class AnalysisPipeline:
    def __init__(self, session: AnalysisSession, ai_client, settings: Optional[Settings] = None):
        self.session = session
        self.ai_client = ai_client
        self.settings = settings or get_settings()

    async def summarize(self, plan: AnalysisPlan, rows: List[Row]) -> str:
        try:
            return await self.ai_client.generate_card_summary(plan, rows)
        except (AIServiceError, BoundaryContractError) as e:
            logger.warning(f'Summary for "{plan.title}" failed: {e}')
            return SUMMARY_FALLBACK

    async def build_card(self, plan: AnalysisPlan, rows: List[Row], token: int) -> Optional[AnalysisCard]:
        """
        Execute ``plan`` and summarize the result. Returns None (after a
        notice) when the result is empty.

        Raises:
            PlanError: the plan is missing columns for its chart kind
        """
        aggregated = execute_plan(rows, plan)
        if not aggregated:
            self.session.add_progress(f'Skipping "{plan.title}" due to empty result.', "error", token)
            return None
        summary = await self.summarize(plan, aggregated)
        self.session.ensure_current(token)
        return make_card(plan, aggregated, self.settings, summary)

    async def _build_or_report(self, plan: AnalysisPlan, rows: List[Row], token: int) -> Optional[AnalysisCard]:
        try:
            return await self.build_card(plan, rows, token)
        except PlanError as e:
            self.session.add_progress(f'Skipping "{plan.title}": {e}', "error", token)
            return None

    async def propose_plans(self, columns: List[ColumnProfile], rows: List[Row]) -> List[AnalysisPlan]:
        """
        Candidate plans, screened by executing them and passing the results
        through the AI quality gate. Falls back to the raw candidates when
        refinement fails.
        """
        sample = rows[:self.settings.analysis_sample_rows]
        candidates = await self.ai_client.generate_candidate_plans(
            columns, sample, self.settings.max_analysis_plans
        )

        drafts = []
        for plan in candidates:
            try:
                aggregated = execute_plan(rows, plan)
            except PlanError as e:
                logger.info(f'Dropping candidate "{plan.title}": {e}')
                continue
            if aggregated:
                drafts.append({"plan": plan, "rows": aggregated[:10], "row_count": len(aggregated)})
        if not drafts:
            return candidates[:self.settings.fallback_plan_count]

        try:
            refined = await self.ai_client.refine_plans(drafts, columns)
        except (AIServiceError, BoundaryContractError) as e:
            logger.warning(f"Plan refinement failed, using candidates: {e}")
            return [d["plan"] for d in drafts][:self.settings.fallback_plan_count]

        plans = list(refined)
        titles = {plan.title for plan in plans}
        for draft in drafts:
            if len(plans) >= self.settings.min_analysis_plans:
                break
            if draft["plan"].title not in titles:
                plans.append(draft["plan"])
                titles.add(draft["plan"].title)
        return plans[:self.settings.max_analysis_plans]

    async def run(self, plans: List[AnalysisPlan], token: int, initial: bool = True) -> List[AnalysisCard]:
        """Build cards for ``plans`` against the current dataset and insert them."""
        rows = self.session.state.dataset
        results = await asyncio.gather(*(self._build_or_report(plan, rows, token) for plan in plans))
        cards = [card for card in results if card is not None]
        self.session.add_cards(cards, token)
        self.session.add_progress(f"Created {len(cards)} analysis cards.", token=token)

        if initial and cards:
            await self._initial_commentary(token)
        return cards

    async def _initial_commentary(self, token: int) -> None:
        state = self.session.state
        try:
            briefing = await self.ai_client.generate_core_briefing(state.cards, state.column_profiles)
            self.session.set_core_briefing(briefing, token)
            self.session.add_chat_message(
                ChatMessage(sender="ai", text=briefing, type="ai_briefing"), token
            )

            insight = await self.ai_client.generate_proactive_insight(self.session.state.cards)
            if insight is not None and self.session.find_card(insight.card_id) is not None:
                self.session.add_chat_message(
                    ChatMessage(sender="ai", text=insight.insight, type="ai_proactive_insight",
                                card_id=insight.card_id),
                    token,
                )

            await self.refresh_final_summary(token)
        except (AIServiceError, BoundaryContractError) as e:
            self.session.add_progress(f"AI commentary unavailable: {e}", "error", token)

    async def refresh_final_summary(self, token: int) -> None:
        summary = await self.ai_client.generate_final_summary(self.session.state.cards)
        self.session.set_final_summary(summary, token)

    async def regenerate(self, token: int) -> List[AnalysisCard]:
        """
        Recompute every existing card from its original plan against the
        current dataset. Ids and display settings survive; cards whose plan
        no longer yields rows are dropped with a notice.
        """
        existing = self.session.state.cards
        if not existing:
            return []
        rows = self.session.state.dataset
        self.session.add_progress(f"Regenerating {len(existing)} analysis cards...", token=token)

        async def rebuild(card: AnalysisCard) -> Optional[AnalysisCard]:
            try:
                aggregated = execute_plan(rows, card.plan)
            except PlanError as e:
                self.session.add_progress(f'Dropping "{card.plan.title}": {e}', "error", token)
                return None
            if not aggregated:
                self.session.add_progress(
                    f'Dropping "{card.plan.title}": no rows after the data change.', "error", token
                )
                return None
            summary = await self.summarize(card.plan, aggregated)
            return card.model_copy(update={"aggregated_rows": aggregated, "ai_summary": summary})

        results = await asyncio.gather(*(rebuild(card) for card in existing))
        cards = [card for card in results if card is not None]
        self.session.replace_cards(cards, token)

        try:
            await self.refresh_final_summary(token)
        except (AIServiceError, BoundaryContractError) as e:
            self.session.add_progress(f"Could not refresh the final summary: {e}", "error", token)
        return cards
