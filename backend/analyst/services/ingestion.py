"""
Dataset ingestion flow.

Takes parsed rows into a session: reset, profile, the self-correcting
preparation loop, then plan proposal and the initial analysis pass.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from analyst.core.config import Settings, get_settings
from analyst.core.errors import (
    AIServiceError,
    BoundaryContractError,
    PreparationFailure,
    SessionSupersededError,
    TransformError,
)
from analyst.core.sanitization import neutralize_formula_cells
from analyst.core.schemas import DataPreparationPlan, Row
from analyst.services.pipeline import AnalysisPipeline
from analyst.services.preparation import prepare_data
from analyst.services.session import AnalysisSession
from analyst.services.transform import run_transform_async

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    row_count: int = 0
    prepared: bool = False
    card_count: int = 0
    superseded: bool = False


async def _apply_preparation(session: AnalysisSession, plan: DataPreparationPlan, token: int,
                             timeout: Optional[float] = None) -> bool:
    """
    Run an accepted plan over the whole dataset. The unprepared rows stay in
    place when the transform fails or returns nothing.
    """
    rows = session.state.dataset
    if not plan.transform_code:
        session.replace_dataset(rows, token, planned_columns=plan.output_columns)
        return True

    try:
        transformed = await run_transform_async(rows, plan.transform_code, timeout)
    except TransformError as e:
        session.add_progress(
            f"Data preparation failed on the full dataset ({e}). Continuing with the original data.",
            "error", token,
        )
        return False
    if not transformed:
        session.add_progress(
            "Data preparation produced no rows. Continuing with the original data.", "error", token
        )
        return False

    session.replace_dataset(transformed, token, planned_columns=plan.output_columns)
    session.add_progress(f"Transformation complete. Now have {len(transformed)} rows.", token=token)
    return True


async def ingest_dataset(
    session: AnalysisSession,
    rows: List[Row],
    filename: str,
    ai_client,
    settings: Optional[Settings] = None,
    pipeline: Optional[AnalysisPipeline] = None,
    continue_unprepared: bool = True,
) -> IngestionResult:
    """
    Load ``rows`` into ``session`` as a fresh dataset and run the initial
    analysis.

    Raises:
        PreparationFailure: preparation ran out of attempts and
            ``continue_unprepared`` is False
    """
    settings = settings or get_settings()
    pipeline = pipeline or AnalysisPipeline(session, ai_client, settings)
    token = session.reset(filename)
    result = IngestionResult()

    try:
        safe_rows = neutralize_formula_cells(rows)
        session.add_progress(f"Parsing {filename}...", token=token)
        session.replace_dataset(safe_rows, token)
        session.set_initial_sample(session.state.dataset[:settings.preparation_sample_rows], token)
        result.row_count = len(session.state.dataset)
        session.add_progress(
            f"Loaded {result.row_count} rows with {len(session.state.column_profiles)} columns.", token=token
        )

        if not ai_client.available:
            session.add_progress(
                "AI is not configured. Showing the column profile only.", "error", token
            )
            return result

        session.add_progress("AI is analyzing data for cleaning and reshaping...", token=token)

        def report_attempt(attempt: int, last_error: Optional[str]) -> None:
            if last_error is not None:
                session.add_progress(
                    f"Preparation attempt {attempt - 1} failed: {last_error}. Retrying...", "error", token
                )

        try:
            plan = await prepare_data(
                session.state.column_profiles,
                session.state.initial_sample,
                ai_client,
                max_attempts=settings.preparation_max_attempts,
                on_attempt=report_attempt,
                timeout=settings.transform_timeout_seconds,
            )
        except PreparationFailure as e:
            session.ensure_current(token)
            session.add_progress(str(e), "error", token)
            if not continue_unprepared:
                raise
            session.add_progress("Continuing with the unprepared data.", token=token)
            plan = None

        if plan is not None:
            session.ensure_current(token)
            session.set_preparation_plan(plan, token)
            session.add_progress(f"AI Data Preparation: {plan.explanation}", token=token)
            result.prepared = await _apply_preparation(session, plan, token, settings.transform_timeout_seconds)

        session.add_progress("AI is generating analysis plans...", token=token)
        plans = await pipeline.propose_plans(session.state.column_profiles, session.state.dataset)
        session.ensure_current(token)
        if not plans:
            session.add_progress("The AI did not propose any analysis plans.", "error", token)
            return result

        cards = await pipeline.run(plans, token, initial=True)
        result.card_count = len(cards)
        result.row_count = len(session.state.dataset)
        return result

    except (AIServiceError, BoundaryContractError) as e:
        if session.is_current(token):
            session.add_progress(f"AI analysis failed: {e}", "error", token)
        return result
    except SessionSupersededError:
        logger.info(f"Ingestion of {filename} superseded for session {session.session_id}")
        result.superseded = True
        return result
