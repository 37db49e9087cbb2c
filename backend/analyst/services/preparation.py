"""
Self-correcting data preparation loop.

Ask the AI for a preparation plan, validate it by running its transform on
the sample, and on failure ask again with the exact error text attached.
"""
import logging
from typing import Callable, List, Optional

from analyst.core.config import get_settings
from analyst.core.errors import BoundaryContractError, PreparationFailure, TransformError
from analyst.core.performance import track_performance
from analyst.core.schemas import ColumnProfile, DataPreparationPlan, Row
from analyst.services.transform import run_transform_async

logger = logging.getLogger(__name__)


@track_performance("prepare_data")
async def prepare_data(
    columns: List[ColumnProfile],
    sample_rows: List[Row],
    ai_client,
    max_attempts: Optional[int] = None,
    on_attempt: Optional[Callable[[int, Optional[str]], None]] = None,
    timeout: Optional[float] = None,
) -> DataPreparationPlan:
    """
    Return an accepted DataPreparationPlan for a freshly ingested dataset.

    A plan without transform code is accepted at once, with its output
    columns defaulting to ``columns``. A plan with code is accepted only if
    the code runs cleanly on ``sample_rows``. Contract violations in the AI
    reply count as a failed attempt.

    Raises:
        PreparationFailure: every attempt failed; carries the last error text
        AIServiceError: the AI could not be reached at all
    """
    max_attempts = max_attempts or get_settings().preparation_max_attempts
    last_error: Optional[str] = None

    for attempt in range(1, max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt, last_error)
        logger.info(f"Data preparation attempt {attempt}/{max_attempts}")

        try:
            plan = await ai_client.generate_preparation_plan(columns, sample_rows, last_error)
        except BoundaryContractError as e:
            last_error = str(e)
            logger.warning(f"Preparation attempt {attempt} returned an invalid plan: {last_error}")
            continue

        if not plan.transform_code:
            if not plan.output_columns:
                plan = plan.model_copy(update={"output_columns": list(columns)})
            logger.info("AI found no data preparation necessary")
            return plan

        try:
            await run_transform_async(sample_rows, plan.transform_code, timeout)
        except TransformError as e:
            last_error = str(e)
            logger.warning(f"Preparation attempt {attempt} failed on the sample: {last_error}")
            continue

        logger.info(f"Data preparation plan accepted on attempt {attempt}")
        return plan

    raise PreparationFailure(last_error or "unknown error", max_attempts)
