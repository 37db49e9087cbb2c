import logging
from typing import Any, Callable, Dict, Tuple

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from slowapi.errors import RateLimitExceeded

from analyst.core.errors import (
    CardNotFoundError,
    ErrorCodes,
    PreparationFailure,
    get_error_response,
)
from analyst.core.sanitization import sanitize_filename, sanitize_for_logging
from analyst.core.schemas import CardUpdate, ChatRequest
from analyst.services.aggregation import card_view_rows, group_labels
from analyst.services.ai_client import AIClient
from analyst.services.ingestion import ingest_dataset
from analyst.services.orchestrator import ActionOrchestrator
from analyst.services.parser import clean_dataframe, dataframe_to_rows, parse_file, validate_file_content
from analyst.services.session import AnalysisSession, get_registry

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(request: Request, status_code: int, code: str, detail: str = None) -> HTTPException:
    error_info = get_error_response(code, detail)
    error_info['correlation_id'] = getattr(request.state, 'correlation_id', 'unknown')
    return HTTPException(status_code=status_code, detail=error_info)


def get_ai_client(request: Request) -> AIClient:
    """One AI client per app, created on first use."""
    client = getattr(request.app.state, 'ai_client', None)
    if client is None:
        client = AIClient(request.app.state.settings)
        request.app.state.ai_client = client
    return client


def _get_session(request: Request, session_id: str) -> AnalysisSession:
    session = get_registry().get(session_id)
    if session is None:
        raise _error(request, 404, ErrorCodes.SESSION_NOT_FOUND)
    return session


_limited_handlers: Dict[Tuple[int, str, str], Callable] = {}


async def _rate_limited(request: Request, scope: str, handler: Callable):
    """
    Apply the per-minute limit from settings to ``handler(request)``.

    slowapi registers limits under the decorated function's name each time
    it decorates, so one wrapper is built per endpoint and limit and reused.
    """
    limiter = request.app.state.limiter
    limit = f"{request.app.state.settings.rate_limit_per_minute}/minute"
    key = (id(limiter), scope, limit)

    limited = _limited_handlers.get(key)
    if limited is None:
        async def _limited(request: Request):
            return await request.state.limited_handler(request)

        _limited.__name__ = f"{scope}_rate_limited"
        limited = _limited_handlers[key] = limiter.limit(limit)(_limited)

    request.state.limited_handler = handler
    return await limited(request)


def session_view(session: AnalysisSession) -> Dict[str, Any]:
    """Everything a client needs to render a session."""
    state = session.state
    cards = []
    for card in state.cards:
        view = card.model_dump(mode='json', exclude={'aggregated_rows'})
        view['rows'] = card_view_rows(card)
        view['labels'] = group_labels(card)
        view['row_count'] = len(card.aggregated_rows)
        cards.append(view)

    return {
        'session_id': session.session_id,
        'generation': session.generation,
        'filename': state.filename,
        'row_count': len(state.dataset),
        'columns': [profile.model_dump(mode='json') for profile in state.column_profiles],
        'preparation_plan': state.preparation_plan.model_dump(mode='json') if state.preparation_plan else None,
        'core_briefing': state.core_briefing,
        'final_summary': state.final_summary,
        'cards': cards,
        'timeline': session.timeline(),
    }


@router.get("/health")
async def health_check(request: Request):
    return {
        "status": "ok",
        "ai_configured": request.app.state.settings.ai_configured,
    }


@router.post("/sessions", status_code=201)
async def create_session():
    registry = get_registry()
    session = registry.create()
    await registry.save(session)
    return session_view(session)


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    return session_view(_get_session(request, session_id))


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: str):
    if not await get_registry().drop(session_id):
        raise _error(request, 404, ErrorCodes.SESSION_NOT_FOUND)
    return {"deleted": True}


async def _check_file_size_streaming(file: UploadFile, limit: int) -> int:
    """Count the upload's bytes in 1MB chunks, stopping early past ``limit``."""
    file_size = 0
    await file.seek(0)
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        file_size += len(chunk)
        if file_size > limit:
            break
    await file.seek(0)
    return file_size


async def _process_upload(request: Request, session: AnalysisSession, file: UploadFile,
                          continue_unprepared: bool) -> Dict[str, Any]:
    settings = request.app.state.settings
    file_size = await _check_file_size_streaming(file, settings.max_file_size_bytes)
    if file_size > settings.max_file_size_bytes:
        raise _error(
            request, 413, ErrorCodes.FILE_TOO_LARGE,
            f"Maximum size is {settings.max_file_size_mb}MB. Your file is {file_size / 1024 / 1024:.2f}MB"
        )
    if file_size == 0:
        raise _error(request, 400, ErrorCodes.FILE_EMPTY)

    safe_filename = sanitize_filename(file.filename)
    logger.info(f"Processing file: {sanitize_for_logging(safe_filename)}, size: {file_size / 1024:.2f}KB")

    df = await parse_file(file)
    validate_file_content(df, settings)
    df = clean_dataframe(df)
    if df.empty:
        raise _error(request, 400, ErrorCodes.PARSE_ERROR, "No valid data remains after cleaning")

    rows = dataframe_to_rows(df)
    try:
        result = await ingest_dataset(
            session,
            rows,
            safe_filename,
            get_ai_client(request),
            settings=settings,
            continue_unprepared=continue_unprepared,
        )
    except PreparationFailure as e:
        await get_registry().save(session)
        raise _error(request, 422, ErrorCodes.PREPARATION_FAILED, e.last_error)

    await get_registry().save(session)
    logger.info(
        f"Ingested {sanitize_for_logging(safe_filename)}: {result.row_count} rows, {result.card_count} cards"
    )
    view = session_view(session)
    view['ingestion'] = {
        'prepared': result.prepared,
        'card_count': result.card_count,
        'superseded': result.superseded,
    }
    return view


@router.post("/sessions/{session_id}/upload")
async def upload_file(
    request: Request,
    session_id: str,
    file: UploadFile = File(...),
    continue_unprepared: bool = True,
):
    """
    Upload a CSV or Excel file into a session and run the initial analysis.

    Rate limited per client IP (see ``rate_limit_per_minute``).
    """
    session = _get_session(request, session_id)

    async def handler(request: Request):
        return await _process_upload(request, session, file, continue_unprepared)

    try:
        return await _rate_limited(request, "upload", handler)
    except (HTTPException, RateLimitExceeded):
        raise
    except Exception as e:
        logger.error(f"Unexpected error processing upload for session {session_id}: {e}", exc_info=True)
        raise _error(request, 500, ErrorCodes.UNKNOWN_ERROR)


@router.post("/sessions/{session_id}/chat")
async def chat(request: Request, session_id: str, body: ChatRequest):
    """Run one chat turn. Failures show up in the returned timeline, not as HTTP errors."""
    session = _get_session(request, session_id)
    if not session.state.dataset:
        raise _error(request, 409, ErrorCodes.NO_DATASET)
    ai_client = get_ai_client(request)
    if not ai_client.available:
        raise _error(request, 503, ErrorCodes.AI_UNAVAILABLE)

    async def handler(request: Request):
        orchestrator = ActionOrchestrator(session, ai_client, settings=request.app.state.settings)
        result = await orchestrator.handle_message(body.message)
        await get_registry().save(session)
        view = session_view(session)
        view['batch'] = None if result is None else {
            'executed': result.executed,
            'failures': [{'index': index, 'error': message} for index, message in result.failures],
            'abandoned': result.abandoned,
        }
        return view

    return await _rate_limited(request, "chat", handler)


@router.patch("/sessions/{session_id}/cards/{card_id}")
async def update_card(request: Request, session_id: str, card_id: str, body: CardUpdate):
    session = _get_session(request, session_id)
    if session.find_card(card_id) is None:
        raise _error(request, 404, ErrorCodes.CARD_NOT_FOUND, f"Unknown card id: {card_id}")

    try:
        if body.display_chart_type is not None:
            session.change_chart_type(card_id, body.display_chart_type)
        if 'top_n' in body.model_fields_set:
            session.set_top_n(card_id, body.top_n)
        if body.hide_others is not None:
            session.set_hide_others(card_id, body.hide_others)
        if body.data_visible is not None:
            session.set_data_visibility(card_id, body.data_visible)
        if body.toggle_label is not None:
            session.toggle_legend_label(card_id, body.toggle_label)
    except CardNotFoundError:
        raise _error(request, 404, ErrorCodes.CARD_NOT_FOUND, f"Unknown card id: {card_id}")
    except ValueError as e:
        raise _error(request, 400, ErrorCodes.INVALID_CARD_UPDATE, str(e))

    await get_registry().save(session)
    card = session.find_card(card_id)
    view = card.model_dump(mode='json', exclude={'aggregated_rows'})
    view['rows'] = card_view_rows(card)
    view['labels'] = group_labels(card)
    return view


@router.get("/sessions/{session_id}/events")
async def card_events(request: Request, session_id: str, since: int = 0):
    """Card mutation events with a sequence number greater than ``since``."""
    session = _get_session(request, session_id)
    events = [event for event in session.state.card_events if event.sequence > since]
    return {
        'events': [event.model_dump(mode='json') for event in events],
        'last_sequence': session.state.card_events[-1].sequence if session.state.card_events else 0,
    }
