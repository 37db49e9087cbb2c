"""
Session state ownership.

An AnalysisSession holds one SessionState and replaces it wholesale on every
mutation, so readers never see a half-applied change. Each session carries a
generation counter: work that suspends (AI calls, pacing delays) captures a
token first and passes it back with its result, and results whose token is no
longer current are refused with SessionSupersededError.
"""
import asyncio
import logging
import math
import uuid
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from analyst.core.config import Settings, get_settings
from analyst.core.errors import CardNotFoundError, SessionSupersededError
from analyst.core.schemas import (
    AnalysisCard,
    CardEvent,
    CardFilter,
    ChartKind,
    ChatMessage,
    ColumnProfile,
    DataPreparationPlan,
    ProgressMessage,
    Row,
    SessionState,
)
from analyst.core.storage import StorageBackend, get_storage
from analyst.services.profiler import column_names, merge_semantic_types, profile_columns

logger = logging.getLogger(__name__)

CardListener = Callable[[CardEvent], None]


def _clean_cell(value: Any) -> Any:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    return value


def normalize_rows(rows: List[Row]) -> List[Row]:
    """Give every row the same key set; missing cells become None."""
    columns = column_names(rows)
    return [{column: _clean_cell(row.get(column)) for column in columns} for row in rows]


class AnalysisSession:
    """Single-writer owner of one user's analysis state."""

    def __init__(self, session_id: str, settings: Optional[Settings] = None, state: Optional[SessionState] = None):
        self.session_id = session_id
        self.settings = settings or get_settings()
        self._state = state or SessionState(session_id=session_id)
        self._generation = 0
        self._listeners: List[CardListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def token(self) -> int:
        return self._generation

    def is_current(self, token: Optional[int]) -> bool:
        return token is None or token == self._generation

    def ensure_current(self, token: Optional[int]) -> None:
        if not self.is_current(token):
            logger.info(
                f"Discarding stale result for session {self.session_id} "
                f"(token {token}, current {self._generation})"
            )
            raise SessionSupersededError(
                f"Session {self.session_id} moved on to generation {self._generation}"
            )

    def _replace(self, **updates: Any) -> None:
        self._state = self._state.model_copy(update=updates)

    def subscribe(self, listener: CardListener) -> None:
        self._listeners.append(listener)

    # Lifecycle

    def reset(self, filename: Optional[str] = None) -> int:
        """Start over with an empty state; in-flight work from before is abandoned."""
        self._generation += 1
        self._state = SessionState(session_id=self.session_id, filename=filename)
        logger.info(f"Session {self.session_id} reset to generation {self._generation}")
        return self._generation

    def teardown(self) -> None:
        self._generation += 1
        logger.info(f"Session {self.session_id} torn down")

    # Timeline

    def add_progress(self, text: str, level: str = "system", token: Optional[int] = None) -> None:
        self.ensure_current(token)
        if level == "error":
            logger.warning(f"[{self.session_id}] {text}")
        else:
            logger.info(f"[{self.session_id}] {text}")
        self._replace(progress=[*self._state.progress, ProgressMessage(text=text, level=level)])

    def add_chat_message(self, message: ChatMessage, token: Optional[int] = None) -> None:
        self.ensure_current(token)
        self._replace(chat_history=[*self._state.chat_history, message])

    def timeline(self) -> List[Dict[str, Any]]:
        """Progress notices and chat messages merged in time order."""
        entries = [
            {"source": "progress", **p.model_dump(mode="json"), "_at": p.timestamp}
            for p in self._state.progress
        ]
        entries += [
            {"source": "chat", **m.model_dump(mode="json"), "_at": m.timestamp}
            for m in self._state.chat_history
        ]
        entries.sort(key=lambda entry: entry["_at"])
        for entry in entries:
            del entry["_at"]
        return entries

    # Dataset

    def replace_dataset(
        self,
        rows: List[Row],
        token: Optional[int] = None,
        planned_columns: Optional[List[ColumnProfile]] = None,
    ) -> List[ColumnProfile]:
        """Swap in a new dataset and recompute its column profiles."""
        self.ensure_current(token)
        normalized = normalize_rows(rows)
        profiles = profile_columns(normalized)
        if planned_columns:
            profiles = merge_semantic_types(profiles, planned_columns)
        self._replace(dataset=normalized, column_profiles=profiles)
        return profiles

    def set_initial_sample(self, rows: List[Row], token: Optional[int] = None) -> None:
        self.ensure_current(token)
        self._replace(initial_sample=[dict(row) for row in rows])

    def set_preparation_plan(self, plan: DataPreparationPlan, token: Optional[int] = None) -> None:
        self.ensure_current(token)
        self._replace(preparation_plan=plan)

    def set_core_briefing(self, text: str, token: Optional[int] = None) -> None:
        self.ensure_current(token)
        self._replace(core_briefing=text)

    def set_final_summary(self, text: str, token: Optional[int] = None) -> None:
        self.ensure_current(token)
        self._replace(final_summary=text)

    # Cards

    def find_card(self, card_id: str) -> Optional[AnalysisCard]:
        return next((card for card in self._state.cards if card.id == card_id), None)

    def add_cards(self, cards: List[AnalysisCard], token: Optional[int] = None) -> None:
        self.ensure_current(token)
        if cards:
            self._replace(cards=[*self._state.cards, *cards])

    def replace_cards(self, cards: List[AnalysisCard], token: Optional[int] = None) -> None:
        self.ensure_current(token)
        self._replace(cards=list(cards))

    def update_card(self, card_id: str, token: Optional[int] = None, **changes: Any) -> AnalysisCard:
        self.ensure_current(token)
        if self.find_card(card_id) is None:
            raise CardNotFoundError(card_id)
        updated = None
        cards = []
        for card in self._state.cards:
            if card.id == card_id:
                card = updated = card.model_copy(update=changes)
            cards.append(card)
        self._replace(cards=cards)
        return updated

    def emit_card_event(self, card_id: str, kind: str, payload: Optional[Dict[str, Any]] = None,
                        token: Optional[int] = None) -> CardEvent:
        self.ensure_current(token)
        event = CardEvent(
            sequence=len(self._state.card_events) + 1,
            card_id=card_id,
            kind=kind,
            payload=payload or {},
        )
        self._replace(card_events=[*self._state.card_events, event])
        for listener in self._listeners:
            listener(event)
        return event

    def highlight_card(self, card_id: str, token: Optional[int] = None) -> None:
        if self.find_card(card_id) is None:
            raise CardNotFoundError(card_id)
        self.emit_card_event(card_id, "highlight", token=token)

    def change_chart_type(self, card_id: str, chart_type: ChartKind, token: Optional[int] = None) -> AnalysisCard:
        card = self.update_card(card_id, token, display_chart_type=chart_type)
        self.emit_card_event(card_id, "chart_type", {"chart_type": chart_type}, token)
        return card

    def set_data_visibility(self, card_id: str, visible: Optional[bool] = None,
                            token: Optional[int] = None) -> AnalysisCard:
        """Show or hide a card's data table; ``visible=None`` toggles it."""
        current = self.find_card(card_id)
        if current is None:
            raise CardNotFoundError(card_id)
        target = (not current.data_visible) if visible is None else visible
        card = self.update_card(card_id, token, data_visible=target)
        self.emit_card_event(card_id, "data_visibility", {"visible": target}, token)
        return card

    def set_filter(self, card_id: str, column: Optional[str], values: List[str],
                   token: Optional[int] = None) -> AnalysisCard:
        """Restrict a card to ``values`` of ``column``; no values clears the filter."""
        card_filter = CardFilter(column=column, allowed_values=values) if column and values else None
        card = self.update_card(card_id, token, filter=card_filter)
        payload = card_filter.model_dump() if card_filter else {"cleared": True}
        self.emit_card_event(card_id, "filter", payload, token)
        return card

    def set_top_n(self, card_id: str, top_n: Optional[int], token: Optional[int] = None) -> AnalysisCard:
        if top_n is not None and top_n < 1:
            raise ValueError("top_n must be at least 1")
        card = self.update_card(card_id, token, top_n=top_n)
        self.emit_card_event(card_id, "top_n", {"top_n": top_n}, token)
        return card

    def set_hide_others(self, card_id: str, hide: bool, token: Optional[int] = None) -> AnalysisCard:
        card = self.update_card(card_id, token, hide_others=hide)
        self.emit_card_event(card_id, "hide_others", {"hide_others": hide}, token)
        return card

    def toggle_legend_label(self, card_id: str, label: str, token: Optional[int] = None) -> AnalysisCard:
        current = self.find_card(card_id)
        if current is None:
            raise CardNotFoundError(card_id)
        if label in current.hidden_labels:
            hidden = [existing for existing in current.hidden_labels if existing != label]
        else:
            hidden = [*current.hidden_labels, label]
        card = self.update_card(card_id, token, hidden_labels=hidden)
        self.emit_card_event(card_id, "legend", {"label": label, "hidden": label in hidden}, token)
        return card

    # Persistence

    def snapshot(self) -> Dict[str, Any]:
        return self._state.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any], settings: Optional[Settings] = None) -> "AnalysisSession":
        state = SessionState.model_validate(data)
        return cls(state.session_id, settings=settings, state=state)


class SessionRegistry:
    """Live sessions by id, backed by the snapshot store."""

    def __init__(self, storage: Optional[StorageBackend] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._storage = storage
        self._sessions: Dict[str, AnalysisSession] = {}

    @property
    def storage(self) -> StorageBackend:
        if self._storage is None:
            self._storage = get_storage()
        return self._storage

    def live_count(self) -> int:
        return len(self._sessions)

    def create(self) -> AnalysisSession:
        session = AnalysisSession(uuid.uuid4().hex, settings=self.settings)
        self._sessions[session.session_id] = session
        logger.info(f"Created session {session.session_id}")
        return session

    def get(self, session_id: str) -> Optional[AnalysisSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        snapshot = self.storage.get(session_id)
        if snapshot is None:
            return None
        session = AnalysisSession.from_snapshot(snapshot, settings=self.settings)
        self._sessions[session_id] = session
        logger.info(f"Restored session {session_id} from storage")
        return session

    async def save(self, session: AnalysisSession) -> None:
        await asyncio.to_thread(
            self.storage.set, session.session_id, session.snapshot(), self.settings.session_ttl_seconds
        )

    async def drop(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.teardown()
        deleted = await asyncio.to_thread(self.storage.delete, session_id)
        return session is not None or deleted


_registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the registry (for testing)."""
    global _registry
    _registry = None
