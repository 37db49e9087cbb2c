"""
Tests for session state ownership, generation tokens and the registry.
"""
import math

import numpy as np
import pytest

from analyst.core.errors import CardNotFoundError, SessionSupersededError
from analyst.core.schemas import ChatMessage
from analyst.core.storage import InMemoryStorage
from analyst.services.aggregation import execute_plan
from analyst.services.pipeline import make_card
from analyst.services.session import AnalysisSession, SessionRegistry, normalize_rows
from conftest import make_plan


@pytest.fixture
def card(session, settings):
    plan = make_plan()
    card = make_card(plan, execute_plan(session.state.dataset, plan), settings)
    session.add_cards([card])
    return card


@pytest.mark.unit
def test_normalize_rows_fills_missing_keys_and_cleans_values():
    rows = [{"a": 1, "b": float("nan")}, {"a": np.int64(2), "c": math.inf}]

    assert normalize_rows(rows) == [
        {"a": 1, "b": None, "c": None},
        {"a": 2, "b": None, "c": None},
    ]


@pytest.mark.unit
def test_mutations_replace_state_wholesale(session):
    before = session.state

    session.add_progress("hello")

    assert session.state is not before
    assert before.progress == []
    assert session.state.progress[-1].text == "hello"


@pytest.mark.unit
def test_replace_dataset_recomputes_profiles(session):
    profiles = session.replace_dataset([{"x": "1"}, {"x": "2"}])

    assert [p.name for p in profiles] == ["x"]
    assert profiles[0].kind == "numerical"
    assert session.state.column_profiles == profiles


@pytest.mark.unit
def test_stale_token_is_refused(session):
    token = session.token()
    session.reset("new.csv")

    with pytest.raises(SessionSupersededError):
        session.add_progress("late result", token=token)
    assert session.state.progress == []
    assert session.state.filename == "new.csv"


@pytest.mark.unit
def test_current_token_is_accepted(session):
    token = session.token()
    session.add_chat_message(ChatMessage(sender="ai", text="hi", type="ai_message"), token)
    assert session.state.chat_history[-1].text == "hi"


@pytest.mark.unit
def test_timeline_merges_progress_and_chat_in_order(session):
    session.add_progress("first")
    session.add_chat_message(ChatMessage(sender="user", text="second", type="user_message"))
    session.add_progress("third")

    timeline = session.timeline()

    assert [entry["text"] for entry in timeline] == ["first", "second", "third"]
    assert [entry["source"] for entry in timeline] == ["progress", "chat", "progress"]


@pytest.mark.unit
def test_data_visibility_toggles_when_unspecified(session, card):
    assert session.set_data_visibility(card.id).data_visible is True
    assert session.set_data_visibility(card.id).data_visible is False
    assert session.set_data_visibility(card.id, False).data_visible is False


@pytest.mark.unit
def test_legend_label_toggles(session, card):
    session.toggle_legend_label(card.id, "North")
    assert session.find_card(card.id).hidden_labels == ["North"]

    session.toggle_legend_label(card.id, "North")
    assert session.find_card(card.id).hidden_labels == []


@pytest.mark.unit
def test_top_n_validation(session, card):
    assert session.set_top_n(card.id, None).top_n is None
    assert session.set_top_n(card.id, 3).top_n == 3
    with pytest.raises(ValueError):
        session.set_top_n(card.id, 0)


@pytest.mark.unit
def test_unknown_card_raises(session):
    with pytest.raises(CardNotFoundError) as exc_info:
        session.change_chart_type("nope", "pie")
    assert exc_info.value.card_id == "nope"
    with pytest.raises(KeyError):
        session.highlight_card("nope")


@pytest.mark.unit
def test_card_events_are_numbered_and_delivered_to_listeners(session, card):
    received = []
    session.subscribe(received.append)

    session.change_chart_type(card.id, "line")
    session.set_hide_others(card.id, True)

    assert [event.sequence for event in session.state.card_events] == [1, 2]
    assert [event.kind for event in received] == ["chart_type", "hide_others"]
    assert received[0].payload == {"chart_type": "line"}


@pytest.mark.unit
def test_wide_results_open_collapsed(settings):
    rows = [{"label": f"L{i}", "value": float(i)} for i in range(20)]
    plan = make_plan(group_by_column="label", value_column="value")

    card = make_card(plan, rows, settings)

    assert card.top_n == settings.default_top_n
    assert card.hide_others is True
    assert card.data_visible is False


@pytest.mark.unit
def test_narrow_results_use_plan_defaults(settings):
    rows = [{"label": "a", "value": 1.0}]
    plan = make_plan(group_by_column="label", value_column="value", default_top_n=5, default_hide_others=False)

    card = make_card(plan, rows, settings)

    assert card.top_n == 5
    assert card.hide_others is False


@pytest.mark.unit
def test_snapshot_round_trip_keeps_cards(session, card):
    restored = AnalysisSession.from_snapshot(session.snapshot())

    assert restored.session_id == session.session_id
    assert restored.find_card(card.id).plan == card.plan
    assert restored.state.dataset == session.state.dataset


@pytest.mark.unit
@pytest.mark.asyncio
async def test_registry_restores_from_storage(settings):
    storage = InMemoryStorage()
    registry = SessionRegistry(storage=storage, settings=settings)
    session = registry.create()
    session.replace_dataset([{"a": 1}])
    await registry.save(session)

    fresh = SessionRegistry(storage=storage, settings=settings)
    restored = fresh.get(session.session_id)

    assert restored is not None
    assert restored.state.dataset == [{"a": 1}]
    assert fresh.live_count() == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_registry_drop_tears_down_and_deletes(settings):
    storage = InMemoryStorage()
    registry = SessionRegistry(storage=storage, settings=settings)
    session = registry.create()
    await registry.save(session)
    generation = session.generation

    assert await registry.drop(session.session_id) is True
    assert session.generation == generation + 1
    assert registry.get(session.session_id) is None
    assert await registry.drop(session.session_id) is False
