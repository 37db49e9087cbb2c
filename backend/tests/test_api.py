"""
Integration tests for the HTTP API.
"""
import pytest
from fastapi.testclient import TestClient
from main import app
from conftest import FakeAIClient, make_plan, prepared

SALES_CSV = b"region,product,revenue\nNorth,Widget,1200\nSouth,Gadget,800\nNorth,Gadget,300\nEast,Widget,500\n"


@pytest.fixture
def client():
    original_settings = app.state.settings
    original_ai = app.state.ai_client
    app.state.settings = original_settings.model_copy(update={
        "plan_start_delay_seconds": 0,
        "action_pacing_seconds": 0,
        "rate_limit_per_minute": 1000,
    })
    yield TestClient(app)
    app.state.settings = original_settings
    app.state.ai_client = original_ai


@pytest.fixture
def scripted_ai():
    fake = FakeAIClient()
    fake.preparation_plans = []
    app.state.ai_client = fake
    return fake


def create_session(client) -> str:
    response = client.post("/api/sessions")
    assert response.status_code == 201
    return response.json()["session_id"]


def upload(client, session_id, content=SALES_CSV, filename="sales.csv"):
    return client.post(
        f"/api/sessions/{session_id}/upload",
        files={"file": (filename, content, "text/csv")},
    )


def analysed_session(client, fake: FakeAIClient) -> dict:
    fake.preparation_plans = [prepared(None, "Already clean.")]
    fake.candidate_plans = [[make_plan()]]
    fake.refined_plans = [[make_plan()]]
    session_id = create_session(client)
    response = upload(client, session_id)
    assert response.status_code == 200
    return response.json()


@pytest.mark.integration
def test_root_and_health(client):
    assert client.get("/").status_code == 200

    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "ai_configured" in response.json()


@pytest.mark.integration
def test_responses_carry_security_and_correlation_headers(client):
    response = client.get("/api/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Correlation-ID" in response.headers


@pytest.mark.integration
def test_session_lifecycle(client):
    session_id = create_session(client)

    response = client.get(f"/api/sessions/{session_id}")
    assert response.status_code == 200
    assert response.json()["cards"] == []
    assert response.json()["row_count"] == 0

    assert client.delete(f"/api/sessions/{session_id}").json() == {"deleted": True}
    assert client.get(f"/api/sessions/{session_id}").status_code == 404


@pytest.mark.integration
def test_unknown_session_returns_structured_404(client):
    response = client.get("/api/sessions/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "SESSION_NOT_FOUND"

    assert client.delete("/api/sessions/does-not-exist").status_code == 404


@pytest.mark.integration
def test_upload_without_ai_profiles_the_dataset(client):
    app.state.ai_client = FakeAIClient(available=False)
    session_id = create_session(client)

    response = upload(client, session_id)

    assert response.status_code == 200
    data = response.json()
    assert data["row_count"] == 4
    assert data["filename"] == "sales.csv"
    assert {column["name"] for column in data["columns"]} == {"region", "product", "revenue"}
    assert data["cards"] == []
    assert data["ingestion"]["card_count"] == 0


@pytest.mark.integration
def test_upload_with_ai_builds_cards(client, scripted_ai):
    data = analysed_session(client, scripted_ai)

    assert data["ingestion"] == {"prepared": True, "card_count": 1, "superseded": False}
    card = data["cards"][0]
    assert card["plan"]["title"] == "Revenue by region"
    assert set(card["labels"]) == {"North", "South", "East"}
    assert data["final_summary"] == "Final summary."


@pytest.mark.integration
def test_upload_rejects_unsupported_extension(client):
    app.state.ai_client = FakeAIClient(available=False)
    session_id = create_session(client)

    response = upload(client, session_id, content=b"hello", filename="notes.txt")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_FILE_TYPE"


@pytest.mark.integration
def test_upload_rejects_empty_file(client):
    session_id = create_session(client)

    response = upload(client, session_id, content=b"")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "FILE_EMPTY"


@pytest.mark.integration
def test_upload_size_limit_comes_from_app_settings(client):
    app.state.ai_client = FakeAIClient(available=False)
    app.state.settings = app.state.settings.model_copy(update={"max_file_size_mb": 1})
    session_id = create_session(client)
    oversized = b"region,revenue\n" + b"North,1200\n" * 150_000

    response = upload(client, session_id, content=oversized)

    assert response.status_code == 413
    assert response.json()["detail"]["code"] == "FILE_TOO_LARGE"


@pytest.mark.integration
def test_upload_row_limit_comes_from_app_settings(client):
    app.state.ai_client = FakeAIClient(available=False)
    app.state.settings = app.state.settings.model_copy(update={"max_file_rows": 2})
    session_id = create_session(client)

    response = upload(client, session_id)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "PROCESSING_ERROR"


@pytest.mark.integration
def test_chat_requires_a_dataset(client, scripted_ai):
    session_id = create_session(client)

    response = client.post(f"/api/sessions/{session_id}/chat", json={"message": "hello"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "NO_DATASET"


@pytest.mark.integration
def test_chat_without_ai_is_unavailable(client):
    app.state.ai_client = FakeAIClient(available=False)
    session_id = create_session(client)
    upload(client, session_id)

    response = client.post(f"/api/sessions/{session_id}/chat", json={"message": "hello"})

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "AI_UNAVAILABLE"


@pytest.mark.integration
def test_chat_rejects_empty_message(client, scripted_ai):
    session_id = create_session(client)
    assert client.post(f"/api/sessions/{session_id}/chat", json={"message": ""}).status_code == 422


@pytest.mark.integration
def test_chat_runs_actions(client, scripted_ai):
    data = analysed_session(client, scripted_ai)
    session_id = data["session_id"]
    card_id = data["cards"][0]["id"]
    scripted_ai.chat_replies = [{"actions": [
        {"thought": "Show it as a pie", "response_type": "dom_action",
         "dom_action": {"tool_name": "changeCardChartType", "args": {"cardId": card_id, "newType": "pie"}}},
        {"thought": "Explain", "response_type": "text_response", "text": "Switched to a pie chart."},
    ]}]

    response = client.post(f"/api/sessions/{session_id}/chat", json={"message": "make it a pie"})

    assert response.status_code == 200
    body = response.json()
    assert body["batch"] == {"executed": 2, "failures": [], "abandoned": False}
    assert body["cards"][0]["display_chart_type"] == "pie"
    chat_texts = [entry["text"] for entry in body["timeline"] if entry["source"] == "chat"]
    assert "make it a pie" in chat_texts
    assert "Switched to a pie chart." in chat_texts


@pytest.mark.integration
def test_update_card_and_events(client, scripted_ai):
    data = analysed_session(client, scripted_ai)
    session_id = data["session_id"]
    card_id = data["cards"][0]["id"]

    response = client.patch(
        f"/api/sessions/{session_id}/cards/{card_id}",
        json={"display_chart_type": "line", "data_visible": True},
    )
    assert response.status_code == 200
    assert response.json()["display_chart_type"] == "line"
    assert response.json()["data_visible"] is True

    events = client.get(f"/api/sessions/{session_id}/events").json()
    kinds = [event["kind"] for event in events["events"]]
    assert "chart_type" in kinds
    assert "data_visibility" in kinds
    assert events["last_sequence"] == events["events"][-1]["sequence"]

    newer = client.get(f"/api/sessions/{session_id}/events", params={"since": events["last_sequence"]})
    assert newer.json()["events"] == []


@pytest.mark.integration
def test_update_unknown_card(client):
    session_id = create_session(client)

    response = client.patch(f"/api/sessions/{session_id}/cards/card-missing", json={"data_visible": True})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "CARD_NOT_FOUND"


@pytest.mark.integration
def test_metrics_endpoint(client):
    create_session(client)

    response = client.get("/api/metrics")

    assert response.status_code == 200
    body = response.json()
    assert "performance" in body
    assert body["sessions"]["live"] == 1
    assert body["sessions"]["backend"] == "InMemoryStorage"
