import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeStructuringClient, InMemoryStatementStore, chunk_number_of, model_response, statement_json, txn
from main import get_app
from services.classification import BackgroundClassificationDispatcher, StatementClassifier
from services.extraction import StatementExtractor
from services.persistence import StatementPersister
from services.pipeline import StatementPipeline
from services.validation import AutoValidator

DOCUMENT = "=== PDF PAGE 1 ===\nrows one\n=== PDF PAGE 2 ===\nrows two\n"


def responder(model, prompt):
    if "nothing useful" in prompt:
        return model_response()
    if chunk_number_of(prompt) == 2:
        return model_response(
            statement_json(
                bank_name="CONTINUATION",
                account_type="CONTINUATION",
                transactions=[txn("2024-01-20", debit="300", description="fee")],
            )
        )
    return model_response(
        statement_json(
            account_type="Facility Account",
            transactions=[txn("2024-01-05", credit="500"), txn("2024-01-09", credit="200")],
        )
    )


@pytest.fixture
def memory_store():
    return InMemoryStatementStore()


@pytest.fixture
def client(memory_store, retry_policy, debug_sink):
    extractor = StatementExtractor(
        FakeStructuringClient(responder=responder), ["primary"], retry_policy=retry_policy, debug_sink=debug_sink
    )
    pipeline = StatementPipeline(
        extractor=extractor,
        persister=StatementPersister(memory_store),
        validator=AutoValidator(memory_store),
        dispatcher=BackgroundClassificationDispatcher(StatementClassifier(memory_store).classify, retry_policy),
    )
    app = get_app()
    app.state.store = memory_store
    app.state.pipeline = pipeline
    with TestClient(app) as test_client:
        yield test_client


def _events(response):
    return [json.loads(line[len("data: "):]) for line in response.text.split("\n\n") if line.startswith("data: ")]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_stream_requires_statement_text(client):
    response = client.post("/statements/structure/stream", json={"submitting_user_id": "u1"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Statement text is required"}


def test_stream_requires_user(client):
    response = client.post("/statements/structure/stream", json={"statement_text": DOCUMENT})

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "User authentication required"}


def test_stream_emits_events_until_complete(client, memory_store):
    response = client.post(
        "/statements/structure/stream",
        json={"statementText": DOCUMENT, "fileName": "jan.pdf", "submittingUserId": "u1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response)
    assert events[0]["type"] == "status"
    assert events[-1]["type"] == "complete"
    assert events[-1]["saved_statements"][0]["transaction_count"] == 3
    assert all("timestamp" in e for e in events)
    assert len(memory_store.statements) == 1


def test_stream_reports_fatal_error_as_terminal_event(client):
    response = client.post(
        "/statements/structure/stream", json={"statement_text": "nothing useful", "submitting_user_id": "u1"}
    )

    events = _events(response)
    assert events[-1]["type"] == "error"
    assert [e["type"] for e in events].count("error") == 1


def test_non_streaming_structure(client):
    response = client.post(
        "/statements/structure", json={"statement_text": "plain text statement", "submitting_user_id": "u1"}
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["summary"]["new_statements"] == 1


def test_non_streaming_fatal_error_envelope(client):
    response = client.post("/statements/structure", json={"statement_text": "nothing useful", "submitting_user_id": "u1"})

    assert response.status_code == 422
    assert response.json()["success"] is False
    assert response.json()["error"] == "No valid account statements could be extracted from the document."


def _ingest(client) -> int:
    response = client.post(
        "/statements/structure/stream",
        json={"statement_text": DOCUMENT, "submitting_user_id": "u1", "file_name": "jan.pdf"},
    )
    return _events(response)[-1]["saved_statements"][0]["id"]


def test_update_bank_affiliation(client, memory_store):
    statement_id = _ingest(client)

    response = client.put(f"/statements/{statement_id}/bank", json={"bankName": "QNB", "submittingUserId": "u1"})

    assert response.status_code == 200
    assert response.json()["bank_name"] == "QNB Alahli"
    assert memory_store.state["statements"][statement_id].bank_name == "QNB Alahli"


def test_update_bank_affiliation_errors(client):
    assert client.put("/statements/99/bank", json={"bankName": "QNB", "submittingUserId": "u1"}).status_code == 404
    assert client.put("/statements/99/bank", json={"bankName": " ", "submittingUserId": "u1"}).status_code == 400
    assert client.put("/statements/99/bank", json={"bankName": "QNB"}).status_code == 401


def test_update_facility_terms_and_lock(client, memory_store):
    statement_id = _ingest(client)

    response = client.patch(
        f"/statements/{statement_id}/facility",
        json={"tenor": "12 months", "availableLimit": 250000, "interestRate": "19%"},
    )
    assert response.status_code == 200
    assert response.json()["statement"]["tenor"] == "12 months"
    assert memory_store.state["statements"][statement_id].interest_rate == "19%"

    memory_store.state["statements"][statement_id].locked = True
    locked = client.patch(f"/statements/{statement_id}/facility", json={"tenor": "6 months"})
    assert locked.status_code == 409
    assert locked.json()["success"] is False


def test_validate_on_demand(client):
    statement_id = _ingest(client)

    response = client.post(f"/statements/{statement_id}/validate")

    assert response.status_code == 200
    assert response.json()["validation"]["status"] == "passed"
    assert client.post("/statements/999/validate").status_code == 404


def test_bank_view_flags_facility_accounts(client, memory_store):
    statement_id = _ingest(client)
    bank_id = memory_store.state["statements"][statement_id].bank_id

    body = client.get(f"/banks/{bank_id}").json()

    assert body["bank"]["name"] == "Bank X"
    [statement] = body["statements"]
    assert statement["is_facility"] is True
    assert statement["account_category"] == "facility"
    assert "raw_text" not in statement
    assert client.get("/banks/404").status_code == 404
