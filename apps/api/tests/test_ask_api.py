from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient

from knowledge_scout.errors import GenerationFailed
from knowledge_scout.services.rag.answer import NO_EVIDENCE_ANSWER

HeadersFactory = Callable[..., dict[str, str]]

PUMP_MANUAL = b"Pump maintenance: oil the pump bearings every 500 operating hours."


def _upload(
    client: TestClient,
    headers: dict[str, str],
    *,
    visibility: str = "public",
    filename: str = "pump.txt",
    content: bytes = PUMP_MANUAL,
) -> str:
    response = client.post(
        "/api/docs",
        files={"file": (filename, content, "text/plain")},
        data={"visibility": visibility},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["documentId"]


def test_ask_without_indexed_documents_says_dont_know(client: TestClient, llm_client) -> None:
    response = client.post("/api/ask", json={"query": "What torque does the flange need?"})

    assert response.status_code == 200
    body = response.json()
    assert body["cached"] is False
    assert body["docId"] is None
    assert body["answers"] == [{"text": NO_EVIDENCE_ANSWER, "confidence": 0.0, "sources": []}]
    assert body["meta"]["vector_results"] == 0
    assert llm_client.prompts == []


def test_repeated_ask_is_served_from_cache(
    client: TestClient,
    auth_headers: HeadersFactory,
    embedding_client,
    llm_client,
) -> None:
    document_id = _upload(client, auth_headers("alice"))
    question = {"query": "How often should the pump bearings be oiled?"}

    first = client.post("/api/ask", json=question)
    embed_calls = len(embedding_client.calls)
    second = client.post("/api/ask", json={"query": "  HOW OFTEN should the pump bearings be oiled?  "})

    assert first.status_code == second.status_code == 200
    assert first.json()["cached"] is False
    assert second.json()["cached"] is True
    assert second.json()["answers"] == first.json()["answers"]
    assert len(embedding_client.calls) == embed_calls
    assert len(llm_client.prompts) == 1

    answer = first.json()["answers"][0]
    assert answer["text"] == "The answer is in the evidence [1]."
    assert answer["confidence"] > 0.4
    assert answer["sources"][0]["docId"] == document_id
    assert answer["sources"][0]["page"] == 1
    assert answer["sources"][0]["cited"] is True

    different_k = client.post("/api/ask", json={**question, "k": 2})
    assert different_k.json()["cached"] is False


def test_anonymous_ask_never_sees_private_chunks(
    client: TestClient,
    auth_headers: HeadersFactory,
) -> None:
    owner = auth_headers("alice")
    document_id = _upload(client, owner, visibility="private")
    question = {"query": "How often should the pump bearings be oiled?"}

    anonymous = client.post("/api/ask", json=question).json()
    assert anonymous["answers"][0]["text"] == NO_EVIDENCE_ANSWER
    assert anonymous["answers"][0]["sources"] == []

    other_user = client.post("/api/ask", json=question, headers=auth_headers("bob")).json()
    assert other_user["answers"][0]["sources"] == []

    owned = client.post("/api/ask", json=question, headers=owner).json()
    assert [source["docId"] for source in owned["answers"][0]["sources"]] == [document_id]


def test_ask_scoped_to_document_checks_access(
    client: TestClient,
    auth_headers: HeadersFactory,
) -> None:
    owner = auth_headers("alice")
    document_id = _upload(client, owner, visibility="private")
    question = {"query": "pump oil interval", "docId": document_id}

    forbidden = client.post("/api/ask", json=question)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "forbidden"

    missing = client.post("/api/ask", json={"query": "pump oil interval", "docId": "nope"})
    assert missing.status_code == 404

    allowed = client.post("/api/ask", json=question, headers=owner)
    assert allowed.status_code == 200
    assert allowed.json()["docId"] == document_id


def test_anonymous_ask_never_hits_a_private_cache_entry(
    client: TestClient,
    auth_headers: HeadersFactory,
) -> None:
    owner = auth_headers("anon")
    _upload(client, owner, visibility="private", filename="secret.txt", content=b"zebra zebra zebra secret")
    question = {"query": "zebra secret"}

    owned = client.post("/api/ask", json=question, headers=owner).json()
    assert owned["answers"][0]["sources"][0]["title"] == "secret.txt"

    anonymous = client.post("/api/ask", json=question).json()
    assert anonymous["cached"] is False
    assert anonymous["answers"][0]["text"] == NO_EVIDENCE_ANSWER
    assert anonymous["answers"][0]["sources"] == []


def test_scoped_ask_checks_access_before_reading_the_cache(
    client: TestClient,
    auth_headers: HeadersFactory,
) -> None:
    _upload(client, auth_headers("alice"))
    question = {"query": "How often should the pump bearings be oiled?"}

    unscoped = client.post("/api/ask", json=question, headers=auth_headers("a:b"))
    assert unscoped.status_code == 200

    colliding = client.post("/api/ask", json={**question, "docId": "b:all"}, headers=auth_headers("a"))
    assert colliding.status_code == 404
    assert colliding.json()["error"] == "not_found"


def test_cached_scoped_answer_is_not_served_to_another_caller(
    client: TestClient,
    auth_headers: HeadersFactory,
) -> None:
    owner = auth_headers("alice")
    document_id = _upload(client, owner, visibility="private")
    question = {"query": "pump oil interval", "docId": document_id}

    assert client.post("/api/ask", json=question, headers=owner).status_code == 200
    assert client.post("/api/ask", json=question, headers=owner).json()["cached"] is True

    assert client.post("/api/ask", json=question).status_code == 403
    assert client.post("/api/ask", json=question, headers=auth_headers("bob")).status_code == 403


def test_meta_counts_verified_hits_beyond_k(
    client: TestClient,
    auth_headers: HeadersFactory,
) -> None:
    manual = b"Oil the pump bearings.\fOil the pump seals.\fOil the pump shaft."
    _upload(client, auth_headers("alice"), content=manual)

    body = client.post("/api/ask", json={"query": "oil the pump", "k": 1}).json()

    assert len(body["answers"][0]["sources"]) == 1
    assert body["meta"]["vector_results"] == 3


def test_generation_failure_is_reported_and_not_cached(
    client: TestClient,
    auth_headers: HeadersFactory,
    llm_client,
) -> None:
    _upload(client, auth_headers("alice"))
    question = {"query": "How often should the pump bearings be oiled?"}
    llm_client.error = GenerationFailed("generation model=fake failed after 3 attempts", attempts=3)

    failed = client.post("/api/ask", json=question)

    assert failed.status_code == 502
    assert failed.json() == {
        "error": "generation_failed",
        "detail": "generation model=fake failed after 3 attempts",
        "attempts": 3,
    }

    llm_client.error = None
    recovered = client.post("/api/ask", json=question)
    assert recovered.status_code == 200
    assert recovered.json()["cached"] is False


@pytest.mark.parametrize(
    "payload",
    [
        {"query": "   "},
        {"query": ""},
        {"query": "pump", "k": 0},
        {"query": "pump", "k": 21},
        {"query": "pump", "unexpected": True},
        {},
    ],
)
def test_ask_validates_request(client: TestClient, payload: dict[str, object]) -> None:
    response = client.post("/api/ask", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"
