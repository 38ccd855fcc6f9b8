import pytest
from pydantic import ValidationError

from backend.expertmatch.core.errors import RetrievalError, TrigramUnavailableError
from backend.expertmatch.models.dto import (
    ExtractedEntities,
    ParsedQuery,
    QueryOptions,
    RebuildResponse,
    RetrieveRequest,
    RetrieveResponse,
)


def test_query_options_defaults():
    options = QueryOptions()
    assert options.max_results == 10
    assert options.rerank is True


def test_parsed_query_is_immutable():
    parsed = ParsedQuery(original_query="Java lead", technologies=["Java"])
    with pytest.raises(ValidationError):
        parsed.intent = "team_formation"


def test_retrieve_request_strips_and_rejects_blank_query():
    request = RetrieveRequest(query="  Java lead  ")
    assert request.query == "Java lead"
    assert request.entities is None

    with pytest.raises(ValidationError):
        RetrieveRequest(query="   ")


def test_retrieve_request_accepts_nested_entities():
    request = RetrieveRequest.model_validate(
        {
            "query": "Who worked with Alice",
            "entities": {"persons": [{"type": "person", "name": "Alice"}]},
        }
    )
    assert isinstance(request.entities, ExtractedEntities)
    assert request.entities.persons[0].name == "Alice"


def test_response_shapes():
    response = RetrieveResponse(
        query="Java",
        expert_ids=["E1"],
        relevance_scores={"E1": 0.8},
        reranked=False,
        weights={"vector": 1.0},
        latency_ms=12,
    )
    assert response.relevance_scores["E1"] == pytest.approx(0.8)

    with pytest.raises(ValidationError):
        RebuildResponse(operation="graph", count=-1, ms=0)


def test_retrieval_error_message_carries_code():
    error = RetrievalError("GRAPH_QUERY_ERROR", "syntax error", query="MATCH (n")
    assert str(error) == "[GRAPH_QUERY_ERROR] syntax error"
    assert error.query == "MATCH (n"
    assert TrigramUnavailableError().error_code == "TRIGRAM_UNAVAILABLE"
