import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from backend.expertmatch.core.errors import QueryValidationError, RetrievalError
from backend.expertmatch.models.dto import (
    Entity,
    ExtractedEntities,
    ParsedQuery,
    QueryOptions,
    RetrievalRequest,
)
from backend.expertmatch.rag import retrieve
from backend.expertmatch.rag.rerank import PLACEHOLDER_SCORE, SemanticReranker
from backend.expertmatch.rag.retrieve import HybridRetriever


class VectorStub:
    def __init__(self, hits=None, error=None, delay=0.0):
        self.hits = hits or []
        self.error = error
        self.delay = delay
        self.calls = []

    def search_by_text(self, text, limit, min_similarity):
        self.calls.append((text, limit, min_similarity))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.hits[:limit]


class GraphStub:
    def __init__(self, by_technology=None, by_technologies=None, by_domain=None):
        self.by_technology = by_technology or {}
        self.by_technologies = by_technologies or []
        self.by_domain = by_domain or {}
        self.calls = []

    def find_experts_by_technology(self, technology):
        self.calls.append(("technology", technology))
        return list(self.by_technology.get(technology, []))

    def find_experts_by_technologies(self, technologies):
        self.calls.append(("technologies", tuple(technologies)))
        return list(self.by_technologies)

    def find_experts_by_domain(self, domain):
        self.calls.append(("domain", domain))
        return list(self.by_domain.get(domain, []))


class KeywordStub:
    def __init__(self, results=None, by_technologies=None, error=None):
        self.results = results or []
        self.by_technologies = by_technologies or []
        self.error = error
        self.calls = []

    def search_by_keywords(self, terms, limit):
        self.calls.append((tuple(terms), limit))
        if self.error is not None:
            raise self.error
        return self.results[:limit]

    def search_by_technologies(self, technologies, limit):
        self.calls.append(("technologies", tuple(technologies), limit))
        return self.by_technologies[:limit]


class PersonStub:
    def __init__(self, exact=None, similar=None):
        self.exact = exact or {}
        self.similar = similar or {}
        self.similarity_calls = []

    def find_by_name(self, name, limit):
        return list(self.exact.get(name, []))

    def find_by_similarity(self, name, threshold, limit):
        self.similarity_calls.append((name, threshold, limit))
        return list(self.similar.get(name, []))


class RerankerStub:
    configured = True

    def __init__(self, order=None, scores=None):
        self.order = order
        self.scores = scores or {}

    def rerank(self, query, ids, max_results):
        return list(self.order if self.order is not None else ids)[:max_results]

    def score_relevance(self, query, ids):
        return dict(self.scores)


def _settings(**overrides):
    values = {
        "vector_similarity_threshold": 0.7,
        "name_similarity_threshold": 0.3,
        "parallel_channels": False,
        "channel_timeout_sec": 5.0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _retriever(vector=None, graph=None, keyword=None, person=None, reranker=None, **settings):
    return HybridRetriever(
        settings=_settings(**settings),
        vector_search=vector or VectorStub(),
        graph_search=graph or GraphStub(),
        keyword_search=keyword or KeywordStub(),
        person_search=person or PersonStub(),
        reranker=reranker or SemanticReranker(),
    )


def _request(query, max_results=10, rerank=False):
    return RetrievalRequest(query=query, options=QueryOptions(max_results=max_results, rerank=rerank))


def test_named_person_outranks_other_channels():
    query = "Java and AWS experts like Alice Smith"
    retriever = _retriever(
        vector=VectorStub(hits=[{"id": "profile-E2", "metadata": {"employee_id": "E2"}}, {"id": "E3", "metadata": {}}]),
        graph=GraphStub(by_technologies=["E2"]),
        keyword=KeywordStub(results=["E3"]),
        person=PersonStub(exact={"Alice Smith": ["E1"]}),
    )
    parsed = ParsedQuery(original_query=query, technologies=["Java", "AWS"])
    entities = ExtractedEntities(persons=[Entity(type="person", name="Alice Smith")])

    result = retriever.retrieve(_request(query), parsed, entities)

    assert result.expert_ids[0] == "E1"
    assert set(result.expert_ids) == {"E1", "E2", "E3"}
    assert result.weights["person"] == 3.0
    assert result.weights["keyword"] == 0.8
    assert result.relevance_scores == {expert_id: PLACEHOLDER_SCORE for expert_id in result.expert_ids}
    assert result.reranked is False


def test_vector_channel_uses_threshold_and_employee_metadata():
    vector = VectorStub(hits=[{"id": "profile-E7", "metadata": {"employee_id": "E7"}}])
    retriever = _retriever(vector=vector, vector_similarity_threshold=0.65)

    result = retriever.retrieve(_request("data engineer"), ParsedQuery(original_query="data engineer"))

    assert result.expert_ids == ["E7"]
    assert vector.calls == [("data engineer", 10, 0.65)]


def test_graph_channel_uses_and_match_for_several_technologies():
    graph = GraphStub(
        by_technology={"Java": ["E9"], "leadership": ["E4"]},
        by_technologies=["E1"],
        by_domain={"Finance": ["E5"]},
    )
    retriever = _retriever(graph=graph)
    parsed = ParsedQuery(original_query="Java AWS lead", technologies=["Java", "AWS"], skills=["leadership"])
    entities = ExtractedEntities(domains=[Entity(type="domain", name="Finance")])

    assert retriever.graph_channel(parsed, entities, 10) == ["E1", "E4", "E5"]
    assert ("technologies", ("Java", "AWS")) in graph.calls
    assert ("technology", "Java") not in graph.calls


def test_graph_channel_single_technology_uses_direct_lookup():
    graph = GraphStub(by_technology={"Java": ["E1", "E2"]})
    retriever = _retriever(graph=graph)

    assert retriever.graph_channel(ParsedQuery(original_query="Java", technologies=["Java"]), ExtractedEntities(), 1) == ["E1"]


def test_person_channel_falls_back_to_similarity():
    person = PersonStub(similar={"Alise Smith": ["E1"]})
    retriever = _retriever(person=person)
    entities = ExtractedEntities(persons=[Entity(type="person", name="Alise Smith"), Entity(type="person", name=" ")])

    assert retriever.person_channel(entities, 5) == ["E1"]
    assert person.similarity_calls == [("Alise Smith", 0.3, 5)]


def test_keyword_channel_skipped_without_terms():
    keyword = KeywordStub(results=["E1"])
    retriever = _retriever(keyword=keyword)

    retriever.retrieve(_request("someone"), ParsedQuery(original_query="someone"))

    assert keyword.calls == []


def test_keyword_channel_adds_exact_technology_matches():
    keyword = KeywordStub(results=["E1", "E2"], by_technologies=["E2", "E5"])
    retriever = _retriever(keyword=keyword)
    parsed = ParsedQuery(original_query="Kafka streaming", skills=["streaming"], technologies=["Kafka"])

    assert retriever.keyword_channel(parsed, 10) == ["E1", "E2", "E5"]
    assert retriever.keyword_channel(parsed, 2) == ["E1", "E2"]
    assert keyword.calls[:2] == [(("streaming", "Kafka"), 10), ("technologies", ("Kafka",), 10)]


def test_keyword_channel_skips_technology_lookup_for_skills_only():
    keyword = KeywordStub(results=["E1"], by_technologies=["E9"])
    retriever = _retriever(keyword=keyword)

    assert retriever.keyword_channel(ParsedQuery(original_query="mentoring", skills=["mentoring"]), 5) == ["E1"]
    assert keyword.calls == [(("mentoring",), 5)]


def test_keyword_failure_is_isolated_from_other_channels():
    retriever = _retriever(
        vector=VectorStub(hits=[{"id": "E4", "metadata": {"employee_id": "E4"}}]),
        keyword=KeywordStub(error=RetrievalError("KEYWORD_SEARCH_ERROR", "Keyword search failed", query="SELECT 1")),
    )
    parsed = ParsedQuery(original_query="Python data", skills=["Python"])

    result = retriever.retrieve(_request("Python data"), parsed)

    assert result.expert_ids == ["E4"]


def test_retrieval_log_reports_channel_weights(monkeypatch):
    log = MagicMock()
    monkeypatch.setattr(retrieve, "logger", log)
    retriever = _retriever(keyword=KeywordStub(results=["E1"]))
    parsed = ParsedQuery(original_query="Java", technologies=["Java"])

    result = retriever.retrieve(_request("Java"), parsed)

    message, *args = log.info.call_args.args
    assert "weights=%s" in message
    assert result.weights in args
    assert result.weights["keyword"] == 0.8


def test_failing_channel_does_not_stop_the_others():
    retriever = _retriever(
        vector=VectorStub(error=RuntimeError("embedding service down")),
        keyword=KeywordStub(results=["E3"]),
    )
    parsed = ParsedQuery(original_query="Python data", skills=["Python"])

    result = retriever.retrieve(_request("Python data"), parsed)

    assert result.expert_ids == ["E3"]


def test_rerank_order_and_scores_are_reconciled():
    reranker = RerankerStub(order=["E2", "E1"], scores={"E2": 0.9, "E9": 0.4})
    retriever = _retriever(keyword=KeywordStub(results=["E1", "E2"]), reranker=reranker)
    parsed = ParsedQuery(original_query="Java", skills=["Java"])

    result = retriever.retrieve(_request("Java", rerank=True), parsed)

    assert result.expert_ids == ["E2", "E1"]
    assert result.relevance_scores == {"E2": 0.9, "E1": PLACEHOLDER_SCORE}
    assert result.reranked is True


def test_empty_rerank_falls_back_to_fused_order():
    retriever = _retriever(keyword=KeywordStub(results=["E1", "E2", "E3"]), reranker=RerankerStub(order=[]))
    parsed = ParsedQuery(original_query="Java", skills=["Java"])

    result = retriever.retrieve(_request("Java", max_results=2, rerank=True), parsed)

    assert result.expert_ids == ["E1", "E2"]
    assert set(result.relevance_scores) == {"E1", "E2"}


def test_unconfigured_reranker_is_not_reported_as_reranked():
    retriever = _retriever(keyword=KeywordStub(results=["E1"]))
    parsed = ParsedQuery(original_query="Java", skills=["Java"])

    result = retriever.retrieve(_request("Java", rerank=True), parsed)

    assert result.expert_ids == ["E1"]
    assert result.reranked is False


def test_no_candidates_returns_empty_result():
    result = _retriever().retrieve(_request("anything", rerank=True), ParsedQuery(original_query="anything"))

    assert result.expert_ids == []
    assert result.relevance_scores == {}
    assert result.reranked is False


def test_retrieve_validates_request():
    retriever = _retriever()

    with pytest.raises(QueryValidationError):
        retriever.retrieve(_request("   "), ParsedQuery(original_query="x"))
    with pytest.raises(QueryValidationError):
        retriever.retrieve(_request("Java", max_results=0), ParsedQuery(original_query="Java"))


def test_parallel_channels_respect_the_deadline():
    retriever = _retriever(
        vector=VectorStub(hits=[{"id": "E1", "metadata": {}}], delay=1.0),
        keyword=KeywordStub(results=["E2"]),
        parallel_channels=True,
        channel_timeout_sec=0.2,
    )
    parsed = ParsedQuery(original_query="Go developer", skills=["Go"])

    started = time.perf_counter()
    result = retriever.retrieve(_request("Go developer"), parsed)

    assert result.expert_ids == ["E2"]
    assert time.perf_counter() - started < 0.9
