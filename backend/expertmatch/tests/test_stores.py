from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import ProgrammingError

from backend.expertmatch.core import database
from backend.expertmatch.core.database import is_missing_trigram, is_transaction_aborted, sqlstate, statement_timeout_ms
from backend.expertmatch.core.errors import QueryValidationError, RetrievalError, TrigramUnavailableError
from backend.expertmatch.store.experts import ExpertRepository, name_parts
from backend.expertmatch.store.keyword_search import InMemoryKeywordSearch, KeywordSearch


class FakePgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def _engine(rows=None, error=None):
    engine = MagicMock()
    conn = engine.connect.return_value.__enter__.return_value
    if error is not None:
        conn.execute.side_effect = error
    else:
        conn.execute.return_value.all.return_value = rows or []
    return engine, conn


def test_sqlstate_walks_the_cause_chain():
    wrapped = ProgrammingError("SELECT", {}, FakePgError("function similarity(text, text) does not exist", "42883"))

    assert sqlstate(wrapped) == "42883"
    assert is_missing_trigram(wrapped) is True
    assert is_transaction_aborted(wrapped) is False


def test_transaction_aborted_detected_by_message():
    try:
        try:
            raise RuntimeError("current transaction is aborted, commands ignored")
        except RuntimeError as inner:
            raise ValueError("lookup failed") from inner
    except ValueError as exc:
        assert is_transaction_aborted(exc) is True


def test_statement_timeout_follows_channel_budget():
    assert statement_timeout_ms(SimpleNamespace(channel_timeout_sec=2.5)) == 2500
    assert statement_timeout_ms(SimpleNamespace()) == 10000


def test_build_engine_sets_server_statement_timeout(monkeypatch):
    captured = {}

    def fake_create_engine(url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return MagicMock()

    monkeypatch.setattr(database, "create_engine", fake_create_engine)
    settings = SimpleNamespace(database_url="postgresql://u:p@db/expertmatch", db_pool_size=3, channel_timeout_sec=2.5)

    assert database.build_engine(settings) is not None
    assert captured["url"] == "postgresql+psycopg://u:p@db/expertmatch"
    assert captured["pool_size"] == 3
    assert captured["connect_args"] == {"options": "-c statement_timeout=2500"}
    assert database.build_engine(SimpleNamespace(database_url=None)) is None


def test_name_parts():
    assert name_parts("  Alice   Mary Smith ") == ["Alice Mary Smith", "Alice", "Smith"]
    assert name_parts("Alice") == ["Alice"]


def test_name_lookup_escapes_like_wildcards():
    engine, conn = _engine(rows=[("E1",)])
    repository = ExpertRepository(engine)

    assert repository.find_ids_by_name("50%_off", 5) == ["E1"]
    params = conn.execute.call_args.args[1]
    assert params == {"pattern": "%50\\%\\_off%", "limit": 5}


def test_similarity_raises_when_trigram_missing():
    engine, _ = _engine(error=FakePgError("function similarity(text, unknown) does not exist", "42883"))
    repository = ExpertRepository(engine)

    with pytest.raises(TrigramUnavailableError):
        repository.find_ids_by_similarity("Alise", 0.3, 5)


def test_similarity_returns_empty_on_aborted_transaction():
    engine, _ = _engine(error=FakePgError("current transaction is aborted", "25P02"))

    assert ExpertRepository(engine).find_ids_by_similarity("Alise", 0.3, 5) == []


def test_similarity_wraps_other_errors():
    engine, _ = _engine(error=FakePgError("relation does not exist", "42P01"))

    with pytest.raises(RetrievalError) as excinfo:
        ExpertRepository(engine).find_ids_by_similarity("Alise", 0.3, 5)
    assert excinfo.value.error_code == "NAME_SIMILARITY_ERROR"


def test_repository_rejects_unsafe_schema():
    with pytest.raises(QueryValidationError):
        ExpertRepository(MagicMock(), schema="public; DROP TABLE employee")


def test_in_memory_repository_profiles(expert_repository):
    profiles = expert_repository.load_profiles(["E1", "E404"])

    assert list(profiles) == ["E1"]
    assert [project.name for project in profiles["E1"].projects] == ["Payments Platform", "Cloud Migration"]
    assert expert_repository.find_candidate_names("Alice Jones", 10) == {"E1": "Alice Smith"}


def test_in_memory_repository_from_seed(seed_file):
    from backend.expertmatch.store.experts import InMemoryExpertRepository

    repository = InMemoryExpertRepository.from_seed(seed_file)

    assert [expert.id for expert in repository.list_experts()] == ["E1", "E2", "E3"]
    assert len(repository.list_work_experience()) == 4


def test_keyword_search_returns_ranked_employee_ids():
    engine, conn = _engine(rows=[("E2", 0.4), ("E1", 0.1)])
    search = KeywordSearch(engine)

    assert search.search_by_keywords(["Java", " settlement "], 5) == ["E2", "E1"]
    params = conn.execute.call_args.args[1]
    assert params == {"terms": "Java settlement", "limit": 5}


def test_keyword_search_returns_empty_on_aborted_transaction():
    engine, _ = _engine(error=FakePgError("current transaction is aborted", "25P02"))
    search = KeywordSearch(engine)

    assert search.search_by_keywords(["Java"], 5) == []
    assert search.search_by_technologies(["Java"], 5) == []


def test_keyword_search_raises_on_other_failures():
    engine, _ = _engine(error=FakePgError('relation "expertmatch.work_experience" does not exist', "42P01"))
    search = KeywordSearch(engine)

    with pytest.raises(RetrievalError) as excinfo:
        search.search_by_keywords(["Java"], 5)
    assert excinfo.value.error_code == "KEYWORD_SEARCH_ERROR"
    assert "work_experience" in excinfo.value.query

    engine.connect.side_effect = OSError("connection refused")
    with pytest.raises(RetrievalError) as excinfo:
        search.search_by_technologies(["Java"], 5)
    assert excinfo.value.error_code == "KEYWORD_SEARCH_ERROR"


def test_keyword_search_validates_terms():
    search = KeywordSearch(MagicMock())

    with pytest.raises(QueryValidationError):
        search.search_by_keywords(["", "  "], 5)
    with pytest.raises(QueryValidationError):
        search.search_by_technologies(["Java"], 0)


def test_in_memory_keyword_search(expert_repository):
    search = InMemoryKeywordSearch(expert_repository.list_work_experience())

    assert search.search_by_keywords(["AWS", "dashboards"], 5) == ["E3", "E1"]
    assert search.search_by_technologies(["java"], 5) == ["E1", "E2"]
    assert search.search_by_keywords(["Haskell"], 5) == []
