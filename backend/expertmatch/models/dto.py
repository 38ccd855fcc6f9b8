from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHANNELS = ("vector", "graph", "keyword", "person")


class ParsedQuery(BaseModel):
    """Structured view of a requirement query produced by the upstream parser."""

    model_config = ConfigDict(frozen=True)

    original_query: str
    skills: List[str] = Field(default_factory=list)
    seniority_levels: List[str] = Field(default_factory=list)
    language: Optional[str] = None
    intent: Optional[str] = None
    technologies: List[str] = Field(default_factory=list)


class Entity(BaseModel):
    """Typed name/id pair extracted from query text."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    id: Optional[str] = None


class ExtractedEntities(BaseModel):
    """Entities grouped by type."""

    model_config = ConfigDict(frozen=True)

    persons: List[Entity] = Field(default_factory=list)
    organizations: List[Entity] = Field(default_factory=list)
    technologies: List[Entity] = Field(default_factory=list)
    projects: List[Entity] = Field(default_factory=list)
    domains: List[Entity] = Field(default_factory=list)


class QueryOptions(BaseModel):
    """Per-request retrieval knobs."""

    max_results: int = Field(default=10)
    rerank: bool = True


class RetrievalRequest(BaseModel):
    query: str
    options: QueryOptions = Field(default_factory=QueryOptions)


class RetrievalResult(BaseModel):
    """Ranked expert ids with a relevance score for every id."""

    expert_ids: List[str] = Field(default_factory=list)
    relevance_scores: Dict[str, float] = Field(default_factory=dict)
    reranked: bool = False
    weights: Dict[str, float] = Field(default_factory=dict)


class ProjectSummary(BaseModel):
    name: str
    role: Optional[str] = None
    technologies: List[str] = Field(default_factory=list)


class ExpertProfile(BaseModel):
    """Profile data used for reranking prompts and vector documents."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    seniority: Optional[str] = None
    projects: List[ProjectSummary] = Field(default_factory=list)


class ExpertRecord(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    seniority: Optional[str] = None


class WorkExperienceRecord(BaseModel):
    """One project engagement of an expert."""

    employee_id: str
    project_id: Optional[str] = None
    project_name: str
    project_type: Optional[str] = None
    role: Optional[str] = None
    technologies: List[str] = Field(default_factory=list)
    industry: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    summary: Optional[str] = None


class RetrieveRequest(BaseModel):
    """Payload accepted by the retrieve endpoint."""

    query: str = Field(..., min_length=1)
    parsed_query: Optional[ParsedQuery] = None
    entities: Optional[ExtractedEntities] = None
    options: QueryOptions = Field(default_factory=QueryOptions)

    @field_validator("query")
    @classmethod
    def strip_query(cls, value: str) -> str:
        """Reject whitespace-only queries."""
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value


class RetrieveResponse(BaseModel):
    """Response body returned by the retrieve endpoint."""

    query: str
    expert_ids: List[str]
    relevance_scores: Dict[str, float]
    reranked: bool
    weights: Dict[str, float]
    latency_ms: int = Field(..., ge=0)


class RebuildResponse(BaseModel):
    operation: str
    count: int = Field(..., ge=0)
    failed_batches: int = Field(default=0, ge=0)
    ms: int = Field(..., ge=0)
