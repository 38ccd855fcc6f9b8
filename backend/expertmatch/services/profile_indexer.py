from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List

from backend.expertmatch.adapters.embeddings import StubEmbeddingProvider
from backend.expertmatch.models.dto import ExpertRecord, WorkExperienceRecord

logger = logging.getLogger("expertmatch")


def render_profile_document(expert: ExpertRecord, work: List[WorkExperienceRecord]) -> str:
    """Plain-text profile embedded for similarity search."""

    lines = [expert.name]
    if expert.seniority:
        lines.append(f"Seniority: {expert.seniority}")
    technologies: List[str] = []
    for record in work:
        line = record.project_name
        if record.role:
            line += f" as {record.role}"
        if record.industry:
            line += f" ({record.industry})"
        lines.append(line)
        if record.summary:
            lines.append(record.summary)
        technologies.extend(tech for tech in record.technologies if tech not in technologies)
    if technologies:
        lines.append("Technologies: " + ", ".join(technologies))
    return "\n".join(lines)


@dataclass
class ProfileIndexer:
    """Embeds one document per expert and upserts it into the vector store."""

    vector_store: object
    repository: object
    embedding_provider: object

    def index_all(self) -> int:
        experts = self.repository.list_experts()
        if not experts:
            return 0
        work_by_expert: Dict[str, List[WorkExperienceRecord]] = {}
        for record in self.repository.list_work_experience():
            work_by_expert.setdefault(record.employee_id, []).append(record)

        documents = [render_profile_document(expert, work_by_expert.get(expert.id, [])) for expert in experts]
        try:
            embeddings = self.embedding_provider.embed_texts(documents)
        except Exception as exc:  # pragma: no cover - runtime specific
            logger.warning("Embedding provider failed (%s); falling back to stub embeddings", exc)
            fallback = StubEmbeddingProvider()
            embeddings = fallback.embed_texts(documents)
            self.embedding_provider = fallback

        records = [
            {
                "id": f"profile-{expert.id}",
                "text": document,
                "metadata": {"employee_id": expert.id, "name": expert.name},
                "embedding": embedding,
            }
            for expert, document, embedding in zip(experts, documents, embeddings)
        ]
        self.vector_store.upsert(records)
        logger.info("Indexed %d expert profiles", len(records))
        return len(records)
