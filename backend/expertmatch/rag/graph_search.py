"""Domain questions about experts expressed as graph pattern queries.

Graph search only enriches retrieval. Every lookup returns an empty list
when the graph is missing or the query fails, so callers never need to
guard it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger("expertmatch")

EXPERT_LIMIT = 100
COLLABORATOR_LIMIT = 50

BY_TECHNOLOGY = """
MATCH (e:Expert)-[:PARTICIPATED_IN]->(p:Project)-[:USES]->(t:Technology)
WHERE t.name = $technology
RETURN DISTINCT e.id as expertId
LIMIT 100
"""

BY_ALL_TECHNOLOGIES = """
MATCH (e:Expert)-[:PARTICIPATED_IN]->(p:Project)-[:USES]->(t:Technology)
WHERE t.name IN $technologies
WITH e, COUNT(DISTINCT t.name) as techCount
WHERE techCount = $techCount
RETURN DISTINCT e.id as expertId
LIMIT 100
"""

BY_DOMAIN = """
MATCH (e:Expert)-[:PARTICIPATED_IN]->(p:Project)-[:IN_DOMAIN]->(d:Domain)
WHERE d.name = $domain
RETURN DISTINCT e.id as expertId
LIMIT 100
"""

COLLABORATORS = """
MATCH (e1:Expert)-[:PARTICIPATED_IN]->(p:Project)<-[:PARTICIPATED_IN]-(e2:Expert)
WHERE e1.id = $expertId AND e1.id <> e2.id
RETURN DISTINCT e2.id as expertId
LIMIT 50
"""

BY_PROJECT_TYPE = """
MATCH (e:Expert)-[:PARTICIPATED_IN]->(p:Project)
WHERE p.projectType = $projectType
RETURN DISTINCT e.id as expertId
LIMIT 100
"""

# Customer names are compared after the match; AGE cannot reliably compare
# them inside an inline MATCH property map.
BY_CUSTOMER = """
MATCH (e:Expert)-[:WORKED_FOR]->(c:Customer)
WITH e, c
WHERE c.name = $customerName
RETURN DISTINCT e.id as expertId
LIMIT 100
"""

BY_CUSTOMER_AND_TECHNOLOGY = """
MATCH (e:Expert)-[:WORKED_FOR]->(c:Customer)
WITH e, c
WHERE c.name = $customerName
MATCH (e)-[:PARTICIPATED_IN]->(p:Project)-[:USES]->(t:Technology)
WHERE t.name = $technology
RETURN DISTINCT e.id as expertId
LIMIT 100
"""


def _distinct(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class GraphSearchService:
    """Runs expert lookups through the graph query adapter."""

    def __init__(self, adapter) -> None:
        self._adapter = adapter

    def find_experts_by_technology(self, technology: str) -> List[str]:
        return self._search("technology", BY_TECHNOLOGY, {"technology": technology})

    def find_experts_by_technologies(self, technologies: Sequence[str]) -> List[str]:
        """Experts connected to every technology in the set, not just any of them."""

        names = _distinct(technologies or [])
        if not names:
            return []
        return self._search(
            "technologies",
            BY_ALL_TECHNOLOGIES,
            {"technologies": names, "techCount": len(names)},
        )

    def find_experts_by_domain(self, domain: str) -> List[str]:
        return self._search("domain", BY_DOMAIN, {"domain": domain})

    def find_collaborators(self, expert_id: str) -> List[str]:
        return self._search("collaborators", COLLABORATORS, {"expertId": expert_id})

    def find_experts_by_project_type(self, project_type: str) -> List[str]:
        return self._search("project type", BY_PROJECT_TYPE, {"projectType": project_type})

    def find_experts_by_customer(self, customer_name: str) -> List[str]:
        return self._search("customer", BY_CUSTOMER, {"customerName": customer_name})

    def find_experts_by_customer_and_technology(self, customer_name: str, technology: str) -> List[str]:
        return self._search(
            "customer and technology",
            BY_CUSTOMER_AND_TECHNOLOGY,
            {"customerName": customer_name, "technology": technology},
        )

    def _search(self, label: str, cypher: str, params: Dict[str, Any]) -> List[str]:
        try:
            if not self._adapter.graph_exists():
                logger.warning("Graph does not exist; skipping %s lookup", label)
                return []
            return self._adapter.execute_and_extract(cypher, params, "expertId")
        except Exception as exc:
            logger.warning("Graph %s lookup failed; returning no experts (%s)", label, exc)
            return []


class InMemoryGraphSearch:
    """Same lookups answered from in-memory work experience records."""

    def __init__(self, repository) -> None:
        self._repository = repository

    def _records(self):
        return self._repository.list_work_experience()

    def _experts_where(self, predicate, limit: int = EXPERT_LIMIT, exclude: Optional[str] = None) -> List[str]:
        matches = (record.employee_id for record in self._records() if predicate(record))
        return [expert_id for expert_id in _distinct(matches) if expert_id != exclude][:limit]

    def find_experts_by_technology(self, technology: str) -> List[str]:
        return self._experts_where(lambda record: technology in record.technologies)

    def find_experts_by_technologies(self, technologies: Sequence[str]) -> List[str]:
        wanted = set(_distinct(technologies or []))
        if not wanted:
            return []
        covered: Dict[str, set] = {}
        for record in self._records():
            covered.setdefault(record.employee_id, set()).update(wanted & set(record.technologies))
        return [expert_id for expert_id, techs in covered.items() if techs == wanted][:EXPERT_LIMIT]

    def find_experts_by_domain(self, domain: str) -> List[str]:
        return self._experts_where(lambda record: record.industry == domain)

    def find_collaborators(self, expert_id: str) -> List[str]:
        projects = {self._project_key(record) for record in self._records() if record.employee_id == expert_id}
        return self._experts_where(
            lambda record: self._project_key(record) in projects,
            limit=COLLABORATOR_LIMIT,
            exclude=expert_id,
        )

    def find_experts_by_project_type(self, project_type: str) -> List[str]:
        return self._experts_where(lambda record: record.project_type == project_type)

    def find_experts_by_customer(self, customer_name: str) -> List[str]:
        return self._experts_where(lambda record: record.customer_name == customer_name)

    def find_experts_by_customer_and_technology(self, customer_name: str, technology: str) -> List[str]:
        customer_experts = set(self.find_experts_by_customer(customer_name))
        return [expert_id for expert_id in self.find_experts_by_technology(technology) if expert_id in customer_experts]

    @staticmethod
    def _project_key(record) -> str:
        return record.project_id or record.project_name
