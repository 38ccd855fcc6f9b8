from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from backend.expertmatch.models.dto import ExpertRecord, WorkExperienceRecord

logger = logging.getLogger("expertmatch")

DEFAULT_BATCH_SIZE = 1000

CLEAR_GRAPH = "MATCH (n) DETACH DELETE n"

CREATE_EXPERTS = """
UNWIND $rows AS row
CREATE (:Expert {id: row.id, name: row.name, email: row.email, seniority: row.seniority})
"""

MERGE_PROJECTS = """
UNWIND $rows AS row
MERGE (p:Project {id: row.id})
SET p.name = row.name, p.projectType = row.projectType
"""

MERGE_TECHNOLOGIES = """
UNWIND $rows AS row
MERGE (:Technology {name: row.name})
"""

MERGE_DOMAINS = """
UNWIND $rows AS row
MERGE (:Domain {name: row.name})
"""

MERGE_CUSTOMERS = """
UNWIND $rows AS row
MERGE (c:Customer {id: row.id})
SET c.name = row.name
"""

CREATE_PARTICIPATION = """
UNWIND $rows AS row
MATCH (e:Expert {id: row.expertId}), (p:Project {id: row.projectId})
CREATE (e)-[:PARTICIPATED_IN {role: row.role}]->(p)
"""

MERGE_USES = """
UNWIND $rows AS row
MATCH (p:Project {id: row.projectId}), (t:Technology {name: row.name})
MERGE (p)-[:USES]->(t)
"""

MERGE_IN_DOMAIN = """
UNWIND $rows AS row
MATCH (p:Project {id: row.projectId}), (d:Domain {name: row.name})
MERGE (p)-[:IN_DOMAIN]->(d)
"""

MERGE_WORKED_FOR = """
UNWIND $rows AS row
MATCH (e:Expert {id: row.expertId}), (c:Customer {id: row.customerId})
MERGE (e)-[:WORKED_FOR]->(c)
"""

MERGE_FOR_CUSTOMER = """
UNWIND $rows AS row
MATCH (p:Project {id: row.projectId}), (c:Customer {id: row.customerId})
MERGE (p)-[:FOR_CUSTOMER]->(c)
"""


def derived_id(prefix: str, name: str) -> str:
    digest = hashlib.sha1(name.strip().lower().encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


@dataclass
class GraphBuildStats:
    experts: int = 0
    projects: int = 0
    technologies: int = 0
    domains: int = 0
    customers: int = 0
    relationships: int = 0
    failed_batches: int = 0
    ms: int = 0


@dataclass
class BuildContext:
    """Lookups accumulated during one build run; never reused across runs."""

    expert_ids: Set[str] = field(default_factory=set)
    project_ids: Dict[str, str] = field(default_factory=dict)
    customer_ids: Dict[str, str] = field(default_factory=dict)
    stats: GraphBuildStats = field(default_factory=GraphBuildStats)

    def project_id(self, record: WorkExperienceRecord) -> str:
        key = record.project_id or record.project_name.strip().lower()
        if key not in self.project_ids:
            self.project_ids[key] = record.project_id or derived_id("project", record.project_name)
        return self.project_ids[key]

    def customer_id(self, record: WorkExperienceRecord) -> Optional[str]:
        if not record.customer_name:
            return None
        name = record.customer_name.strip()
        if name not in self.customer_ids:
            self.customer_ids[name] = record.customer_id or derived_id("customer", name)
        return self.customer_ids[name]


@dataclass
class GraphBuilder:
    """Rebuilds the expert graph from the relational expert directory."""

    adapter: object
    repository: object
    batch_size: int = DEFAULT_BATCH_SIZE

    def build(self, clear: bool = True) -> GraphBuildStats:
        started = time.perf_counter()
        context = BuildContext()

        self.adapter.create_graph()
        if clear:
            self.adapter.execute_write(CLEAR_GRAPH, {})

        experts = self.repository.list_experts()
        known = {expert.id for expert in experts}
        work = [record for record in self.repository.list_work_experience() if record.employee_id in known]

        self._create_experts(context, experts)
        self._create_projects(context, work)
        self._create_named("Technology", MERGE_TECHNOLOGIES, context, (tech for record in work for tech in record.technologies))
        self._create_named("Domain", MERGE_DOMAINS, context, (record.industry for record in work if record.industry))
        self._create_customers(context, work)
        self._create_relationships(context, work)

        context.stats.ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Graph build finished: %d experts, %d projects, %d relationships, %d failed batches in %d ms",
            context.stats.experts,
            context.stats.projects,
            context.stats.relationships,
            context.stats.failed_batches,
            context.stats.ms,
        )
        return context.stats

    def _create_experts(self, context: BuildContext, experts: List[ExpertRecord]) -> None:
        rows = []
        for expert in experts:
            if expert.id in context.expert_ids:
                continue
            context.expert_ids.add(expert.id)
            rows.append({"id": expert.id, "name": expert.name, "email": expert.email, "seniority": expert.seniority})
        context.stats.experts = self._write_batches("Expert", CREATE_EXPERTS, rows, context)

    def _create_projects(self, context: BuildContext, work: List[WorkExperienceRecord]) -> None:
        rows: Dict[str, Dict[str, object]] = {}
        for record in work:
            project_id = context.project_id(record)
            rows.setdefault(project_id, {"id": project_id, "name": record.project_name, "projectType": record.project_type})
        context.stats.projects = self._write_batches("Project", MERGE_PROJECTS, list(rows.values()), context)

    def _create_named(self, label: str, cypher: str, context: BuildContext, names: Iterable[str]) -> None:
        unique = sorted({name.strip() for name in names if name and name.strip()})
        written = self._write_batches(label, cypher, [{"name": name} for name in unique], context)
        if label == "Technology":
            context.stats.technologies = written
        else:
            context.stats.domains = written

    def _create_customers(self, context: BuildContext, work: List[WorkExperienceRecord]) -> None:
        rows: Dict[str, Dict[str, object]] = {}
        for record in work:
            customer_id = context.customer_id(record)
            if customer_id:
                rows.setdefault(customer_id, {"id": customer_id, "name": record.customer_name.strip()})
        context.stats.customers = self._write_batches("Customer", MERGE_CUSTOMERS, list(rows.values()), context)

    def _create_relationships(self, context: BuildContext, work: List[WorkExperienceRecord]) -> None:
        participation, uses, domains, worked_for, for_customer = [], [], [], [], []
        seen_uses, seen_domains, seen_worked, seen_for = set(), set(), set(), set()
        for record in work:
            project_id = context.project_id(record)
            participation.append({"expertId": record.employee_id, "projectId": project_id, "role": record.role})
            for tech in record.technologies:
                if tech and tech.strip() and (project_id, tech.strip()) not in seen_uses:
                    seen_uses.add((project_id, tech.strip()))
                    uses.append({"projectId": project_id, "name": tech.strip()})
            if record.industry and (project_id, record.industry.strip()) not in seen_domains:
                seen_domains.add((project_id, record.industry.strip()))
                domains.append({"projectId": project_id, "name": record.industry.strip()})
            customer_id = context.customer_id(record)
            if customer_id:
                if (record.employee_id, customer_id) not in seen_worked:
                    seen_worked.add((record.employee_id, customer_id))
                    worked_for.append({"expertId": record.employee_id, "customerId": customer_id})
                if (project_id, customer_id) not in seen_for:
                    seen_for.add((project_id, customer_id))
                    for_customer.append({"projectId": project_id, "customerId": customer_id})

        total = 0
        total += self._write_batches("PARTICIPATED_IN", CREATE_PARTICIPATION, participation, context)
        total += self._write_batches("USES", MERGE_USES, uses, context)
        total += self._write_batches("IN_DOMAIN", MERGE_IN_DOMAIN, domains, context)
        total += self._write_batches("WORKED_FOR", MERGE_WORKED_FOR, worked_for, context)
        total += self._write_batches("FOR_CUSTOMER", MERGE_FOR_CUSTOMER, for_customer, context)
        context.stats.relationships = total

    def _write_batches(self, label: str, cypher: str, rows: List[Dict[str, object]], context: BuildContext) -> int:
        """Write rows in UNWIND batches; returns the number of rows in successful batches."""

        written = 0
        size = max(1, int(self.batch_size))
        for start in range(0, len(rows), size):
            batch = rows[start:start + size]
            try:
                self.adapter.execute_write(cypher, {"rows": batch})
                written += len(batch)
            except Exception as exc:
                context.stats.failed_batches += 1
                logger.warning("Failed to write %s batch %d-%d (%s)", label, start, start + len(batch), exc)
        return written
