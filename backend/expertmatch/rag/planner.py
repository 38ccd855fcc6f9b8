from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from backend.expertmatch.models.dto import ExtractedEntities, ParsedQuery

BASE_WEIGHTS: Dict[str, float] = {"vector": 1.0, "graph": 0.8, "keyword": 0.6, "person": 2.0}
TECHNOLOGY_KEYWORD_WEIGHT = 0.8
TEAM_FORMATION_GRAPH_WEIGHT = 1.0
PERSON_MENTION_WEIGHT = 3.0
TEAM_FORMATION_INTENT = "team_formation"


@dataclass
class ChannelPlanner:
    """Computes per-query fusion weights from the parsed query and entities."""

    base_weights: Dict[str, float] = field(default_factory=lambda: dict(BASE_WEIGHTS))

    def weights(self, parsed: ParsedQuery, entities: Optional[ExtractedEntities] = None) -> Dict[str, float]:
        weights = dict(self.base_weights)
        if parsed.technologies:
            weights["keyword"] = TECHNOLOGY_KEYWORD_WEIGHT
        if (parsed.intent or "").lower() == TEAM_FORMATION_INTENT:
            weights["graph"] = TEAM_FORMATION_GRAPH_WEIGHT
        if entities is not None and entities.persons:
            weights["person"] = PERSON_MENTION_WEIGHT
        return weights
