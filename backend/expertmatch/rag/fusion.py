from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from backend.expertmatch.models.dto import CHANNELS

RRF_K = 60
DEFAULT_WEIGHT = 1.0


def _ordered_channels(results: Mapping[str, Sequence[str]]) -> List[str]:
    ordered = [channel for channel in CHANNELS if channel in results]
    ordered.extend(channel for channel in results if channel not in CHANNELS)
    return ordered


def fuse_with_scores(
    results: Mapping[str, Sequence[str]],
    weights: Optional[Mapping[str, float]] = None,
    k: int = RRF_K,
) -> List[Tuple[str, float]]:
    """Weighted reciprocal rank fusion returning ``(id, score)`` pairs, best first.

    Position ``i`` (0-based) in a channel adds ``weight / (k + i + 1)``. Ties
    keep first-seen order across channels visited as vector, graph, keyword,
    person, then any extra channels.
    """

    weights = weights or {}
    scores: Dict[str, float] = {}
    first_seen: Dict[str, int] = {}

    for channel in _ordered_channels(results):
        weight = weights.get(channel, DEFAULT_WEIGHT)
        seen_in_channel = set()
        rank = 0
        for candidate in results[channel] or []:
            if candidate is None or candidate in seen_in_channel:
                continue
            seen_in_channel.add(candidate)
            if candidate not in first_seen:
                first_seen[candidate] = len(first_seen)
            scores[candidate] = scores.get(candidate, 0.0) + weight / (k + rank + 1)
            rank += 1

    ordered = sorted(scores.items(), key=lambda item: (-item[1], first_seen[item[0]]))
    return ordered


class ResultFusionService:
    """Merges per-channel candidate lists into one ranked list."""

    def __init__(self, k: int = RRF_K) -> None:
        self.k = k

    def fuse(self, results: Mapping[str, Sequence[str]], weights: Optional[Mapping[str, float]] = None) -> List[str]:
        if not results:
            return []
        return [candidate for candidate, _ in fuse_with_scores(results, weights, self.k)]
