"""Interval merge shared by every detection pass.

Candidates are sorted by span start (stable, so pipeline order breaks ties)
and each one is compared only against the most recently accepted entity.
Because accepted entities are kept sorted and disjoint, that single check is
enough to keep the whole output disjoint, and merging an already-merged list
returns it unchanged.
"""

from __future__ import annotations
from typing import Callable, Iterable

from .types import DetectedEntity

Prefer = Callable[[DetectedEntity, DetectedEntity], bool]


def by_confidence(candidate: DetectedEntity, accepted: DetectedEntity) -> bool:
    """Candidate wins only with strictly higher confidence."""
    return candidate.confidence > accepted.confidence


def merge_entities(
    candidates: Iterable[DetectedEntity],
    prefer: Prefer = by_confidence,
) -> list[DetectedEntity]:
    """Reduce candidates to a disjoint list ordered by span start."""
    accepted: list[DetectedEntity] = []
    for candidate in sorted(candidates, key=lambda e: e.span.start):
        if accepted and candidate.span.overlaps(accepted[-1].span):
            if prefer(candidate, accepted[-1]):
                accepted[-1] = candidate
        else:
            accepted.append(candidate)
    return accepted


def merge_passes(*passes: Iterable[DetectedEntity], prefer: Prefer = by_confidence) -> list[DetectedEntity]:
    """Merge several passes, earlier passes first."""
    combined: list[DetectedEntity] = []
    for entities in passes:
        combined.extend(entities)
    return merge_entities(combined, prefer)
