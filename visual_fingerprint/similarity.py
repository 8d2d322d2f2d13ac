"""
Nearest-neighbour ranking over histogram descriptors.

Given one reference identity and a mapping of identities to histograms,
rank() returns the closest candidates by Euclidean distance. Candidate
order is the mapping's iteration order, and the sort is stable, so ties
resolve to whichever candidate was inserted first.
"""

import logging
from typing import Hashable, List, Mapping, NamedTuple

import numpy as np

logger = logging.getLogger(__name__)


class UnknownReferenceError(LookupError):
    """The query identity is missing or has no usable descriptor."""


class SimilarityResult(NamedTuple):
    identity: Hashable
    distance: float


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """sqrt(sum((a_k - b_k)^2)) for two equal-length vectors."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector shapes differ: {a.shape} vs {b.shape}")
    return float(np.sqrt(np.sum((a - b) ** 2)))


def rank(query_id: Hashable,
         candidates: Mapping[Hashable, np.ndarray],
         max_results: int) -> List[SimilarityResult]:
    """
    Rank candidates by distance to the query's histogram.

    Args:
        query_id: Identity of the reference; must be a key of candidates.
        candidates: Identity -> histogram. Iteration order breaks ties.
        max_results: Maximum number of results.

    Returns:
        Up to max_results SimilarityResults, nearest first. The query is
        never part of its own results. Candidates whose histogram is
        empty or has a different length cannot be compared and are
        skipped.

    Raises:
        UnknownReferenceError: If query_id is absent or its histogram is
            empty.
    """
    if query_id not in candidates:
        raise UnknownReferenceError(query_id)

    query = np.asarray(candidates[query_id], dtype=np.float64)
    if query.size == 0:
        raise UnknownReferenceError(query_id)

    results = []
    skipped = 0
    for identity, histogram in candidates.items():
        if identity == query_id:
            continue
        histogram = np.asarray(histogram, dtype=np.float64)
        if histogram.shape != query.shape:
            skipped += 1
            continue
        results.append(SimilarityResult(identity, euclidean_distance(query, histogram)))

    if skipped:
        logger.debug(f"Skipped {skipped} candidates without a comparable descriptor")

    results.sort(key=lambda r: r.distance)
    return results[:max(0, min(max_results, len(results)))]
