"""
k-nearest-neighbor classification on top of search results.

A query is labeled with the majority category among its `k` highest-ranked
documents. When two categories have the same count, the one met first in the
descending walk wins, so ties are decided by rank rather than by any storage
order.

Several corpora can vote together: each ranking is min-max normalized to
[0, 1], scaled by its interpolation weight, and summed per
(document name, category) before the same majority walk is applied.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

import numpy as np

from ranking_tuner.errors import ConfigurationError
from ranking_tuner.scoring import BM25
from ranking_tuner.search import RankedEntry, RankedList, search

if TYPE_CHECKING:
    from ranking_tuner.corpus import Corpus, Query
    from ranking_tuner.scoring import ScoringFunction


NO_RESULT = "[no results]"

# Normalized value for every entry of a ranking whose scores are all equal
CONSTANT_NORMALIZED_SCORE = 1.0


def _check_k(k: int) -> None:
    if k < 1:
        raise ConfigurationError(f"k must be a positive integer, got {k}")


def classify(ranking: Iterable[RankedEntry], k: int) -> str:
    """
    Majority category among the first `k` entries of `ranking`.

    The entries are walked in the order given (a RankedList iterates from the
    highest score down). Ties between counts go to the category encountered
    first.

    Returns:
        The winning category, or NO_RESULT when the ranking is empty.

    Raises:
        ConfigurationError: if k < 1.
    """
    _check_k(k)
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for position, entry in enumerate(ranking):
        if position == k:
            break
        counts[entry.category] += 1
        first_seen.setdefault(entry.category, len(first_seen))

    if not counts:
        return NO_RESULT
    return max(counts, key=lambda category: (counts[category], -first_seen[category]))


def normalize(ranking: Sequence[RankedEntry]) -> dict[tuple[str, str], float]:
    """
    Min-max normalizes the scores of `ranking` into [0, 1].

    Returns:
        (name, category) -> normalized score, in ranking order. When every
        score is equal each entry maps to CONSTANT_NORMALIZED_SCORE.
    """
    if not ranking:
        return {}
    scores = np.array([entry.score for entry in ranking], dtype=np.float64)
    low, high = float(scores.min()), float(scores.max())
    if high == low:
        normalized = np.full(len(scores), CONSTANT_NORMALIZED_SCORE)
    else:
        normalized = (scores - low) / (high - low)

    result: dict[tuple[str, str], float] = {}
    for entry, value in zip(ranking, normalized.tolist()):
        result.setdefault(entry.key, value)
    return result


def classify_query(
    query: Query,
    corpus: Corpus,
    k: int,
    scorer: ScoringFunction | None = None,
    num_workers: int | None = None,
) -> str:
    """Searches `corpus` (BM25 by default) and classifies the ranking."""
    _check_k(k)
    ranking = search(query, corpus, scorer or BM25(), num_workers=num_workers)
    return classify(ranking, k)


def combine_rankings(
    rankings: Sequence[Sequence[RankedEntry]],
    weights: Sequence[float],
) -> RankedList:
    """
    Weighted sum of normalized scores per (name, category) key.

    Ties in the combined list keep the order in which keys were first added
    (first ranking first, each in rank order).
    """
    if len(rankings) != len(weights):
        raise ConfigurationError(f"got {len(weights)} weight(s) for {len(rankings)} ranking(s); counts must match")

    combined: dict[tuple[str, str], float] = {}
    for ranking, weight in zip(rankings, weights):
        for key, value in normalize(ranking).items():
            combined[key] = combined.get(key, 0.0) + weight * value

    return RankedList(
        RankedEntry(score, name, category, sequence)
        for sequence, ((name, category), score) in enumerate(combined.items())
    )


def classify_ensemble(
    query: Query,
    corpora: Sequence[Corpus],
    weights: Sequence[float],
    k: int,
    scorer: ScoringFunction | None = None,
    num_workers: int | None = None,
) -> str:
    """
    Classifies `query` against several corpora combined by linear
    interpolation of their normalized scores.

    Args:
        query: Query to classify.
        corpora: Independently built corpora.
        weights: One interpolation weight per corpus (need not sum to 1).
        k: Number of neighbors.
        scorer: Ranking model shared by all searches (BM25 by default).
        num_workers: Scoring threads per search.

    Raises:
        ConfigurationError: if the weight count differs from the corpus count
            or k < 1.
    """
    if len(corpora) != len(weights):
        raise ConfigurationError(f"got {len(weights)} weight(s) for {len(corpora)} index(es); counts must match")
    _check_k(k)

    scorer = scorer or BM25()
    rankings = [search(query, corpus, scorer, num_workers=num_workers) for corpus in corpora]
    return classify(combine_rankings(rankings, weights), k)
