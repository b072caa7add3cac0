from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np


def average_precision(relevant: np.ndarray, retrieved: np.ndarray, cutoff: int | None = None) -> float:
    """
    Computes Average Precision (AP) for a single query.

    Only the first `cutoff` retrieved documents are examined, and the sum of
    precisions is divided by min(|relevant|, cutoff).

    Args:
        relevant: 1D array of relevant document ids.
        retrieved: 1D array of ranked document ids.
        cutoff: Number of ranked documents to examine (None = all).

    Returns:
        Average precision score.
    """
    if relevant.size == 0:
        return 0.0
    if cutoff is not None:
        if cutoff <= 0:
            return 0.0
        retrieved = retrieved[:cutoff]

    relevant_set = set(relevant.tolist())
    hits, sum_precisions = 0, 0.0

    for i, doc_id in enumerate(retrieved.tolist(), start=1):
        if doc_id in relevant_set:
            hits += 1
            sum_precisions += hits / i

    denominator = len(relevant_set) if cutoff is None else min(len(relevant_set), cutoff)
    return sum_precisions / denominator


def mean_average_precision(
    all_relevant: list[np.ndarray],
    all_retrieved: list[np.ndarray],
    cutoff: int | None = None,
) -> float:
    """
    Computes Mean Average Precision (MAP) over multiple queries.

    Args:
        all_relevant: List of 1D arrays of relevant document ids.
        all_retrieved: List of 1D arrays of ranked document ids.
        cutoff: Per-query cutoff passed to `average_precision`.

    Returns:
        Mean Average Precision score.
    """
    if not all_relevant:
        return 0.0

    ap_scores = [
        average_precision(rel, ret, cutoff) for rel, ret in zip(all_relevant, all_retrieved)
    ]
    return float(np.mean(ap_scores))


def ndcg_at_k(relevant: np.ndarray, retrieved: np.ndarray, k: int) -> float:
    """
    Computes Normalized Discounted Cumulative Gain (NDCG) at rank K with
    binary gains.

    Args:
        relevant: 1D array of relevant document ids.
        retrieved: 1D array of ranked document ids.
        k: Top-k cutoff.

    Returns:
        NDCG at rank k.
    """
    if k <= 0:
        return 0.0
    relevant_set = set(relevant.tolist())
    discounts = np.log2(np.arange(k) + 2)  # log2(1+1)=1 for rank 1

    gains = np.array([1.0 if doc in relevant_set else 0.0 for doc in retrieved[:k].tolist()])
    dcg = float(np.sum(gains / discounts[: len(gains)]))

    ideal_hits = min(len(relevant_set), k)
    idcg = float(np.sum(1.0 / discounts[:ideal_hits]))

    return dcg / idcg if idcg > 0 else 0.0


@dataclass
class MetricAccumulator:
    """
    Per-query metric values for one evaluated configuration.

    An accumulator belongs to exactly one grid cell; create a fresh one (or
    call `reset`) before evaluating another configuration.

    Attributes:
        cutoff: Ranked documents examined by average precision.
        ndcg_cutoff: Rank cutoff for NDCG, or None to skip NDCG.
    """

    cutoff: int | None = 5
    ndcg_cutoff: int | None = None
    average_precisions: list[float] = field(default_factory=list)
    ndcg_scores: list[float] = field(default_factory=list)

    def add(self, relevant: Sequence[str] | np.ndarray, retrieved: Sequence[str] | np.ndarray) -> None:
        relevant = np.asarray(relevant)
        retrieved = np.asarray(retrieved)
        self.average_precisions.append(average_precision(relevant, retrieved, self.cutoff))
        if self.ndcg_cutoff is not None:
            self.ndcg_scores.append(ndcg_at_k(relevant, retrieved, self.ndcg_cutoff))

    @property
    def num_queries(self) -> int:
        return len(self.average_precisions)

    def map(self) -> float:
        return float(np.mean(self.average_precisions)) if self.average_precisions else 0.0

    def mean_ndcg(self) -> float | None:
        if self.ndcg_cutoff is None:
            return None
        return float(np.mean(self.ndcg_scores)) if self.ndcg_scores else 0.0

    def reset(self) -> None:
        self.average_precisions.clear()
        self.ndcg_scores.clear()
