"""
Parallel search over a Corpus.

Candidates are taken from the posting lists of the query terms, split into
chunks and scored by a ThreadPoolExecutor. Each worker builds its partial
result locally and merges it into the shared list under a lock. The merged
list is then sorted by (-score, sequence), where the sequence of a search
result is its document index, so the final order does not depend on which
worker finished first.

Usage:
    from ranking_tuner.search import search

    ranking = search(query, corpus, BM25())
    for entry in ranking:
        print(entry.score, entry.name, entry.category)
"""

from __future__ import annotations

import math
import os
import threading
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, overload

import numpy as np

from ranking_tuner.scoring import ScoreContext

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ranking_tuner.corpus import Corpus, Query
    from ranking_tuner.scoring import ScoringFunction


# =============================================================================
# Configuration
# =============================================================================

# Default number of scoring threads per search call
NUM_SEARCH_WORKERS = min(int(os.environ.get("RANKING_SEARCH_WORKERS", 8)), 64)

# Minimum candidate documents before scoring is split across threads
MIN_DOCS_FOR_PARALLEL = 64


# =============================================================================
# Ranked results
# =============================================================================


@dataclass(frozen=True)
class RankedEntry:
    """
    One scored document.

    Attributes:
        score: Document score.
        name: Document identifier.
        category: Document class label.
        sequence: Order among equal scores (lower first). Search results use
            the document index.
    """

    score: float
    name: str
    category: str
    sequence: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return self.name, self.category


class RankedList(Sequence[RankedEntry]):
    """Entries ordered by descending score, ties by ascending sequence."""

    def __init__(self, entries: Iterable[RankedEntry] = ()):
        self._entries = sorted(entries, key=lambda e: (-e.score, e.sequence))

    def __len__(self) -> int:
        return len(self._entries)

    @overload
    def __getitem__(self, index: int) -> RankedEntry: ...

    @overload
    def __getitem__(self, index: slice) -> list[RankedEntry]: ...

    def __getitem__(self, index):
        return self._entries[index]

    def __iter__(self) -> Iterator[RankedEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"RankedList({len(self)} entries)"

    def scores(self) -> NDArray[np.float64]:
        return np.array([e.score for e in self._entries], dtype=np.float64)

    def names(self) -> list[str]:
        return [e.name for e in self._entries]

    def top(self, k: int) -> RankedList:
        return RankedList(self._entries[:k])

    def first_seen_categories(self) -> list[str]:
        """Distinct categories in the order a descending walk meets them."""
        seen: dict[str, None] = {}
        for entry in self._entries:
            seen.setdefault(entry.category, None)
        return list(seen)


# =============================================================================
# Scoring
# =============================================================================


def score_document(
    query: Query,
    doc_idx: int,
    corpus: Corpus,
    scorer: ScoringFunction,
    terms: Iterable[str] | None = None,
) -> float:
    """
    Scores one document: initial score plus `score_one` over every query term
    the document contains. Terms absent from the document are skipped.
    """
    document = corpus[doc_idx]
    doc_length = float(document.length)
    score = scorer.initial_score(doc_length, query.length)
    for term in query.term_weights if terms is None else terms:
        tf = document.frequency(term)
        if tf == 0:
            continue
        ctx = ScoreContext(
            doc_length=doc_length,
            avg_doc_length=corpus.avgdl,
            term_frequency=float(tf),
            doc_frequency=float(corpus.get_df(term)),
            corpus_term_frequency=float(corpus.get_ctf(term)),
            total_terms=float(corpus.total_terms),
            num_docs=float(corpus.N),
            query_term_weight=query.weight(term),
            query_length=query.length,
        )
        score += scorer.score_one(ctx)
    return score


def search(
    query: Query,
    corpus: Corpus,
    scorer: ScoringFunction,
    num_workers: int | None = None,
    top_k: int | None = None,
) -> RankedList:
    """
    Ranks every document with a non-zero score for `query`.

    Args:
        query: Query term weights and length.
        corpus: Corpus to search. Shared read-only by all workers.
        scorer: Ranking model. Shared read-only by all workers.
        num_workers: Scoring threads (default NUM_SEARCH_WORKERS).
        top_k: Keep only the best `top_k` entries (None keeps all).

    Returns:
        The ranked list; empty when no query term occurs in the corpus.
    """
    terms = [term for term in query.term_weights if corpus.get_df(term) > 0]
    if not terms:
        return RankedList()
    candidates = corpus.candidates(terms)

    merged: list[RankedEntry] = []
    lock = threading.Lock()

    def score_chunk(chunk: NDArray[np.int64]) -> None:
        partial = []
        for doc_idx in chunk.tolist():
            score = score_document(query, doc_idx, corpus, scorer, terms)
            if score != 0.0 and math.isfinite(score):
                document = corpus[doc_idx]
                partial.append(RankedEntry(score, document.name, document.category, doc_idx))
        with lock:
            merged.extend(partial)

    workers = NUM_SEARCH_WORKERS if num_workers is None else max(1, num_workers)
    if workers == 1 or len(candidates) < MIN_DOCS_FOR_PARALLEL:
        score_chunk(candidates)
    else:
        chunks = np.array_split(candidates, min(workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            # Consume the iterator so worker exceptions propagate
            list(executor.map(score_chunk, chunks))

    ranking = RankedList(merged)
    return ranking.top(top_k) if top_k is not None else ranking
