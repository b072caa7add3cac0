import math

import numpy as np
import pytest

from ranking_tuner.corpus import Corpus, Document, Query
from ranking_tuner.scoring import BM25, DirichletPrior, Mountain
from ranking_tuner.search import RankedEntry, RankedList, score_document, search


@pytest.fixture
def corpus():
    return Corpus(
        [
            Document("d0", {"apple": 3, "pad": 7}, "fruit"),
            Document("d1", {"apple": 1, "pie": 1, "pad": 18}, "food"),
            Document("d2", {"car": 2, "pad": 28}, "vehicle"),
        ]
    )


@pytest.fixture
def large_corpus():
    rng = np.random.default_rng(0)
    vocabulary = [f"t{i}" for i in range(40)]
    documents = []
    for i in range(500):
        terms = rng.choice(vocabulary, size=rng.integers(5, 30))
        documents.append(Document.from_tokens(f"d{i}", terms.tolist(), f"c{i % 4}"))
    return Corpus(documents)


def test_ranked_list_orders_by_score_then_sequence():
    ranking = RankedList(
        [
            RankedEntry(1.0, "a", "x", 2),
            RankedEntry(3.0, "b", "y", 5),
            RankedEntry(1.0, "c", "z", 0),
        ]
    )
    assert ranking.names() == ["b", "c", "a"]
    assert ranking.scores().tolist() == [3.0, 1.0, 1.0]
    assert ranking.first_seen_categories() == ["y", "z", "x"]
    assert ranking.top(1).names() == ["b"]


def test_search_only_returns_matching_documents(corpus):
    ranking = search(Query.from_tokens(["apple"]), corpus, Mountain(), num_workers=1)
    assert sorted(ranking.names()) == ["d0", "d1"]


def test_search_scores_match_score_document(corpus):
    query = Query.from_tokens(["apple", "pie"])
    scorer = BM25()
    ranking = search(query, corpus, scorer, num_workers=1)
    for entry in ranking:
        idx = corpus.ids.index(entry.name)
        assert entry.score == score_document(query, idx, corpus, scorer)


def test_search_without_matching_terms_is_empty(corpus):
    ranking = search(Query.from_tokens(["zebra"]), corpus, BM25())
    assert len(ranking) == 0


def test_search_excludes_zero_scores():
    # df == N/2 makes the BM25 idf exactly zero
    corpus = Corpus([Document("a", {"x": 1}), Document("b", {"y": 1})])
    assert len(search(Query.from_tokens(["x"]), corpus, BM25(), num_workers=1)) == 0


def test_language_model_adds_initial_score(corpus):
    query = Query.from_tokens(["apple"])
    scorer = DirichletPrior(mu=10.0)
    score = score_document(query, 0, corpus, scorer)
    contribution = score - scorer.initial_score(corpus[0].length, query.length)
    assert contribution > 0


def test_parallel_search_matches_sequential(large_corpus):
    query = Query.from_tokens(["t1", "t7", "t7", "t30"])
    sequential = search(query, large_corpus, BM25(), num_workers=1)
    parallel = search(query, large_corpus, BM25(), num_workers=8)

    assert len(sequential) > 64
    assert [(e.name, e.score) for e in parallel] == [(e.name, e.score) for e in sequential]
    assert parallel.first_seen_categories() == sequential.first_seen_categories()


def test_ties_are_ordered_by_document_index(large_corpus):
    query = Query.from_tokens(["t3"])
    ranking = search(query, large_corpus, Mountain(lam=0.0), num_workers=4)
    for previous, current in zip(ranking, ranking[1:]):
        assert previous.score > current.score or previous.sequence < current.sequence


def test_top_k(large_corpus):
    query = Query.from_tokens(["t1", "t2"])
    full = search(query, large_corpus, BM25(), num_workers=2)
    top = search(query, large_corpus, BM25(), num_workers=2, top_k=5)
    assert top.names() == full.names()[:5]


def test_bm25_closed_form_through_corpus():
    # Lengths 10, 20, 30 (avgdl 20); "t" occurs in two documents, 3 times in the shortest
    corpus = Corpus(
        [
            Document("short", {"t": 3, "p": 7}),
            Document("mid", {"t": 1, "q": 19}),
            Document("long", {"r": 30}),
        ]
    )
    assert corpus.avgdl == 20.0
    assert corpus.get_df("t") == 2

    k1, b, k3 = 1.5, 0.75, 500.0
    idf = math.log((3 - 2 + 0.5) / (2 + 0.5))
    tf_part = (k1 + 1) * 3 / (k1 * ((1 - b) + b * 10 / 20) + 3)
    qtf_part = (k3 + 1) * 1 / (k3 + 1)

    ranking = search(Query.from_tokens(["t"]), corpus, BM25(), num_workers=1)
    scores = {entry.name: entry.score for entry in ranking}
    assert sorted(scores) == ["mid", "short"]
    assert math.isclose(scores["short"], idf * tf_part * qtf_part, rel_tol=1e-12)
    assert math.isclose(scores["short"], -0.97300, abs_tol=1e-5)
