import numpy as np
import pytest

from ranking_tuner.corpus import Corpus, Document, Query
from ranking_tuner.errors import ConfigurationError
from ranking_tuner.knn import (
    CONSTANT_NORMALIZED_SCORE,
    NO_RESULT,
    classify,
    classify_ensemble,
    classify_query,
    combine_rankings,
    normalize,
)
from ranking_tuner.scoring import BM25
from ranking_tuner.search import RankedEntry, RankedList


def ranked(*pairs):
    """Entries in the given walk order (sequence = position)."""
    return RankedList(
        RankedEntry(score, f"doc{i}", category, i) for i, (score, category) in enumerate(pairs)
    )


@pytest.fixture
def corpus():
    return Corpus.from_texts(
        [
            "goal striker match goal",
            "match referee goal",
            "election vote ballot",
            "vote parliament election",
            "striker transfer",
        ],
        categories=["sports", "sports", "politics", "politics", "sports"],
    )


@pytest.mark.parametrize(
    "pairs, expected",
    [
        ([(5.0, "catA"), (5.0, "catB"), (3.0, "catA")], "catA"),
        ([(5.0, "catB"), (5.0, "catA"), (3.0, "catA")], "catA"),
        ([(5.0, "catB"), (5.0, "catA"), (3.0, "catC")], "catB"),
    ],
)
def test_classify_first_seen_tie_break(pairs, expected):
    assert classify(ranked(*pairs), k=3) == expected


def test_classify_tie_ignores_storage_order():
    # {A: 2, B: 2}, A met first during the walk
    entries = [
        RankedEntry(4.0, "d3", "B", 3),
        RankedEntry(1.0, "d4", "A", 4),
        RankedEntry(9.0, "d0", "A", 0),
        RankedEntry(6.0, "d2", "B", 2),
    ]
    assert classify(RankedList(entries), k=4) == "A"
    assert classify(RankedList(reversed(entries)), k=4) == "A"


def test_classify_uses_only_first_k():
    ranking = ranked((9.0, "x"), (8.0, "y"), (7.0, "y"))
    assert classify(ranking, k=1) == "x"
    assert classify(ranking, k=3) == "y"
    assert classify(ranking, k=100) == "y"


def test_classify_empty_ranking():
    assert classify(RankedList(), k=5) == NO_RESULT


def test_classify_rejects_non_positive_k():
    with pytest.raises(ConfigurationError):
        classify(ranked((1.0, "x")), k=0)


def test_normalize_maps_extremes():
    values = list(normalize(ranked((7.0, "a"), (4.0, "b"), (1.0, "c"))).values())
    assert np.isclose(values[0], 1.0)
    assert np.isclose(values[1], 0.5)
    assert np.isclose(values[2], 0.0)


def test_normalize_single_distinct_score():
    values = normalize(ranked((2.5, "a"), (2.5, "b")))
    assert list(values.values()) == [CONSTANT_NORMALIZED_SCORE] * 2
    assert normalize(RankedList()) == {}


def test_combine_rankings_weighted_sum():
    first = RankedList([RankedEntry(10.0, "d0", "a", 0), RankedEntry(0.0, "d1", "b", 1)])
    second = RankedList([RankedEntry(3.0, "d1", "b", 0), RankedEntry(1.0, "d0", "a", 1)])
    combined = combine_rankings([first, second], [0.25, 0.75])
    scores = {entry.name: entry.score for entry in combined}
    assert np.isclose(scores["d0"], 0.25)
    assert np.isclose(scores["d1"], 0.75)
    assert combined.names() == ["d1", "d0"]


def test_combine_rankings_weight_mismatch():
    with pytest.raises(ConfigurationError):
        combine_rankings([ranked((1.0, "a"))], [0.5, 0.5])


def test_classify_query(corpus):
    assert classify_query(Query.from_text("striker goal"), corpus, k=2) == "sports"
    assert classify_query(Query.from_text("vote election"), corpus, k=2) == "politics"
    assert classify_query(Query.from_text("unknown words"), corpus, k=2) == NO_RESULT


@pytest.mark.parametrize("text", ["striker goal", "vote election", "match vote", "goal"])
@pytest.mark.parametrize("k", [1, 2, 3, 5])
def test_single_index_ensemble_matches_classify(corpus, text, k):
    query = Query.from_text(text)
    assert classify_ensemble(query, [corpus], [1.0], k) == classify_query(query, corpus, k)


def test_ensemble_weight_mismatch(corpus):
    with pytest.raises(ConfigurationError, match="counts must match"):
        classify_ensemble(Query.from_text("goal"), [corpus, corpus], [1.0], k=3)


def test_ensemble_weights_select_index():
    left = Corpus(
        [Document("a", {"x": 2, "y": 1}, "left"), Document("b", {"z": 1}, "other"), Document("e", {"w": 1}, "other")]
    )
    right = Corpus(
        [Document("c", {"x": 3}, "right"), Document("d", {"z": 2}, "other"), Document("f", {"w": 2}, "other")]
    )
    query = Query.from_tokens(["x"])
    assert classify_ensemble(query, [left, right], [1.0, 0.0], k=1, scorer=BM25()) == "left"
    assert classify_ensemble(query, [left, right], [0.0, 1.0], k=1, scorer=BM25()) == "right"
