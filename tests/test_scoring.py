import io
import math
import struct

import pytest

from ranking_tuner.errors import ConfigurationError, MalformedParametersError, UnknownScorerError
from ranking_tuner.scoring import (
    BM25,
    MDTF2LN,
    MPTF2LN,
    PL2,
    DirichletPrior,
    JelinekMercer,
    Mountain,
    PivotedLength,
    ScoreContext,
    ScoringFunction,
    Sigmoidal,
    make_scorer,
    registered_scorers,
    scorer_class,
)


def context(**overrides):
    values = dict(
        doc_length=10.0,
        avg_doc_length=20.0,
        term_frequency=3.0,
        doc_frequency=2.0,
        corpus_term_frequency=5.0,
        total_terms=60.0,
        num_docs=3.0,
        query_term_weight=1.0,
        query_length=2.0,
    )
    values.update(overrides)
    return ScoreContext(**values)


ALL_MODELS = [BM25, PL2, MDTF2LN, MPTF2LN, Sigmoidal, Mountain, PivotedLength, JelinekMercer, DirichletPrior]


def test_registry_contains_every_model():
    assert {cls.id for cls in ALL_MODELS} <= set(registered_scorers())
    assert scorer_class("bm25") is BM25


def test_unknown_scorer():
    with pytest.raises(UnknownScorerError):
        scorer_class("tfidf")


def test_bm25_closed_form():
    # 3 documents of lengths 10, 20, 30; term in 2 of them, tf=3 in the short one
    k1, b, k3 = 1.5, 0.75, 500.0
    idf = math.log((3 - 2 + 0.5) / (2 + 0.5))
    tf_part = (k1 + 1) * 3 / (k1 * ((1 - b) + b * 10 / 20) + 3)
    qtf_part = (k3 + 1) * 1 / (k3 + 1)
    expected = idf * tf_part * qtf_part

    assert math.isclose(BM25().score_one(context()), expected, rel_tol=1e-12)


def test_bm25_tf_saturates_as_k1_vanishes():
    bm25 = BM25(k1=1e-9)
    low = bm25.score_one(context(term_frequency=1.0))
    high = bm25.score_one(context(term_frequency=50.0))
    idf = math.log((3 - 2 + 0.5) / (2 + 0.5))
    assert math.isclose(low, high, rel_tol=1e-6)
    assert math.isclose(low, idf, rel_tol=1e-6)


@pytest.mark.parametrize("cls", ALL_MODELS)
def test_scores_are_pure(cls):
    ctx = context()
    scorer = cls()
    first = scorer.score_one(ctx)
    scorer.score_one(context(term_frequency=9.0, doc_length=40.0))
    assert scorer.score_one(ctx) == first
    assert cls().score_one(ctx) == first
    assert math.isfinite(first)


@pytest.mark.parametrize("cls", ALL_MODELS)
def test_zero_frequencies_score_zero(cls):
    assert cls().score_one(context(term_frequency=0.0)) == 0.0
    assert cls().score_one(context(doc_frequency=0.0, corpus_term_frequency=0.0)) == 0.0


def test_pl2_ignores_lam():
    assert PL2(lam=0.1).score_one(context()) == PL2(lam=42.0).score_one(context())


def test_mountain_formula_ignores_k():
    ctx = context(doc_length=10.0, query_length=2.0)
    assert math.isclose(Mountain(lam=1.0).score_one(ctx), 3.0 / 9.0)
    assert Mountain(k=5.0).score_one(ctx) == Mountain(k=1.0).score_one(ctx)


def test_mdtf2ln_and_mptf2ln_share_components():
    ctx = context()
    md, mp = MDTF2LN(), MPTF2LN()
    tfidf2, lnpiv = md._components(ctx)
    assert math.isclose(md.score_one(ctx), tfidf2 - lnpiv**md.lam)
    assert math.isclose(mp.score_one(ctx), tfidf2 / lnpiv**mp.lam)


def test_sigmoidal_length_factor():
    sig = Sigmoidal()
    assert sig.length_factor(5.0, 5.0) == 1.0
    # Far shorter than the query tends to b1, far longer to b2
    assert math.isclose(sig.length_factor(-1e6, 5.0), sig.b1)
    assert math.isclose(sig.length_factor(1e6, 5.0), sig.b2)


def test_language_model_initial_score():
    jm = JelinekMercer(lam=0.5)
    assert math.isclose(jm.initial_score(10.0, 3.0), 3.0 * math.log(0.5))
    dp = DirichletPrior(mu=10.0)
    assert math.isclose(dp.initial_score(10.0, 2.0), 2.0 * math.log(0.5))
    assert BM25().initial_score(10.0, 2.0) == 0.0


def test_set_params_rejects_unknown_name():
    with pytest.raises(ConfigurationError):
        BM25().set_params(mu=1.0)


def test_make_scorer_accepts_lambda_alias():
    scorer = make_scorer("jelinek-mercer", {"lambda": 0.3})
    assert scorer.lam == 0.3
    assert make_scorer("bm25") == BM25()


@pytest.mark.parametrize("cls", ALL_MODELS)
def test_save_load_preserves_parameters(cls):
    names = cls.parameter_names()
    scorer = cls(**{name: 0.25 + i for i, name in enumerate(names)})
    restored = ScoringFunction.loads(scorer.dumps())
    assert type(restored) is cls
    assert restored.params() == scorer.params()


def test_save_layout():
    data = PL2(c=2.0, lam=0.5).dumps()
    assert data == struct.pack("<H", 3) + b"pl2" + struct.pack("<H", 2) + struct.pack("<dd", 2.0, 0.5)


def test_load_unknown_identifier():
    data = struct.pack("<H", 5) + b"bogus" + struct.pack("<H", 0)
    with pytest.raises(UnknownScorerError):
        ScoringFunction.load(io.BytesIO(data))


def test_load_truncated_stream():
    with pytest.raises(MalformedParametersError):
        ScoringFunction.loads(BM25().dumps()[:-4])


def test_load_parameter_count_mismatch():
    data = struct.pack("<H", 4) + b"bm25" + struct.pack("<H", 1) + struct.pack("<d", 1.0)
    with pytest.raises(MalformedParametersError):
        ScoringFunction.loads(data)


def test_unknown_and_malformed_are_configuration_errors():
    assert issubclass(UnknownScorerError, ConfigurationError)
    assert issubclass(MalformedParametersError, ConfigurationError)
    assert not issubclass(UnknownScorerError, MalformedParametersError)


@pytest.mark.parametrize("legacy_id, cls", [("sigmoidal_ranker", Sigmoidal), ("mountain_ranker", Mountain)])
def test_load_accepts_legacy_identifiers(legacy_id, cls):
    identifier = legacy_id.encode("utf-8")
    values = [0.5 + i for i in range(len(cls.PARAMETERS))]
    data = (
        struct.pack("<H", len(identifier))
        + identifier
        + struct.pack("<H", len(values))
        + struct.pack(f"<{len(values)}d", *values)
    )
    restored = ScoringFunction.loads(data)
    assert type(restored) is cls
    assert list(restored.params().values()) == values
    assert type(make_scorer(legacy_id)) is cls
    assert legacy_id not in registered_scorers()
