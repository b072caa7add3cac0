import optuna
import pytest

from hyperparam_search import TuneConfig, parse_grid_overrides, tune_scorer
from knn_evaluate import evaluate, load_labeled_queries, queries_from_documents
from optuna_search import SEARCH_SPACES, make_objective
from ranking_tuner.corpus import Corpus, Query, load_documents
from ranking_tuner.errors import ConfigurationError
from ranking_tuner.scoring import BM25, registered_scorers
from ranking_tuner.tuning import EvaluationQuery, ResultLog


@pytest.fixture
def corpus():
    return Corpus.from_texts(
        [
            "boundary layer flow over a flat plate",
            "supersonic flow around a swept wing",
            "heat transfer in laminar boundary layers",
            "wing flutter at transonic speeds",
        ],
        names=["1", "2", "3", "4"],
        categories=["flow", "wing", "flow", "wing"],
    )


@pytest.fixture
def queries():
    return [
        EvaluationQuery(Query.from_text("boundary layer", id=0), ("1", "3")),
        EvaluationQuery(Query.from_text("wing", id=1), ("2", "4")),
    ]


def test_parse_grid_overrides():
    assert parse_grid_overrides(["k1=0.9,1.2", "b=0.4"]) == {"k1": [0.9, 1.2], "b": [0.4]}
    with pytest.raises(ConfigurationError):
        parse_grid_overrides(["k1"])
    with pytest.raises(ConfigurationError):
        parse_grid_overrides(["k1=fast"])


def test_tune_scorer_writes_results(tmp_path, corpus, queries):
    config = TuneConfig(output_dir=str(tmp_path), grid_overrides={"k1": [1.0, 2.0], "b": [0.75]})
    summary = tune_scorer("bm25", corpus, queries, config, verbose=False)

    lines = (tmp_path / "bm25_results.txt").read_text().splitlines()
    # k3 keeps its single default grid value
    assert len(lines) == 2
    assert summary["cells"] == 2
    assert summary["best_params"]["k1"] in (1.0, 2.0)


def test_search_spaces_cover_registered_models():
    for scorer_id, space in SEARCH_SPACES.items():
        assert scorer_id in registered_scorers()
        assert all(low < high for low, high, _ in space.values())


def test_optuna_objective(corpus, queries):
    sink = ResultLog()
    objective = make_objective("bm25", corpus, queries, sink=sink)
    study = optuna.create_study(direction="maximize", sampler=optuna.samplers.TPESampler(seed=0))
    study.optimize(objective, n_trials=3)

    assert len(sink.rows) == 3
    assert study.best_value == max(row.map for row in sink.rows)
    assert set(study.best_params) == set(SEARCH_SPACES["bm25"])


def test_optuna_objective_requires_ndcg_cutoff(corpus, queries):
    with pytest.raises(ConfigurationError):
        make_objective("bm25", corpus, queries, objective_metric="ndcg")


def test_load_labeled_queries():
    queries = load_labeled_queries(["flow\tboundary layer\n", "\n", "wing\tswept wing\n"])
    assert [q.category for q in queries] == ["flow", "wing"]
    assert queries[1].weight("wing") == 1.0
    assert queries[1].weight("swept") == 1.0
    with pytest.raises(ConfigurationError):
        load_labeled_queries(["no label\n"])


def test_knn_evaluate_accuracy(corpus):
    queries = load_labeled_queries(["flow\tlaminar boundary\n", "wing\ttransonic wing flutter\n"])
    results = evaluate(queries, [corpus], [1.0], k=1, scorer=BM25(), verbose=False)
    assert results["accuracy"] == 1.0
    assert results["unlabeled"] == 0


def test_knn_evaluate_held_out_documents(corpus):
    documents = load_documents(["h1\tflow\tlaminar boundary layer\n", "h2\twing\ttransonic flutter\n"])
    queries = queries_from_documents(documents)
    assert [(q.id, q.category) for q in queries] == [("h1", "flow"), ("h2", "wing")]
    assert queries[0].length == 3.0

    results = evaluate(queries, [corpus], [1.0], k=1, scorer=BM25(), verbose=False)
    assert results["accuracy"] == 1.0
    assert len(queries_from_documents(documents, max_queries=1)) == 1
