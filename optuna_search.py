"""
Optuna hyperparameter search for a single ranking model.

A Bayesian alternative to the exhaustive sweep in hyperparam_search.py: a TPE
sampler proposes parameter values inside per-model ranges and each trial is
scored by MAP (or NDCG) on the judged queries. Every completed trial is also
appended to <output-dir>/<model>_results.txt in the same layout the grid
search writes.

Usage:
    uv run python optuna_search.py --scorer bm25 --dataset cranfield --n-trials 100
    uv run python optuna_search.py --scorer sigmoidal --documents docs.tsv --queries q.txt --qrels qrels.txt
    uv run python optuna_search.py --scorer pl2 --dataset cranfield --study-name pl2 --storage sqlite:///results/pl2.db
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from collections.abc import Callable, Sequence

import optuna

from hyperparam_search import (
    DEFAULT_OUTPUT_DIR,
    DEFAULT_TUNE_CUTOFF,
    DEFAULT_TUNE_MAX_QUERIES,
    load_inputs,
)
from ranking_tuner.corpus import Corpus
from ranking_tuner.errors import ConfigurationError
from ranking_tuner.metrics import MetricAccumulator
from ranking_tuner.scoring import scorer_class
from ranking_tuner.tuning import EvaluationQuery, ResultSink, TSVResultLog, TuningResult, evaluate_configuration

# Search ranges per model: name -> (low, high, log scale)
SEARCH_SPACES: dict[str, dict[str, tuple[float, float, bool]]] = {
    "bm25": {"k1": (0.01, 3.0, False), "b": (0.0, 1.0, False), "k3": (1.0, 1000.0, True)},
    "pl2": {"c": (0.01, 10.0, True)},
    "mdtf2ln": {"s": (0.0, 1.0, False), "mu": (10.0, 3000.0, True), "alpha": (0.0, 1.0, False), "lam": (0.0, 2.0, False)},
    "mptf2ln": {"s": (0.0, 1.0, False), "mu": (10.0, 3000.0, True), "alpha": (0.0, 1.0, False), "lam": (0.0, 2.0, False)},
    "sigmoidal": {
        "b1": (1.0, 4.0, False),
        "b2": (1.0, 4.0, False),
        "l1": (0.1, 2.0, False),
        "l2": (0.1, 2.0, False),
        "c": (0.1, 2.0, False),
        "k": (0.01, 3.0, False),
    },
    "mountain": {"lam": (0.0, 2.0, False)},
    "pivoted-length": {"s": (0.0, 1.0, False)},
    "jelinek-mercer": {"lam": (0.01, 0.99, False)},
    "dirichlet-prior": {"mu": (10.0, 5000.0, True)},
}


def make_objective(
    scorer_id: str,
    corpus: Corpus,
    queries: Sequence[EvaluationQuery],
    cutoff: int | None = DEFAULT_TUNE_CUTOFF,
    ndcg_cutoff: int | None = None,
    objective_metric: str = "map",
    sink: ResultSink | None = None,
    search_workers: int | None = None,
) -> Callable[[optuna.Trial], float]:
    """Create the Optuna objective function."""
    family = scorer_class(scorer_id)
    space = SEARCH_SPACES.get(family.id, {})
    if objective_metric == "ndcg" and ndcg_cutoff is None:
        raise ConfigurationError("objective 'ndcg' requires an ndcg_cutoff")

    def objective(trial: optuna.Trial) -> float:
        params = {name: default for name, default in family.PARAMETERS}
        for name, (low, high, log) in space.items():
            params[name] = trial.suggest_float(name, low, high, log=log)

        t0 = time.time()
        try:
            accumulator = evaluate_configuration(
                family(**params),
                corpus,
                queries,
                MetricAccumulator(cutoff=cutoff, ndcg_cutoff=ndcg_cutoff),
                search_workers,
            )
        except Exception as e:
            print(f"  Trial {trial.number} failed: {e}", file=sys.stderr)
            return 0.0

        result = TuningResult(params=params, map=accumulator.map(), ndcg=accumulator.mean_ndcg())
        if sink is not None:
            sink.append(result)
        if result.ndcg is not None:
            trial.set_user_attr("ndcg", result.ndcg)
        trial.set_user_attr("map", result.map)

        score = result.metric(objective_metric)
        print(f"  Trial {trial.number}: {objective_metric}={score:.4f} ({result.describe()}) [{time.time()-t0:.1f}s]")
        return score

    return objective


def main():
    parser = argparse.ArgumentParser(description="Optuna hyperparameter search for a ranking model")
    parser.add_argument("--scorer", type=str, default="bm25", help="Model to tune")
    parser.add_argument("--dataset", type=str, default=None, help="ir_datasets id (e.g. cranfield)")
    parser.add_argument("--documents", type=str, default=None, help="Documents file: name<TAB>category<TAB>text")
    parser.add_argument("--queries", type=str, default=None, help="Raw queries, one per line")
    parser.add_argument("--qrels", type=str, default=None, help="Judgments: query_id doc_name [relevance]")
    parser.add_argument("--max-queries", type=int, default=DEFAULT_TUNE_MAX_QUERIES)
    parser.add_argument("--cutoff", type=int, default=DEFAULT_TUNE_CUTOFF, help="Average precision cutoff")
    parser.add_argument("--ndcg-cutoff", type=int, default=None, help="Also compute NDCG@k")
    parser.add_argument("--objective", choices=["map", "ndcg"], default="map")
    parser.add_argument("--n-trials", type=int, default=100, help="Number of Optuna trials (default: 100)")
    parser.add_argument("--search-workers", type=int, default=None, help="Scoring threads per search")
    parser.add_argument("--seed", type=int, default=None, help="TPE sampler seed")
    parser.add_argument("--study-name", type=str, default=None, help="Optuna study name")
    parser.add_argument("--storage", type=str, default=None, help="Optuna storage URL (default: in memory)")
    parser.add_argument("--output-dir", type=str, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--output", type=str, default=None, help="Write the best trial as JSON")
    args = parser.parse_args()

    try:
        family = scorer_class(args.scorer)
        corpus, queries = load_inputs(args, args.max_queries)
        objective = make_objective(
            family.id,
            corpus,
            queries,
            cutoff=args.cutoff,
            ndcg_cutoff=args.ndcg_cutoff,
            objective_metric=args.objective,
            sink=TSVResultLog.for_family(args.output_dir, family.id),
            search_workers=args.search_workers,
        )
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)

    study = optuna.create_study(
        study_name=args.study_name or f"{family.id}_search",
        direction="maximize",
        sampler=optuna.samplers.TPESampler(seed=args.seed),
        storage=args.storage,
        load_if_exists=args.storage is not None,
    )
    # Start from the model defaults
    if len(study.trials) == 0 and family.id in SEARCH_SPACES:
        study.enqueue_trial({name: value for name, value in family.PARAMETERS if name in SEARCH_SPACES[family.id]})

    print(f"Loaded {len(corpus)} documents, {len(queries)} judged queries")
    print(f"Study: {study.study_name}, trials: {args.n_trials} (existing: {len(study.trials)})")

    t0 = time.time()
    study.optimize(objective, n_trials=args.n_trials)
    elapsed = time.time() - t0

    best = study.best_trial
    print(f"\n{'='*60}")
    print(f"Best trial: #{best.number} {args.objective}={best.value:.4f} [{elapsed/60:.1f} min]")
    for name, value in best.params.items():
        print(f"  {name} = {value:g}")

    if args.output:
        with open(args.output, "w") as f:
            json.dump(
                {"scorer": family.id, "objective": args.objective, "value": best.value, "params": best.params},
                f,
                indent=2,
            )
        print(f"Saved to {args.output}")


if __name__ == "__main__":
    main()
