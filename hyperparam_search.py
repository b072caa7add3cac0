"""
Grid search over the parameters of the ranking models.

Evaluates every combination of a model's grid on a fixed query set, appends
one tab-separated row per combination to <output-dir>/<model>_results.txt and
reports the configuration with the highest MAP.

Documents come either from a local file (one ``name<TAB>category<TAB>text``
per line) with raw queries (one per line, ids 0, 1, ...) and qrels
(``query_id doc_name [relevance]``), or from an ir_datasets dataset.

Usage:
    uv run python hyperparam_search.py --scorer bm25 --documents docs.tsv --queries queries.txt --qrels qrels.txt
    uv run python hyperparam_search.py --scorer all --dataset cranfield --ndcg-cutoff 10
    uv run python hyperparam_search.py --scorer sigmoidal --dataset cranfield --rows values.txt
    uv run python hyperparam_search.py --scorer bm25 --dataset cranfield --grid k1=0.9,1.2 --grid b=0.4,0.75
"""

import argparse
import os
import sys
import time
from dataclasses import dataclass, field

from ranking_tuner.corpus import DEFAULT_MAX_QUERIES, Corpus, load_documents
from ranking_tuner.datasets import (
    corpus_from_dataset,
    evaluation_queries,
    evaluation_queries_from_lines,
    load_dataset,
    load_qrels,
)
from ranking_tuner.errors import ConfigurationError
from ranking_tuner.scoring import registered_scorers, scorer_class
from ranking_tuner.tuning import (
    DEFAULT_CUTOFF,
    DEFAULT_GRIDS,
    EvaluationQuery,
    GridSearch,
    TSVResultLog,
    read_parameter_rows,
)

# Defaults (can be overridden via env vars)
DEFAULT_OUTPUT_DIR = os.environ.get("TUNE_OUTPUT_DIR", "results")
DEFAULT_TUNE_CUTOFF = int(os.environ.get("TUNE_CUTOFF", str(DEFAULT_CUTOFF)))
DEFAULT_TUNE_MAX_QUERIES = int(os.environ.get("TUNE_MAX_QUERIES", str(DEFAULT_MAX_QUERIES)))
DEFAULT_TUNE_WORKERS = int(os.environ.get("TUNE_WORKERS", "1"))


@dataclass
class TuneConfig:
    """Grid search configuration."""
    scorers: list[str] = field(default_factory=lambda: ["bm25"])
    output_dir: str = DEFAULT_OUTPUT_DIR
    cutoff: int = DEFAULT_TUNE_CUTOFF
    ndcg_cutoff: int | None = None
    objective: str = "map"
    max_queries: int = DEFAULT_TUNE_MAX_QUERIES
    workers: int = DEFAULT_TUNE_WORKERS
    search_workers: int | None = None
    # Overrides of DEFAULT_GRIDS (name -> values), applied to a single scorer
    grid_overrides: dict[str, list[float]] = field(default_factory=dict)
    # Explicit parameter rows instead of a grid
    rows_path: str | None = None


def parse_grid_overrides(specs: list[str]) -> dict[str, list[float]]:
    """Parse ``name=v1,v2,...`` specs."""
    overrides = {}
    for spec in specs:
        name, sep, values = spec.partition("=")
        if not sep or not values:
            raise ConfigurationError(f"grid override must look like name=v1,v2; got {spec!r}")
        try:
            overrides[name.strip()] = [float(v) for v in values.split(",") if v.strip()]
        except ValueError as e:
            raise ConfigurationError(f"grid override {spec!r}: {e}") from e
    return overrides


def load_inputs(args: argparse.Namespace, max_queries: int) -> tuple[Corpus, list[EvaluationQuery]]:
    """Build the corpus and evaluation queries from the CLI sources."""
    if args.dataset:
        dataset = load_dataset(args.dataset)
        return corpus_from_dataset(dataset), evaluation_queries(dataset, max_queries=max_queries)

    if not (args.documents and args.queries and args.qrels):
        raise ConfigurationError("either --dataset or all of --documents, --queries and --qrels are required")
    with open(args.documents, encoding="utf-8") as f:
        corpus = Corpus(load_documents(f))
    with open(args.qrels, encoding="utf-8") as f:
        qrels = load_qrels(f)
    with open(args.queries, encoding="utf-8") as f:
        queries = evaluation_queries_from_lines(f, qrels, max_queries=max_queries)
    return corpus, queries


def tune_scorer(
    scorer_id: str,
    corpus: Corpus,
    queries: list[EvaluationQuery],
    config: TuneConfig,
    verbose: bool = True,
) -> dict:
    """Run the grid (or explicit rows) for one scorer and return a summary."""
    grid = dict(DEFAULT_GRIDS.get(scorer_id, {}))
    grid.update(config.grid_overrides)
    if not grid:
        grid = {name: [default] for name, default in scorer_class(scorer_id).PARAMETERS}

    sink = TSVResultLog.for_family(config.output_dir, scorer_id)
    search = GridSearch(
        scorer_id,
        grid,
        corpus,
        queries,
        cutoff=config.cutoff,
        ndcg_cutoff=config.ndcg_cutoff,
        objective=config.objective,
        sink=sink,
        num_workers=config.workers,
        search_workers=config.search_workers,
        verbose=verbose,
    )

    t0 = time.time()
    if config.rows_path:
        with open(config.rows_path, encoding="utf-8") as f:
            rows = read_parameter_rows(f, scorer_class(scorer_id).parameter_names())
        print(f"\n{scorer_id}: evaluating {len(rows)} explicit rows...")
        report = search.run_rows(rows)
    else:
        print(f"\n{scorer_id}: searching {search.num_cells} combinations of {', '.join(grid)}...")
        report = search.run()
    elapsed = time.time() - t0

    print(f"  Searched in {elapsed:.1f}s, results appended to {sink.path}")
    print(f"  {report.summary()}")

    best = report.best
    return {
        "scorer": scorer_id,
        "cells": report.evaluated,
        "failed": len(report.failures),
        "best_params": best.params if best else None,
        "best_map": best.map if best else None,
        "best_ndcg": best.ndcg if best else None,
    }


def main():
    parser = argparse.ArgumentParser(description="Grid search over ranking model parameters")
    parser.add_argument(
        "--scorer",
        type=str,
        default="bm25",
        help=f"Model to tune ({', '.join(registered_scorers())}) or 'all'",
    )
    parser.add_argument("--dataset", type=str, default=None, help="ir_datasets id (e.g. cranfield)")
    parser.add_argument("--documents", type=str, default=None, help="Documents file: name<TAB>category<TAB>text")
    parser.add_argument("--queries", type=str, default=None, help="Raw queries, one per line")
    parser.add_argument("--qrels", type=str, default=None, help="Judgments: query_id doc_name [relevance]")
    parser.add_argument(
        "--max-queries",
        type=int,
        default=DEFAULT_TUNE_MAX_QUERIES,
        help=f"Maximum number of queries to read (default: {DEFAULT_TUNE_MAX_QUERIES})",
    )
    parser.add_argument(
        "--cutoff",
        type=int,
        default=DEFAULT_TUNE_CUTOFF,
        help=f"Average precision cutoff (default: {DEFAULT_TUNE_CUTOFF})",
    )
    parser.add_argument("--ndcg-cutoff", type=int, default=None, help="Also compute NDCG@k")
    parser.add_argument("--objective", choices=["map", "ndcg"], default="map", help="Metric selecting the best cell")
    parser.add_argument(
        "--grid",
        action="append",
        default=[],
        help="Override a grid axis: name=v1,v2,... (repeatable, single scorer only)",
    )
    parser.add_argument("--rows", type=str, default=None, help="File of explicit parameter rows")
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_TUNE_WORKERS,
        help=f"Grid cells evaluated concurrently (default: {DEFAULT_TUNE_WORKERS})",
    )
    parser.add_argument("--search-workers", type=int, default=None, help="Scoring threads per search")
    parser.add_argument(
        "--output-dir",
        type=str,
        default=DEFAULT_OUTPUT_DIR,
        help=f"Directory for <model>_results.txt (default: {DEFAULT_OUTPUT_DIR})",
    )
    args = parser.parse_args()

    try:
        scorers = registered_scorers() if args.scorer == "all" else [scorer_class(args.scorer).id]
        overrides = parse_grid_overrides(args.grid)
        if overrides and len(scorers) > 1:
            raise ConfigurationError("--grid applies to a single scorer")
        if args.rows and len(scorers) > 1:
            raise ConfigurationError("--rows applies to a single scorer")

        config = TuneConfig(
            scorers=scorers,
            output_dir=args.output_dir,
            cutoff=args.cutoff,
            ndcg_cutoff=args.ndcg_cutoff,
            objective=args.objective,
            max_queries=args.max_queries,
            workers=args.workers,
            search_workers=args.search_workers,
            grid_overrides=overrides,
            rows_path=args.rows,
        )

        t0 = time.time()
        corpus, queries = load_inputs(args, config.max_queries)
        print(f"Loaded {len(corpus)} documents, {len(queries)} judged queries in {time.time()-t0:.1f}s")

        summaries = [tune_scorer(scorer_id, corpus, queries, config) for scorer_id in config.scorers]
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)

    if len(summaries) > 1:
        print(f"\n{'='*60}")
        print("SUMMARY ACROSS ALL MODELS")
        print(f"{'='*60}")
        print(f"{'Model':<18} {'MAP':<10} Parameters")
        print("-" * 60)
        for s in summaries:
            if s["best_params"] is None:
                print(f"{s['scorer']:<18} {'-':<10} (all {s['failed']} cells failed)")
                continue
            params = ", ".join(f"{k}={v:g}" for k, v in s["best_params"].items())
            print(f"{s['scorer']:<18} {s['best_map']:<10.4f} {params}")


if __name__ == "__main__":
    main()
