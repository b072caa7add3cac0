"""
Grid search over the parameters of a scoring model.

Each grid cell is one parameter combination. A cell is evaluated by ranking
every evaluation query with the configured model and accumulating per-query
average precision (and optionally NDCG) into a fresh MetricAccumulator. The
cell's mean metric is appended to a result sink and compared with the best
cell seen so far.

Cells are independent. Sequential sweeps reconfigure a single model instance
per cell; parallel sweeps give every cell its own instance. Either way, rows
reach the sink and the best-result comparison in grid order, so repeated runs
produce the same log and the same winner.

Usage:
    from ranking_tuner.tuning import GridSearch, TSVResultLog

    search = GridSearch(
        "bm25",
        {"k1": [0.9, 1.2, 1.5], "b": [0.5, 0.75]},
        corpus,
        queries,
        sink=TSVResultLog.for_family("results", "bm25"),
    )
    report = search.run()
    print(report.summary())
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import product
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from tqdm import tqdm

from ranking_tuner.errors import ConfigurationError
from ranking_tuner.metrics import MetricAccumulator
from ranking_tuner.scoring import ScoringFunction, scorer_class
from ranking_tuner.search import search

if TYPE_CHECKING:
    from ranking_tuner.corpus import Corpus, Query


# =============================================================================
# Configuration
# =============================================================================

# Ranked documents examined by average precision
DEFAULT_CUTOFF = 5

OBJECTIVES = ("map", "ndcg")

# Search grids per model. PL2's lam and Mountain's k do not affect scores and
# are left at their defaults.
DEFAULT_GRIDS: dict[str, dict[str, list[float]]] = {
    "bm25": {
        "k1": [0.01, 0.5, 1.0, 1.1, 1.2, 1.3, 1.4, 1.5, 1.6, 1.7, 1.8, 1.9, 2.0, 2.1, 2.2, 2.3],
        "b": [0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
        "k3": [500.0],
    },
    "pl2": {
        "c": [0.01, 0.1, 0.2, 0.3, 0.6, 0.9, 2.1, 2.4, 7.0],
    },
    "mdtf2ln": {
        "alpha": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0],
        "lam": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0, 1.2, 1.4, 1.6, 1.8],
        "s": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0],
        "mu": [10.0, 50.0, 100.0],
    },
    "mptf2ln": {
        "alpha": [0.8, 1.0],
        "lam": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0, 1.2, 1.4, 1.6, 1.8],
        "s": [0.0, 0.2, 0.4, 0.6, 0.8, 1.0],
        "mu": [10.0, 50.0, 100.0],
    },
    "sigmoidal": {
        "b1": [1.0, 1.5, 2.0, 2.5],
        "b2": [1.0, 1.5, 2.0, 2.5],
        "l1": [0.25, 0.5, 1.0, 1.5, 1.75],
        "l2": [0.25, 0.5, 1.0, 1.5, 1.75],
        "c": [0.25, 0.5, 1.0, 1.5, 1.75],
        "k": [0.01, 1.0, 2.0],
    },
    "mountain": {
        "lam": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 1.1, 1.2, 1.3, 1.4, 1.5, 1.6, 1.7, 1.8, 1.9],
    },
    "pivoted-length": {
        "s": [0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    },
    "jelinek-mercer": {
        "lam": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    },
    "dirichlet-prior": {
        "mu": [10.0, 100.0, 500.0, 1000.0, 2000.0, 3000.0],
    },
}


# =============================================================================
# Rows and sinks
# =============================================================================


@dataclass(frozen=True)
class EvaluationQuery:
    """A query together with the names of its relevant documents."""

    query: Query
    relevant: tuple[str, ...]


@dataclass
class TuningResult:
    """One evaluated grid cell."""

    params: dict[str, float]
    map: float = 0.0
    ndcg: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def metric(self, objective: str = "map") -> float:
        if objective == "ndcg":
            return self.ndcg if self.ndcg is not None else 0.0
        return self.map

    def fields(self) -> list[str]:
        """Grid values in declaration order, then MAP (then NDCG if computed)."""
        values = [f"{value:g}" for value in self.params.values()]
        values.append(f"{self.map:.6f}")
        if self.ndcg is not None:
            values.append(f"{self.ndcg:.6f}")
        return values

    def describe(self) -> str:
        return ", ".join(f"{name} = {value:g}" for name, value in self.params.items())


class ResultSink(Protocol):
    """Receives one row per successfully evaluated grid cell."""

    def append(self, result: TuningResult) -> None: ...


class ResultLog:
    """In-memory sink."""

    def __init__(self) -> None:
        self.rows: list[TuningResult] = []

    def append(self, result: TuningResult) -> None:
        self.rows.append(result)


class TSVResultLog:
    """
    Append-only tab-separated result file, one line per grid cell.

    The file is opened in append mode for every row, so an interrupted sweep
    leaves every completed row on disk.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @classmethod
    def for_family(cls, directory: str | Path, family: str | type[ScoringFunction]) -> TSVResultLog:
        scorer_id = family if isinstance(family, str) else family.id
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        return cls(directory / f"{scorer_id}_results.txt")

    def append(self, result: TuningResult) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write("\t".join(result.fields()) + "\n")


@dataclass
class TuningReport:
    """Best configuration of a sweep plus bookkeeping; rows live in the sink."""

    scorer_id: str
    objective: str = "map"
    best: TuningResult | None = None
    evaluated: int = 0
    failures: list[TuningResult] = field(default_factory=list)

    def record(self, result: TuningResult, sink: ResultSink | None = None) -> None:
        self.evaluated += 1
        if not result.ok:
            self.failures.append(result)
            return
        if sink is not None:
            sink.append(result)
        if self.best is None or result.metric(self.objective) > self.best.metric(self.objective):
            self.best = result

    def summary(self) -> str:
        if self.best is None:
            return f"{self.scorer_id}: no configuration evaluated successfully ({len(self.failures)} failed)"
        label = "MAP" if self.objective == "map" else "NDCG"
        return (
            f"{self.scorer_id}: max {label} = {self.best.metric(self.objective):.4f} "
            f"achieved by {self.best.describe()} "
            f"({self.evaluated} cells, {len(self.failures)} failed)"
        )


# =============================================================================
# Evaluation
# =============================================================================


def evaluate_configuration(
    scorer: ScoringFunction,
    corpus: Corpus,
    queries: Iterable[EvaluationQuery],
    accumulator: MetricAccumulator,
    search_workers: int | None = None,
) -> MetricAccumulator:
    """
    Ranks every query with `scorer` and adds its metrics to `accumulator`.

    Returns:
        The same accumulator, updated.
    """
    top_k = None
    if accumulator.cutoff is not None:
        top_k = max(accumulator.cutoff, accumulator.ndcg_cutoff or 0)
    for item in queries:
        ranking = search(item.query, corpus, scorer, num_workers=search_workers, top_k=top_k)
        accumulator.add(item.relevant, ranking.names())
    return accumulator


def read_parameter_rows(lines: Iterable[str], names: Sequence[str]) -> list[dict[str, float]]:
    """
    Parses explicit parameter combinations, one whitespace-separated row per
    line, values in the order of `names`. Blank lines are skipped.
    """
    rows = []
    for line_no, line in enumerate(lines, start=1):
        parts = line.split()
        if not parts:
            continue
        if len(parts) != len(names):
            raise ConfigurationError(f"line {line_no}: expected {len(names)} value(s) ({' '.join(names)}), got {len(parts)}")
        try:
            rows.append(dict(zip(names, (float(p) for p in parts))))
        except ValueError as e:
            raise ConfigurationError(f"line {line_no}: {e}") from e
    return rows


class GridSearch:
    """
    Exhaustive search over the cartesian product of a parameter grid.

    Args:
        family: Scoring model class or its identifier.
        grid: Parameter name -> ordered candidate values. Parameters not in
            the grid keep their defaults.
        corpus: Corpus searched by every cell.
        queries: Evaluation queries with relevance judgments.
        cutoff: Ranked documents examined by average precision.
        ndcg_cutoff: NDCG rank cutoff (None skips NDCG).
        objective: "map" or "ndcg"; the metric that selects the best cell.
        sink: Receives a row per successful cell.
        num_workers: Cells evaluated concurrently.
        search_workers: Scoring threads per search call.
        verbose: Show a progress bar.
    """

    def __init__(
        self,
        family: str | type[ScoringFunction],
        grid: Mapping[str, Sequence[float]],
        corpus: Corpus,
        queries: Sequence[EvaluationQuery],
        *,
        cutoff: int | None = DEFAULT_CUTOFF,
        ndcg_cutoff: int | None = None,
        objective: str = "map",
        sink: ResultSink | None = None,
        num_workers: int = 1,
        search_workers: int | None = None,
        verbose: bool = False,
    ):
        self.family = scorer_class(family) if isinstance(family, str) else family
        if objective not in OBJECTIVES:
            raise ConfigurationError(f"objective must be one of {', '.join(OBJECTIVES)}, got {objective!r}")
        if objective == "ndcg" and ndcg_cutoff is None:
            raise ConfigurationError("objective 'ndcg' requires an ndcg_cutoff")
        self._check_names(grid)
        empty = [name for name, values in grid.items() if len(values) == 0]
        if empty:
            raise ConfigurationError(f"grid has no candidate values for {', '.join(empty)}")

        self.grid = {name: [float(v) for v in values] for name, values in grid.items()}
        self.corpus = corpus
        self.queries = list(queries)
        self.cutoff = cutoff
        self.ndcg_cutoff = ndcg_cutoff
        self.objective = objective
        self.sink = sink
        self.num_workers = max(1, num_workers)
        self.search_workers = search_workers
        self.verbose = verbose

    def _check_names(self, names: Iterable[str]) -> None:
        unknown = sorted(set(names) - set(self.family.parameter_names()))
        if unknown:
            raise ConfigurationError(
                f"{self.family.id} has no parameter(s) {', '.join(unknown)}; "
                f"expected one of {', '.join(self.family.parameter_names())}"
            )

    @property
    def num_cells(self) -> int:
        count = 1
        for values in self.grid.values():
            count *= len(values)
        return count

    def cells(self) -> Iterator[dict[str, float]]:
        """Parameter combinations in declaration order, last name fastest."""
        names = list(self.grid)
        for values in product(*self.grid.values()):
            yield dict(zip(names, values))

    def new_accumulator(self) -> MetricAccumulator:
        return MetricAccumulator(cutoff=self.cutoff, ndcg_cutoff=self.ndcg_cutoff)

    def evaluate(self, params: Mapping[str, float], scorer: ScoringFunction | None = None) -> TuningResult:
        """
        Evaluates one cell. `scorer` is reconfigured in place when given,
        otherwise a new instance of the family is built. Parameters missing
        from `params` are reset to their defaults.
        """
        if scorer is None:
            scorer = self.family()
        scorer.set_params(**{**dict(self.family.PARAMETERS), **params})
        accumulator = evaluate_configuration(
            scorer, self.corpus, self.queries, self.new_accumulator(), self.search_workers
        )
        return TuningResult(params=dict(params), map=accumulator.map(), ndcg=accumulator.mean_ndcg())

    def _evaluate_isolated(self, params: Mapping[str, float], scorer: ScoringFunction | None) -> TuningResult:
        try:
            return self.evaluate(params, scorer)
        except Exception as e:
            result = TuningResult(params=dict(params), error=f"{type(e).__name__}: {e}")
            print(f"  {self.family.id} cell ({result.describe()}) failed: {result.error}", file=sys.stderr)
            return result

    def run(self, cancel: threading.Event | None = None) -> TuningReport:
        """Evaluates every grid cell. See `run_rows`."""
        return self.run_rows(self.cells(), cancel=cancel)

    def run_rows(
        self,
        rows: Iterable[Mapping[str, float]],
        cancel: threading.Event | None = None,
    ) -> TuningReport:
        """
        Evaluates explicit parameter combinations.

        Args:
            rows: Parameter combinations, evaluated and recorded in order.
            cancel: When set, no further cell is started; cells already
                running complete and are recorded.

        Returns:
            The best configuration and failure bookkeeping.
        """
        rows = [dict(row) for row in rows]
        for row in rows:
            self._check_names(row)
        report = TuningReport(scorer_id=self.family.id, objective=self.objective)

        def cancelled() -> bool:
            return cancel is not None and cancel.is_set()

        if self.num_workers == 1:
            shared = self.family()

            def sequential() -> Iterator[TuningResult]:
                for row in rows:
                    if cancelled():
                        return
                    yield self._evaluate_isolated(row, shared)

            results: Iterable[TuningResult | None] = sequential()
            self._consume(results, report, len(rows))
            return report

        def cell(row: dict[str, float]) -> TuningResult | None:
            if cancelled():
                return None
            return self._evaluate_isolated(row, None)

        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            self._consume(executor.map(cell, rows), report, len(rows))
        return report

    def _consume(self, results: Iterable[TuningResult | None], report: TuningReport, total: int) -> None:
        for result in tqdm(results, total=total, desc=self.family.id, disable=not self.verbose):
            if result is not None:
                report.record(result, self.sink)
