"""
k-NN classification accuracy over labeled queries.

Each labeled query (one ``category<TAB>text`` per line, or a held-out labeled
document in the corpus file format) is searched against
one or more corpora and labeled with the majority category among its top k
documents. With several corpora the rankings are min-max normalized and
combined with the given interpolation weights.

Usage:
    uv run python knn_evaluate.py --documents train.tsv --labeled-queries test.tsv --k 10
    uv run python knn_evaluate.py --documents train.tsv --test-documents heldout.tsv --k 10
    uv run python knn_evaluate.py --documents a.tsv --documents b.tsv --weights 0.7 0.3 --labeled-queries test.tsv
"""

import argparse
import sys
import time
from collections import Counter
from collections.abc import Iterable
from itertools import islice

from tqdm import tqdm

from ranking_tuner.corpus import DEFAULT_MAX_QUERIES, Corpus, Document, Query, load_documents
from ranking_tuner.errors import ConfigurationError
from ranking_tuner.knn import NO_RESULT, classify_ensemble, classify_query
from ranking_tuner.scoring import make_scorer


def load_labeled_queries(lines: Iterable[str], max_queries: int = DEFAULT_MAX_QUERIES) -> list[Query]:
    """Parses ``category<TAB>text`` lines into queries carrying their label."""
    queries = []
    for line_no, line in enumerate(lines, start=1):
        if len(queries) >= max_queries:
            break
        line = line.rstrip("\n")
        if not line.strip():
            continue
        category, sep, text = line.partition("\t")
        if not sep:
            raise ConfigurationError(f"line {line_no}: expected 'category<TAB>text'")
        queries.append(Query.from_text(text, id=len(queries), category=category))
    return queries


def queries_from_documents(documents: Iterable[Document], max_queries: int = DEFAULT_MAX_QUERIES) -> list[Query]:
    """Turns held-out labeled documents into queries carrying their category."""
    return [Query.from_document(doc) for doc in islice(documents, max_queries)]


def evaluate(queries, corpora, weights, k, scorer, num_workers=None, verbose=True) -> dict:
    """Classifies every query and tallies accuracy and the confusion counts."""
    correct = 0
    unlabeled = 0
    confusion: Counter[tuple[str, str]] = Counter()
    for query in tqdm(queries, desc="classify", disable=not verbose):
        if len(corpora) == 1:
            predicted = classify_query(query, corpora[0], k, scorer, num_workers)
        else:
            predicted = classify_ensemble(query, corpora, weights, k, scorer, num_workers)
        if predicted == NO_RESULT:
            unlabeled += 1
        if predicted == query.category:
            correct += 1
        confusion[(query.category, predicted)] += 1

    return {
        "queries": len(queries),
        "correct": correct,
        "unlabeled": unlabeled,
        "accuracy": correct / len(queries) if queries else 0.0,
        "confusion": confusion,
    }


def main():
    parser = argparse.ArgumentParser(description="k-NN classification accuracy")
    parser.add_argument(
        "--documents",
        action="append",
        required=True,
        help="Labeled documents (name<TAB>category<TAB>text); repeat for an ensemble",
    )
    parser.add_argument("--weights", type=float, nargs="+", default=None, help="One weight per --documents")
    held_out = parser.add_mutually_exclusive_group(required=True)
    held_out.add_argument("--labeled-queries", type=str, help="category<TAB>text per line")
    held_out.add_argument("--test-documents", type=str, help="Held-out documents: name<TAB>category<TAB>text")
    parser.add_argument("--k", type=int, default=10, help="Number of neighbors (default: 10)")
    parser.add_argument("--scorer", type=str, default="bm25", help="Ranking model (default: bm25)")
    parser.add_argument("--param", action="append", default=[], help="Model parameter name=value (repeatable)")
    parser.add_argument("--max-queries", type=int, default=DEFAULT_MAX_QUERIES)
    parser.add_argument("--search-workers", type=int, default=None, help="Scoring threads per search")
    args = parser.parse_args()

    try:
        config = {}
        for spec in args.param:
            name, sep, value = spec.partition("=")
            if not sep:
                raise ConfigurationError(f"--param must look like name=value; got {spec!r}")
            try:
                config[name] = float(value)
            except ValueError as e:
                raise ConfigurationError(f"--param {spec!r}: {e}") from e
        scorer = make_scorer(args.scorer, config)

        weights = args.weights if args.weights is not None else [1.0] * len(args.documents)
        if len(weights) != len(args.documents):
            raise ConfigurationError(
                f"got {len(weights)} weight(s) for {len(args.documents)} index(es); counts must match"
            )

        t0 = time.time()
        corpora = []
        for path in args.documents:
            with open(path, encoding="utf-8") as f:
                corpora.append(Corpus(load_documents(f)))
        if args.labeled_queries:
            with open(args.labeled_queries, encoding="utf-8") as f:
                queries = load_labeled_queries(f, args.max_queries)
        else:
            with open(args.test_documents, encoding="utf-8") as f:
                queries = queries_from_documents(load_documents(f), args.max_queries)
        print(
            f"Loaded {', '.join(str(len(c)) for c in corpora)} documents, "
            f"{len(queries)} labeled queries in {time.time()-t0:.1f}s"
        )

        results = evaluate(queries, corpora, weights, args.k, scorer, args.search_workers)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)

    print(f"\n{scorer!r}, k={args.k}")
    print(f"  Accuracy: {results['accuracy']:.4f} ({results['correct']}/{results['queries']})")
    if results["unlabeled"]:
        print(f"  Queries without results: {results['unlabeled']}")
    print("  Most frequent confusions:")
    for (actual, predicted), count in results["confusion"].most_common(10):
        if actual != predicted:
            print(f"    {actual} -> {predicted}: {count}")


if __name__ == "__main__":
    main()
