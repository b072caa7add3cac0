from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping

import ir_datasets

from ranking_tuner.corpus import DEFAULT_MAX_QUERIES, Corpus, Document, Query, load_queries, tokenize
from ranking_tuner.errors import ConfigurationError
from ranking_tuner.tuning import EvaluationQuery


def load_dataset(name: str) -> ir_datasets.Dataset:
    """Loads an ir_datasets dataset by id, e.g. ``"cranfield"``."""
    return ir_datasets.load(name)


def corpus_from_dataset(
    dataset: ir_datasets.Dataset,
    tokenize_fn: Callable[[str], list[str]] = tokenize,
    category_of: Callable[[object], str] | None = None,
) -> Corpus:
    """
    Builds a Corpus from the documents of a dataset.

    Args:
        dataset: Any object with ``docs_iter()`` yielding records that carry
            ``doc_id`` and ``text``.
        tokenize_fn: Tokenizer applied to the document text.
        category_of: Derives a class label from a document record.
    """
    documents = [
        Document.from_text(
            str(doc.doc_id),
            getattr(doc, "text", ""),
            category_of(doc) if category_of is not None else "",
            tokenize_fn,
        )
        for doc in dataset.docs_iter()
    ]
    return Corpus(documents)


def relevance_query_to_docs(dataset: ir_datasets.Dataset) -> dict[str, list[str]]:
    """
    Maps a query to its relevant documents in the dataset.

    Args:
        dataset: Any object with ``qrels_iter()`` yielding records that carry
            ``query_id``, ``doc_id`` and ``relevance``.

    Returns:
        dict[str, list[str]]: A mapping from query IDs to lists of relevant document IDs.
    """
    relevance_map = defaultdict(list)
    for qrel in dataset.qrels_iter():
        if qrel.relevance > 0:
            relevance_map[str(qrel.query_id)].append(str(qrel.doc_id))
    return dict(relevance_map)


def evaluation_queries(
    dataset: ir_datasets.Dataset,
    tokenize_fn: Callable[[str], list[str]] = tokenize,
    max_queries: int | None = None,
) -> list[EvaluationQuery]:
    """
    Pairs each dataset query with its relevant documents.

    Queries without any relevant document are skipped.
    """
    relevance = relevance_query_to_docs(dataset)
    items = []
    for query in dataset.queries_iter():
        if max_queries is not None and len(items) >= max_queries:
            break
        relevant = relevance.get(str(query.query_id))
        if not relevant:
            continue
        items.append(
            EvaluationQuery(
                Query.from_text(query.text, id=str(query.query_id), tokenize_fn=tokenize_fn),
                tuple(relevant),
            )
        )
    return items


def load_qrels(lines: Iterable[str]) -> dict[str, list[str]]:
    """
    Parses relevance judgments, one per line: ``query_id doc_name [relevance]``.

    Judgments with relevance <= 0 are dropped; a missing relevance counts as 1.
    """
    relevance_map = defaultdict(list)
    for line_no, line in enumerate(lines, start=1):
        parts = line.split()
        if not parts:
            continue
        if len(parts) not in (2, 3):
            raise ConfigurationError(f"line {line_no}: expected 'query_id doc_name [relevance]'")
        try:
            relevance = float(parts[2]) if len(parts) == 3 else 1.0
        except ValueError as e:
            raise ConfigurationError(f"line {line_no}: {e}") from e
        if relevance > 0:
            relevance_map[parts[0]].append(parts[1])
    return dict(relevance_map)


def evaluation_queries_from_lines(
    query_lines: Iterable[str],
    qrels: Mapping[str, list[str]],
    max_queries: int = DEFAULT_MAX_QUERIES,
    tokenize_fn: Callable[[str], list[str]] = tokenize,
) -> list[EvaluationQuery]:
    """
    Reads raw queries (one per line, ids 0, 1, ...) and attaches the relevant
    documents judged for each id. Queries without judgments are skipped.
    """
    return [
        EvaluationQuery(query, tuple(qrels[str(query.id)]))
        for query in load_queries(query_lines, max_queries, tokenize_fn)
        if qrels.get(str(query.id))
    ]
