"""
In-memory corpus statistics for ranking.

A Corpus is built once from tokenized documents and is read-only afterward,
so it can be shared by every scoring thread without synchronization. It holds
the statistics the scoring models read through a ScoreContext:

    N        number of documents
    df(t)    number of documents containing term t
    ctf(t)   occurrences of term t across the whole corpus
    total    occurrences of all terms across the whole corpus
    avgdl    mean document length

Tokenization and file parsing here are deliberately minimal; richer analyzers
can produce Document objects directly.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

import numpy as np

from ranking_tuner.errors import ConfigurationError, EmptyCorpusError

if TYPE_CHECKING:
    from numpy.typing import NDArray


DEFAULT_MAX_QUERIES = 1000

_EMPTY_POSTINGS = np.array([], dtype=np.int64)


def tokenize(text: str) -> list[str]:
    """Tokenizes the input text into a list of terms."""
    return re.findall(r"\w+", text.lower())


# =============================================================================
# Documents and queries
# =============================================================================


@dataclass(frozen=True)
class Document:
    """
    A document record: identity plus its term-frequency map.

    Attributes:
        name: Document identifier, unique within a corpus.
        term_frequencies: Term -> occurrence count.
        category: Class label used by the k-NN classifier.
        length: Sum of all term counts (derived).
    """

    name: str
    term_frequencies: Mapping[str, int]
    category: str = ""
    length: int = field(init=False)

    def __post_init__(self) -> None:
        counts = {term: int(count) for term, count in self.term_frequencies.items()}
        frequencies = {term: count for term, count in counts.items() if count > 0}
        object.__setattr__(self, "term_frequencies", MappingProxyType(frequencies))
        object.__setattr__(self, "length", sum(frequencies.values()))

    @classmethod
    def from_tokens(cls, name: str, tokens: Iterable[str], category: str = "") -> Document:
        return cls(name=name, term_frequencies=Counter(tokens), category=category)

    @classmethod
    def from_text(
        cls,
        name: str,
        text: str,
        category: str = "",
        tokenize_fn: Callable[[str], list[str]] = tokenize,
    ) -> Document:
        return cls.from_tokens(name, tokenize_fn(text), category)

    def frequency(self, term: str) -> int:
        return self.term_frequencies.get(term, 0)


@dataclass(frozen=True)
class Query:
    """
    A query as a term-weight map plus its length.

    Weights start out as raw query term counts; `reweighted` derives a query
    with transformed weights (the length is kept).
    """

    id: int | str
    term_weights: Mapping[str, float]
    length: float
    category: str | None = None

    @classmethod
    def from_tokens(cls, tokens: Iterable[str], id: int | str = 0, category: str | None = None) -> Query:
        counts = Counter(tokens)
        return cls(
            id=id,
            term_weights={term: float(count) for term, count in counts.items()},
            length=float(sum(counts.values())),
            category=category,
        )

    @classmethod
    def from_text(
        cls,
        text: str,
        id: int | str = 0,
        category: str | None = None,
        tokenize_fn: Callable[[str], list[str]] = tokenize,
    ) -> Query:
        return cls.from_tokens(tokenize_fn(text), id=id, category=category)

    @classmethod
    def from_document(cls, document: Document) -> Query:
        """Uses a labeled document as a query (held-out k-NN evaluation)."""
        return cls(
            id=document.name,
            term_weights={term: float(count) for term, count in document.term_frequencies.items()},
            length=float(document.length),
            category=document.category,
        )

    def weight(self, term: str) -> float:
        return self.term_weights.get(term, 0.0)

    def reweighted(self, transform: Callable[[float], float]) -> Query:
        return Query(
            id=self.id,
            term_weights={term: transform(w) for term, w in self.term_weights.items()},
            length=self.length,
            category=self.category,
        )


# =============================================================================
# Corpus
# =============================================================================


class Corpus:
    """
    A collection of documents and the statistics derived from them.

    Args:
        documents: Document records. Must be non-empty.

    Raises:
        EmptyCorpusError: if no documents are given.
    """

    def __init__(self, documents: Iterable[Document]):
        self.documents: list[Document] = list(documents)
        if not self.documents:
            raise EmptyCorpusError("cannot build a corpus from zero documents: average length is undefined")

        self.N = len(self.documents)
        self.ids = [doc.name for doc in self.documents]
        self.doc_lengths = np.array([doc.length for doc in self.documents], dtype=np.float64)
        self.avgdl = float(np.mean(self.doc_lengths))
        self.total_terms = int(self.doc_lengths.sum())

        self.document_frequency: Counter[str] = Counter()
        self.corpus_term_frequency: Counter[str] = Counter()
        inverted_index: dict[str, list[int]] = {}
        for doc_idx, doc in enumerate(self.documents):
            for term, count in doc.term_frequencies.items():
                self.document_frequency[term] += 1
                self.corpus_term_frequency[term] += count
                inverted_index.setdefault(term, []).append(doc_idx)

        self._posting_lists: dict[str, NDArray[np.int64]] = {
            term: np.array(doc_ids, dtype=np.int64) for term, doc_ids in inverted_index.items()
        }

    def __len__(self) -> int:
        return self.N

    def __getitem__(self, index: int) -> Document:
        return self.documents[index]

    def __iter__(self) -> Iterator[Document]:
        return iter(self.documents)

    @classmethod
    def from_texts(
        cls,
        texts: Iterable[str],
        names: Iterable[str] | None = None,
        categories: Iterable[str] | None = None,
        tokenize_fn: Callable[[str], list[str]] = tokenize,
    ) -> Corpus:
        texts = list(texts)
        names = list(names) if names is not None else [str(i) for i in range(len(texts))]
        categories = list(categories) if categories is not None else [""] * len(texts)
        return cls(
            Document.from_text(name, text, category, tokenize_fn)
            for name, text, category in zip(names, texts, categories, strict=True)
        )

    def get_df(self, term: str) -> int:
        return self.document_frequency.get(term, 0)

    def get_ctf(self, term: str) -> int:
        return self.corpus_term_frequency.get(term, 0)

    def get_posting_list(self, term: str) -> NDArray[np.int64]:
        return self._posting_lists.get(term, _EMPTY_POSTINGS)

    def candidates(self, terms: Iterable[str]) -> NDArray[np.int64]:
        """Sorted union of the posting lists of `terms`."""
        postings = [self.get_posting_list(t) for t in set(terms)]
        postings = [p for p in postings if p.size]
        if not postings:
            return _EMPTY_POSTINGS
        return np.unique(np.concatenate(postings))


# =============================================================================
# Line-oriented loaders
# =============================================================================


def load_documents(
    lines: Iterable[str],
    tokenize_fn: Callable[[str], list[str]] = tokenize,
) -> list[Document]:
    """
    Parses labeled documents, one per line: ``name<TAB>category<TAB>text``.

    Blank lines are skipped.
    """
    documents = []
    for line_no, line in enumerate(lines, start=1):
        line = line.rstrip("\n")
        if not line.strip():
            continue
        fields = line.split("\t", 2)
        if len(fields) != 3:
            raise ConfigurationError(f"line {line_no}: expected 'name<TAB>category<TAB>text', got {len(fields)} field(s)")
        name, category, text = fields
        documents.append(Document.from_text(name, text, category, tokenize_fn))
    return documents


def load_queries(
    lines: Iterable[str],
    max_queries: int = DEFAULT_MAX_QUERIES,
    tokenize_fn: Callable[[str], list[str]] = tokenize,
) -> list[Query]:
    """
    Turns raw query strings (one per line) into queries with sequential ids.

    Reads at most `max_queries` lines.
    """
    queries = []
    for query_id, line in enumerate(lines):
        if query_id >= max_queries:
            break
        queries.append(Query.from_text(line.rstrip("\n"), id=query_id, tokenize_fn=tokenize_fn))
    return queries
