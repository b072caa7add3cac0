"""
Pluggable term-weighting models.

Every model implements one method, `score_one`, which returns the contribution
of a single query term matched in a single document. A document's score is the
sum of those contributions over the query terms it contains, plus a
per-document `initial_score` that is zero for every model except the
query-likelihood language models.

=============================================================================
MODELS:
=============================================================================

    bm25             Okapi BM25 with query-term saturation (k1, b, k3)
    pl2              Divergence-from-randomness PL2 (c)
    mdtf2ln          Okapi/Dirichlet TF-IDF mix minus a pivoted length penalty
    mptf2ln          Same mix divided by the pivoted length penalty
    sigmoidal        BM25-like TF with a sigmoidal doc/query length ratio
    mountain         Raw TF damped by |dl - qlen|
    pivoted-length   Classic pivoted length normalization (s)
    jelinek-mercer   Query likelihood, Jelinek-Mercer smoothing (lambda)
    dirichlet-prior  Query likelihood, Dirichlet prior smoothing (mu)

=============================================================================
PERSISTENCE:
=============================================================================

A model is saved as its identifier followed by its parameters in declaration
order:

    uint16 LE   identifier byte length
    bytes       identifier (UTF-8)
    uint16 LE   parameter count
    float64 LE  one per parameter

`ScoringFunction.load` dispatches on the identifier through the registry that
every concrete subclass joins when it is defined.
"""

from __future__ import annotations

import io
import math
import struct
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import BinaryIO, ClassVar

from scipy.special import expit

from ranking_tuner.errors import ConfigurationError, MalformedParametersError, UnknownScorerError

LOG2_E = math.log2(math.e)

_LENGTH = struct.Struct("<H")
_VALUE = struct.Struct("<d")

# Parameter names accepted by make_scorer in addition to the attribute names.
_CONFIG_ALIASES = {"lambda": "lam"}

# Identifiers of older parameter files, resolved to the registered models.
_ID_ALIASES = {"sigmoidal_ranker": "sigmoidal", "mountain_ranker": "mountain"}


# =============================================================================
# Score context
# =============================================================================


@dataclass(frozen=True)
class ScoreContext:
    """
    Everything a model may read for one (query term, document) pair.

    Attributes:
        doc_length: Length of the candidate document (dl).
        avg_doc_length: Average document length in the corpus (avgdl).
        term_frequency: Raw count of the term in the document (tf).
        doc_frequency: Number of documents containing the term (df).
        corpus_term_frequency: Occurrences of the term in the corpus (ctf).
        total_terms: Occurrences of all terms in the corpus.
        num_docs: Number of documents in the corpus (N).
        query_term_weight: Weight of the term in the query (qtf / qtw).
        query_length: Length of the query (qlen).
    """

    doc_length: float
    avg_doc_length: float
    term_frequency: float
    doc_frequency: float
    corpus_term_frequency: float
    total_terms: float
    num_docs: float
    query_term_weight: float
    query_length: float


# =============================================================================
# Base class and registry
# =============================================================================


class ScoringFunction(ABC):
    """
    Base class for ranking models.

    Subclasses declare `id` and `PARAMETERS` (ordered name/default pairs) and
    implement `score_one`. Parameters live as float attributes and change only
    through `set_params`, so an instance can be shared read-only by many
    scoring threads.
    """

    id: ClassVar[str]
    PARAMETERS: ClassVar[tuple[tuple[str, float], ...]] = ()

    _registry: ClassVar[dict[str, type[ScoringFunction]]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if "id" in cls.__dict__:
            if cls.id in ScoringFunction._registry:
                raise ConfigurationError(f"scoring model id {cls.id!r} is already registered")
            ScoringFunction._registry[cls.id] = cls

    def __init__(self, **params: float):
        for name, default in self.PARAMETERS:
            setattr(self, name, float(default))
        self.set_params(**params)

    # ----- Parameters -----

    @classmethod
    def parameter_names(cls) -> list[str]:
        return [name for name, _ in cls.PARAMETERS]

    def params(self) -> dict[str, float]:
        return {name: getattr(self, name) for name, _ in self.PARAMETERS}

    def set_params(self, **values: float) -> None:
        known = set(self.parameter_names())
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(
                f"{self.id} has no parameter(s) {', '.join(unknown)}; expected one of {', '.join(self.parameter_names())}"
            )
        for name, value in values.items():
            setattr(self, name, float(value))

    # ----- Scoring -----

    @abstractmethod
    def score_one(self, ctx: ScoreContext) -> float:
        """Contribution of one matched query term."""

    def initial_score(self, doc_length: float, query_length: float) -> float:
        """Per-document constant added once to every scored document."""
        return 0.0

    # ----- Persistence -----

    def save(self, out: BinaryIO) -> None:
        identifier = self.id.encode("utf-8")
        out.write(_LENGTH.pack(len(identifier)))
        out.write(identifier)
        values = list(self.params().values())
        out.write(_LENGTH.pack(len(values)))
        for value in values:
            out.write(_VALUE.pack(value))

    def dumps(self) -> bytes:
        buffer = io.BytesIO()
        self.save(buffer)
        return buffer.getvalue()

    @staticmethod
    def load(stream: BinaryIO) -> ScoringFunction:
        """
        Restores a model saved with `save`.

        Raises:
            UnknownScorerError: the identifier is not registered.
            MalformedParametersError: the stream is truncated or the
                parameter count does not match the model.
        """
        (id_length,) = _LENGTH.unpack(_read_exact(stream, _LENGTH.size, "identifier length"))
        try:
            identifier = _read_exact(stream, id_length, "identifier").decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedParametersError(f"identifier is not valid UTF-8: {e}") from e

        cls = scorer_class(identifier)
        (count,) = _LENGTH.unpack(_read_exact(stream, _LENGTH.size, "parameter count"))
        names = cls.parameter_names()
        if count != len(names):
            raise MalformedParametersError(f"{identifier} expects {len(names)} parameter(s), stream declares {count}")
        values = [_VALUE.unpack(_read_exact(stream, _VALUE.size, f"parameter {name!r}"))[0] for name in names]
        return cls(**dict(zip(names, values)))

    @staticmethod
    def loads(data: bytes) -> ScoringFunction:
        return ScoringFunction.load(io.BytesIO(data))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScoringFunction):
            return NotImplemented
        return type(self) is type(other) and self.params() == other.params()

    __hash__ = None

    def __repr__(self) -> str:
        args = ", ".join(f"{name}={value:g}" for name, value in self.params().items())
        return f"{type(self).__name__}({args})"


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise MalformedParametersError(f"truncated parameter stream while reading {what}")
    return data


def registered_scorers() -> list[str]:
    return sorted(ScoringFunction._registry)


def scorer_class(name: str) -> type[ScoringFunction]:
    try:
        return ScoringFunction._registry[_ID_ALIASES.get(name, name)]
    except KeyError:
        raise UnknownScorerError(
            f"unknown scoring model {name!r}; expected one of {', '.join(registered_scorers())}"
        ) from None


def make_scorer(name: str, config: Mapping[str, float] | None = None) -> ScoringFunction:
    """
    Builds a model from its identifier and optional parameter overrides.

    Missing parameters take the model defaults. ``lambda`` is accepted as an
    alias for ``lam``.
    """
    cls = scorer_class(name)
    params = {_CONFIG_ALIASES.get(key, key): value for key, value in (config or {}).items()}
    return cls(**params)


# =============================================================================
# Probabilistic models
# =============================================================================


class BM25(ScoringFunction):
    """
    Okapi BM25:
        IDF = ln((N - df + 0.5) / (df + 0.5))
        TF  = (k1 + 1) tf / (k1 ((1 - b) + b dl / avgdl) + tf)
        QTF = (k3 + 1) qtf / (k3 + qtf)
    """

    id = "bm25"
    PARAMETERS = (("k1", 1.5), ("b", 0.75), ("k3", 500.0))

    def score_one(self, ctx: ScoreContext) -> float:
        tf, df = ctx.term_frequency, ctx.doc_frequency
        if tf <= 0 or df <= 0 or ctx.avg_doc_length <= 0:
            return 0.0
        idf = math.log((ctx.num_docs - df + 0.5) / (df + 0.5))
        norm = (1.0 - self.b) + self.b * ctx.doc_length / ctx.avg_doc_length
        tf_part = ((self.k1 + 1.0) * tf) / (self.k1 * norm + tf)
        qtf = ctx.query_term_weight
        qtf_part = ((self.k3 + 1.0) * qtf) / (self.k3 + qtf)
        return idf * tf_part * qtf_part


class PL2(ScoringFunction):
    """
    PL2 (Poisson model, Laplace after-effect, normalization 2).

    `lam` is persisted for compatibility but the formula derives lambda from
    the corpus as N / ctf.
    """

    id = "pl2"
    PARAMETERS = (("c", 7.0), ("lam", 0.1))

    def score_one(self, ctx: ScoreContext) -> float:
        tf, ctf, dl = ctx.term_frequency, ctx.corpus_term_frequency, ctx.doc_length
        if tf <= 0 or ctx.doc_frequency <= 0 or ctf <= 0 or dl <= 0:
            return 0.0
        tfn = tf * math.log2(1.0 + self.c * ctx.avg_doc_length / dl)
        if tfn <= 0:
            return 0.0
        lam = ctx.num_docs / ctf
        return (1.0 / (tfn + 1.0)) * (
            tfn * math.log2(tfn / lam)
            + (lam + 1.0 / (12.0 * tfn) - tfn) * LOG2_E
            + 0.5 * math.log2(2.0 * math.pi * tfn)
        )


# =============================================================================
# Axiomatic TF-IDF mixtures
# =============================================================================


class MDTF2LN(ScoringFunction):
    """
    Okapi TF and pivoted IDF mixed with a Dirichlet TF-IDF, minus a pivoted
    length penalty lnpiv^lambda.
    """

    id = "mdtf2ln"
    PARAMETERS = (("s", 0.2), ("mu", 2000.0), ("alpha", 0.3), ("lam", 0.7))

    def _components(self, ctx: ScoreContext) -> tuple[float, float] | None:
        """Returns (tfidf2, lnpiv), or None outside the formula's domain."""
        tf, df = ctx.term_frequency, ctx.doc_frequency
        if tf <= 0 or df <= 0 or ctx.total_terms <= 0 or ctx.avg_doc_length <= 0:
            return None
        pc = ctx.corpus_term_frequency / ctx.total_terms
        if self.mu * pc <= 0:
            return None
        lnpiv = 1.0 - self.s + self.s * ctx.doc_length / ctx.avg_doc_length
        if lnpiv <= 0:
            return None

        tfok = 2.2 * tf / (1.2 + tf)
        idfpiv = math.log((ctx.num_docs + 1.0) / df)
        tfidfdir = math.log(1.0 + tf / (self.mu * pc))
        tfidf2 = self.alpha * tfok * idfpiv + (1.0 - self.alpha) * tfidfdir
        return tfidf2, lnpiv

    def score_one(self, ctx: ScoreContext) -> float:
        parts = self._components(ctx)
        if parts is None:
            return 0.0
        tfidf2, lnpiv = parts
        qtw = ctx.query_term_weight
        return qtw * tfidf2 - qtw * lnpiv**self.lam


class MPTF2LN(MDTF2LN):
    """As MDTF2LN, but the length penalty divides instead of subtracts."""

    id = "mptf2ln"

    def score_one(self, ctx: ScoreContext) -> float:
        parts = self._components(ctx)
        if parts is None:
            return 0.0
        tfidf2, lnpiv = parts
        return ctx.query_term_weight * tfidf2 / lnpiv**self.lam


# =============================================================================
# Length-ratio models
# =============================================================================


class Sigmoidal(ScoringFunction):
    """
    BM25-style TF whose length normalization h is a sigmoid of the document
    length relative to the query length. Documents much shorter than the
    query approach b1, much longer ones approach b2.
    """

    id = "sigmoidal"
    PARAMETERS = (("b1", 2.9), ("b2", 3.7), ("l1", 1.0), ("l2", 1.0), ("c", 0.5), ("k", 1.0))

    def length_factor(self, doc_length: float, query_length: float) -> float:
        if doc_length < query_length:
            # 1 / (1 + exp(x)) == expit(-x)
            power = self.l1 * (doc_length - self.c * query_length)
            return 1.0 + (self.b1 - 1.0) * float(expit(-power))
        if doc_length > query_length:
            power = self.l2 * (doc_length - (1.0 + self.c) * query_length)
            return 1.0 + (self.b2 - 1.0) * float(expit(power))
        return 1.0

    def score_one(self, ctx: ScoreContext) -> float:
        tf, df = ctx.term_frequency, ctx.doc_frequency
        if tf <= 0 or df <= 0:
            return 0.0
        h = self.length_factor(ctx.doc_length, ctx.query_length)
        denominator = self.k * h + tf
        if denominator <= 0:
            return 0.0
        idf = math.log(1.0 + (ctx.num_docs - df + 0.5) / (df + 0.5))
        tf_part = ((self.k + 1.0) * tf) / denominator
        return ctx.query_term_weight * tf_part * idf


class Mountain(ScoringFunction):
    """
    Raw TF divided by (|dl - qlen| + 1)^lambda.

    `k` is kept for persistence; the formula does not read it.
    """

    id = "mountain"
    PARAMETERS = (("lam", 1.0), ("k", 1.0))

    def score_one(self, ctx: ScoreContext) -> float:
        tf = ctx.term_frequency
        if tf <= 0 or ctx.doc_frequency <= 0:
            return 0.0
        regulate = (abs(ctx.doc_length - ctx.query_length) + 1.0) ** self.lam
        return tf / regulate


# =============================================================================
# Vector-space and language models
# =============================================================================


class PivotedLength(ScoringFunction):
    """Pivoted length normalization: (1 + ln(1 + ln tf)) / norm * idf."""

    id = "pivoted-length"
    PARAMETERS = (("s", 0.2),)

    def score_one(self, ctx: ScoreContext) -> float:
        tf = ctx.term_frequency
        if tf < 1 or ctx.doc_frequency <= 0 or ctx.avg_doc_length <= 0:
            return 0.0
        norm = (1.0 - self.s) + self.s * ctx.doc_length / ctx.avg_doc_length
        if norm <= 0:
            return 0.0
        tf_part = 1.0 + math.log(1.0 + math.log(tf))
        idf = math.log((ctx.num_docs + 1.0) / (0.5 + ctx.doc_frequency))
        return ctx.query_term_weight * tf_part / norm * idf


class LanguageModel(ScoringFunction):
    """
    Query likelihood with a smoothed document model:

        score(d, q) = qlen * ln(alpha_d) + sum_t qtw * ln(p_s(t|d) / (alpha_d * p(t|C)))

    Subclasses supply the smoothed probability p_s and the document constant
    alpha_d.
    """

    @abstractmethod
    def smoothed_probability(self, ctx: ScoreContext, collection_probability: float) -> float: ...

    @abstractmethod
    def document_constant(self, doc_length: float) -> float: ...

    def score_one(self, ctx: ScoreContext) -> float:
        if ctx.term_frequency <= 0 or ctx.total_terms <= 0 or ctx.doc_length <= 0:
            return 0.0
        pc = ctx.corpus_term_frequency / ctx.total_terms
        doc_constant = self.document_constant(ctx.doc_length)
        if pc <= 0 or doc_constant <= 0:
            return 0.0
        smoothed = self.smoothed_probability(ctx, pc)
        if smoothed <= 0:
            return 0.0
        return ctx.query_term_weight * math.log(smoothed / (doc_constant * pc))

    def initial_score(self, doc_length: float, query_length: float) -> float:
        doc_constant = self.document_constant(doc_length)
        if doc_constant <= 0:
            return 0.0
        return query_length * math.log(doc_constant)


class JelinekMercer(LanguageModel):
    id = "jelinek-mercer"
    PARAMETERS = (("lam", 0.7),)

    def smoothed_probability(self, ctx: ScoreContext, collection_probability: float) -> float:
        return (1.0 - self.lam) * ctx.term_frequency / ctx.doc_length + self.lam * collection_probability

    def document_constant(self, doc_length: float) -> float:
        return self.lam


class DirichletPrior(LanguageModel):
    id = "dirichlet-prior"
    PARAMETERS = (("mu", 2000.0),)

    def smoothed_probability(self, ctx: ScoreContext, collection_probability: float) -> float:
        return (ctx.term_frequency + self.mu * collection_probability) / (ctx.doc_length + self.mu)

    def document_constant(self, doc_length: float) -> float:
        if doc_length + self.mu <= 0:
            return 0.0
        return self.mu / (doc_length + self.mu)


__all__ = [
    "BM25",
    "DirichletPrior",
    "JelinekMercer",
    "LanguageModel",
    "MDTF2LN",
    "MPTF2LN",
    "Mountain",
    "PL2",
    "PivotedLength",
    "ScoreContext",
    "ScoringFunction",
    "Sigmoidal",
    "make_scorer",
    "registered_scorers",
    "scorer_class",
]
